"""Free appointment slots for one staff member on one day."""

from __future__ import annotations

from datetime import date, datetime, time, timedelta
from typing import Iterable, Protocol, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from studio_scheduler.domain.appointments import statuses
from studio_scheduler.domain.appointments.db_models import Appointment
from studio_scheduler.domain.errors import ValidationError
from studio_scheduler.settings import settings

WorkingPeriod = tuple[time, time]


class TimeWindow(Protocol):
    start_time: time
    end_time: time


def _validate_duration(duration_minutes: int) -> None:
    if duration_minutes <= 0:
        raise ValidationError(
            detail="Duration must be positive",
            errors=[{"code": "invalid_duration", "duration_minutes": duration_minutes}],
        )


def compute_free_slots(
    appointments: Iterable[TimeWindow],
    target_date: date,
    duration_minutes: int,
    working_hours: Sequence[WorkingPeriod],
    step_minutes: int,
) -> list[time]:
    """Start times whose ``[start, start + duration)`` window overlaps none of ``appointments``.

    Candidates begin at each working period's start and advance by
    ``step_minutes`` while they still end inside the period.
    """
    _validate_duration(duration_minutes)
    if step_minutes <= 0:
        raise ValidationError(detail="Slot step must be positive")

    blocked = [
        (datetime.combine(target_date, item.start_time), datetime.combine(target_date, item.end_time))
        for item in appointments
    ]
    duration_delta = timedelta(minutes=duration_minutes)
    step_delta = timedelta(minutes=step_minutes)

    slots: list[time] = []
    for period_start, period_end in sorted(working_hours):
        candidate = datetime.combine(target_date, period_start)
        day_end = datetime.combine(target_date, period_end)
        while candidate + duration_delta <= day_end:
            candidate_end = candidate + duration_delta
            conflict = False
            for blocked_start, blocked_end in blocked:
                if candidate < blocked_end and blocked_start < candidate_end:
                    conflict = True
                    break
            if not conflict:
                slots.append(candidate.time())
            candidate += step_delta
    return sorted(set(slots))


def blocking_appointments_stmt(staff_ref: str, target_date: date, *, exclude_appointment_id: int | None = None):
    stmt = select(Appointment).where(
        Appointment.staff_ref == staff_ref,
        Appointment.appointment_date == target_date,
        Appointment.status.in_(statuses.BLOCKING_STATUSES),
    )
    if exclude_appointment_id is not None:
        stmt = stmt.where(Appointment.appointment_id != exclude_appointment_id)
    return stmt


async def get_free_slots(
    session: AsyncSession,
    staff_ref: str,
    target_date: date,
    duration_minutes: int,
    *,
    exclude_appointment_id: int | None = None,
) -> list[time]:
    _validate_duration(duration_minutes)
    result = await session.execute(
        blocking_appointments_stmt(staff_ref, target_date, exclude_appointment_id=exclude_appointment_id)
    )
    return compute_free_slots(
        result.scalars().all(),
        target_date,
        duration_minutes,
        settings.working_hours,
        settings.slot_step_minutes,
    )
