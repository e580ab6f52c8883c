from __future__ import annotations

import logging
from datetime import date, datetime, time, timedelta

from sqlalchemy import Boolean, Date, Integer, String, Text, Time, exists, func, insert, literal, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from studio_scheduler.domain import reschedule_tokens
from studio_scheduler.domain.appointments import schemas, statuses
from studio_scheduler.domain.appointments.db_models import Appointment, AppointmentRescheduleProposal
from studio_scheduler.domain.errors import (
    ConflictError,
    DomainError,
    NotFoundError,
    SlotUnavailableError,
    ValidationError,
)
from studio_scheduler.domain.notifications import service as notifications
from studio_scheduler.infra.db import end_unchanged
from studio_scheduler.infra.metrics import metrics
from studio_scheduler.settings import settings

logger = logging.getLogger(__name__)

RESCHEDULABLE_STATUSES = (statuses.PENDING_APPROVAL, statuses.SCHEDULED, statuses.CONFIRMED)


def _end_time(start: time, duration_minutes: int) -> time:
    end = datetime.combine(date.min, start) + timedelta(minutes=duration_minutes)
    if end.date() != date.min:
        raise ValidationError(
            detail="Appointment must end on the same day",
            errors=[{"code": "crosses_midnight"}],
        )
    return end.time()


def _validate_window(target_date: date, start: time, duration_minutes: int, *, now: datetime) -> time:
    if duration_minutes <= 0:
        raise ValidationError(detail="Duration must be positive", errors=[{"code": "invalid_duration"}])
    if datetime.combine(target_date, start) <= now:
        raise ValidationError(detail="Appointment must start in the future", errors=[{"code": "in_the_past"}])
    end = _end_time(start, duration_minutes)
    for period_start, period_end in settings.working_hours:
        if period_start <= start and end <= period_end:
            return end
    raise ValidationError(
        detail="Appointment must fall inside working hours",
        errors=[{"code": "outside_working_hours"}],
    )


def _overlap_clause(staff_ref: str, target_date: date, start: time, end: time, *, exclude_id=None):
    other = aliased(Appointment)
    criteria = [
        other.staff_ref == staff_ref,
        other.appointment_date == target_date,
        other.status.in_(statuses.BLOCKING_STATUSES),
        other.start_time < end,
        other.end_time > start,
    ]
    if exclude_id is not None:
        criteria.append(other.appointment_id != exclude_id)
    return exists().where(*criteria)


async def _lock_staff_calendar(session: AsyncSession, staff_ref: str) -> None:
    """Serialize writers per staff member on Postgres; SQLite serializes all writers already."""
    bind = session.get_bind()
    if bind.dialect.name == "postgresql":
        await session.execute(select(func.pg_advisory_xact_lock(func.hashtext(f"appointments:{staff_ref}"))))


def _recipient(appointment: Appointment) -> str | None:
    return appointment.client_ref or appointment.guest_email


def _payload(appointment: Appointment) -> dict:
    return {
        "appointment_id": appointment.appointment_id,
        "staff_ref": appointment.staff_ref,
        "appointment_date": appointment.appointment_date.isoformat(),
        "start_time": appointment.start_time.isoformat(timespec="minutes"),
        "end_time": appointment.end_time.isoformat(timespec="minutes"),
        "category": appointment.category,
        "status": appointment.status,
    }


async def get_appointment(session: AsyncSession, appointment_id: int) -> Appointment:
    appointment = await session.get(Appointment, appointment_id)
    if appointment is None:
        raise NotFoundError(detail=f"Appointment {appointment_id} not found")
    return appointment


async def request_appointment(
    session: AsyncSession,
    payload: schemas.AppointmentRequest,
    *,
    now: datetime,
) -> Appointment:
    """Insert a PENDING_APPROVAL appointment if the staff member is free for the whole window.

    The overlap check and the insert are one statement.
    """
    if not payload.client_ref and not (payload.guest_name and payload.guest_email and payload.guest_phone):
        raise ValidationError(
            detail="Guest requests need a name, email and phone",
            errors=[{"code": "missing_contact"}],
        )
    end = _validate_window(payload.appointment_date, payload.start_time, payload.duration_minutes, now=now)

    await _lock_staff_calendar(session, payload.staff_ref)
    columns = {
        "staff_ref": literal(payload.staff_ref, String),
        "client_ref": literal(payload.client_ref, String),
        "guest_name": literal(payload.guest_name, String),
        "guest_email": literal(payload.guest_email, String),
        "guest_phone": literal(payload.guest_phone, String),
        "appointment_date": literal(payload.appointment_date, Date),
        "start_time": literal(payload.start_time, Time),
        "end_time": literal(end, Time),
        "duration_minutes": literal(payload.duration_minutes, Integer),
        "category": literal(payload.category, String),
        "status": literal(statuses.PENDING_APPROVAL, String),
        "signal_pending": literal(False, Boolean),
        "notes": literal(payload.notes, Text),
    }
    stmt = insert(Appointment).from_select(
        list(columns.keys()),
        select(*columns.values()).where(
            ~_overlap_clause(payload.staff_ref, payload.appointment_date, payload.start_time, end)
        ),
    )
    try:
        result = await session.execute(stmt)
        if result.rowcount != 1:
            await end_unchanged(session)
            logger.info(
                "appointment_slot_unavailable",
                extra={
                    "extra": {
                        "staff_ref": payload.staff_ref,
                        "appointment_date": payload.appointment_date.isoformat(),
                        "start_time": payload.start_time.isoformat(timespec="minutes"),
                    }
                },
            )
            raise SlotUnavailableError(detail="Requested slot is no longer available")
        appointment = await session.scalar(
            select(Appointment)
            .where(
                Appointment.staff_ref == payload.staff_ref,
                Appointment.appointment_date == payload.appointment_date,
                Appointment.start_time == payload.start_time,
                Appointment.status == statuses.PENDING_APPROVAL,
            )
            .order_by(Appointment.appointment_id.desc())
            .limit(1)
        )
        await notifications.enqueue_notification(
            session,
            recipient=_recipient(appointment),
            template=notifications.TEMPLATE_APPOINTMENT_REQUESTED,
            payload=_payload(appointment),
            dedupe_key=str(appointment.appointment_id),
        )
        await session.commit()
    except SlotUnavailableError:
        raise
    except Exception:
        await session.rollback()
        raise

    logger.info(
        "appointment_requested",
        extra={
            "extra": {
                "appointment_id": appointment.appointment_id,
                "staff_ref": appointment.staff_ref,
                "category": appointment.category,
                "guest": appointment.client_ref is None,
            }
        },
    )
    return appointment


async def decide_appointment(
    session: AsyncSession,
    appointment_id: int,
    *,
    accept: bool,
    decided_by: str,
    notes: str | None = None,
) -> Appointment:
    """Accept (SCHEDULED, with a pending signal for paid categories) or reject a request."""
    appointment = await get_appointment(session, appointment_id)
    target_status = statuses.SCHEDULED if accept else statuses.REJECTED
    values: dict = {"status": target_status}
    if accept:
        values["signal_pending"] = appointment.category in settings.signal_required_categories
    if notes is not None:
        values["notes"] = notes
    decided = await session.execute(
        update(Appointment)
        .where(
            Appointment.appointment_id == appointment_id,
            Appointment.status == statuses.PENDING_APPROVAL,
        )
        .values(**values)
    )
    if decided.rowcount != 1:
        await end_unchanged(session)
        raise ConflictError(
            detail="Appointment is not awaiting a decision",
            errors=[{"code": "appointment_not_pending", "status": appointment.status}],
        )
    await session.refresh(appointment)
    await notifications.enqueue_notification(
        session,
        recipient=_recipient(appointment),
        template=notifications.TEMPLATE_APPOINTMENT_DECIDED,
        payload={**_payload(appointment), "signal_pending": appointment.signal_pending},
        dedupe_key=f"{appointment_id}:{target_status}",
    )
    await session.commit()
    logger.info(
        "appointment_decided",
        extra={
            "extra": {
                "appointment_id": appointment_id,
                "status": target_status,
                "signal_pending": appointment.signal_pending,
                "decided_by": decided_by,
            }
        },
    )
    return appointment


async def cancel_appointment(
    session: AsyncSession,
    appointment_id: int,
    *,
    actor_ref: str,
    is_staff: bool,
) -> Appointment:
    appointment = await get_appointment(session, appointment_id)
    if not is_staff and appointment.client_ref != actor_ref:
        raise NotFoundError(detail=f"Appointment {appointment_id} not found")
    cancelled = await session.execute(
        update(Appointment)
        .where(
            Appointment.appointment_id == appointment_id,
            Appointment.status.in_(statuses.CANCELLABLE_STATUSES),
        )
        .values(status=statuses.CANCELLED)
    )
    if cancelled.rowcount != 1:
        await end_unchanged(session)
        raise ConflictError(
            detail="Appointment can no longer be cancelled",
            errors=[{"code": "appointment_not_cancellable", "status": appointment.status}],
        )
    await session.refresh(appointment)
    if is_staff:
        await notifications.enqueue_notification(
            session,
            recipient=_recipient(appointment),
            template=notifications.TEMPLATE_APPOINTMENT_CANCELLED,
            payload=_payload(appointment),
            dedupe_key=str(appointment_id),
        )
    await session.commit()
    logger.info(
        "appointment_cancelled",
        extra={"extra": {"appointment_id": appointment_id, "by_staff": is_staff}},
    )
    return appointment


async def propose_appointment_reschedule(
    session: AsyncSession,
    appointment_id: int,
    proposed_date: date,
    proposed_time: time,
    *,
    now: datetime,
) -> AppointmentRescheduleProposal:
    appointment = await get_appointment(session, appointment_id)
    if appointment.status not in RESCHEDULABLE_STATUSES:
        raise ConflictError(
            detail="Appointment cannot be rescheduled",
            errors=[{"code": "appointment_not_reschedulable", "status": appointment.status}],
        )
    if proposed_date == appointment.appointment_date and proposed_time == appointment.start_time:
        raise ValidationError(detail="Proposed time equals the current one", errors=[{"code": "same_slot"}])
    end = _validate_window(proposed_date, proposed_time, appointment.duration_minutes, now=now)
    busy = await session.scalar(
        select(
            _overlap_clause(
                appointment.staff_ref, proposed_date, proposed_time, end, exclude_id=appointment_id
            )
        )
    )
    if busy:
        raise SlotUnavailableError(detail="Proposed slot is not available")

    proposal = AppointmentRescheduleProposal(
        appointment_id=appointment_id,
        proposed_date=proposed_date,
        proposed_time=proposed_time,
        token=reschedule_tokens.issue_token(),
        expires_at=reschedule_tokens.token_expiry(now),
    )
    try:
        session.add(proposal)
        await session.flush()
        await notifications.enqueue_notification(
            session,
            recipient=_recipient(appointment),
            template=notifications.TEMPLATE_APPOINTMENT_RESCHEDULE_PROPOSED,
            payload={
                **_payload(appointment),
                "proposed_date": proposed_date.isoformat(),
                "proposed_time": proposed_time.isoformat(timespec="minutes"),
                "token": proposal.token,
                "expires_at": proposal.expires_at.isoformat(),
            },
            dedupe_key=str(proposal.proposal_id),
        )
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    await session.refresh(proposal)
    metrics.record_reschedule("appointment", "proposed")
    logger.info(
        "appointment_reschedule_proposed",
        extra={"extra": {"appointment_id": appointment_id, "proposal_id": proposal.proposal_id}},
    )
    return proposal


async def confirm_appointment_reschedule(session: AsyncSession, token: str, *, now: datetime) -> Appointment:
    """Consume the token and move the appointment if the new window is still free."""
    try:
        proposal = await reschedule_tokens.consume_token(session, AppointmentRescheduleProposal, token, now=now)
    except DomainError as exc:
        await end_unchanged(session)
        metrics.record_reschedule("appointment", type(exc).__name__)
        raise
    except Exception as exc:
        await session.rollback()
        metrics.record_reschedule("appointment", type(exc).__name__)
        raise

    appointment = await get_appointment(session, proposal.appointment_id)
    end = _end_time(proposal.proposed_time, appointment.duration_minutes)
    await _lock_staff_calendar(session, appointment.staff_ref)
    moved = await session.execute(
        update(Appointment)
        .where(
            Appointment.appointment_id == appointment.appointment_id,
            Appointment.status.in_(RESCHEDULABLE_STATUSES),
            ~_overlap_clause(
                appointment.staff_ref,
                proposal.proposed_date,
                proposal.proposed_time,
                end,
                exclude_id=appointment.appointment_id,
            ),
        )
        .values(appointment_date=proposal.proposed_date, start_time=proposal.proposed_time, end_time=end)
        .execution_options(synchronize_session=False)
    )
    if moved.rowcount != 1:
        await session.rollback()
        metrics.record_reschedule("appointment", "slot_unavailable")
        raise SlotUnavailableError(detail="Proposed slot is no longer available")

    await session.refresh(appointment)
    await notifications.enqueue_notification(
        session,
        recipient=_recipient(appointment),
        template=notifications.TEMPLATE_APPOINTMENT_RESCHEDULE_CONFIRMED,
        payload=_payload(appointment),
        dedupe_key=str(proposal.proposal_id),
    )
    await session.commit()
    metrics.record_reschedule("appointment", "confirmed")
    logger.info(
        "appointment_reschedule_confirmed",
        extra={"extra": {"appointment_id": appointment.appointment_id, "proposal_id": proposal.proposal_id}},
    )
    return appointment


async def list_staff_appointments(session: AsyncSession, staff_ref: str, target_date: date) -> list[Appointment]:
    result = await session.execute(
        select(Appointment)
        .where(Appointment.staff_ref == staff_ref, Appointment.appointment_date == target_date)
        .order_by(Appointment.start_time, Appointment.appointment_id)
    )
    return list(result.scalars().all())


async def claim_appointment(session: AsyncSession, appointment_id: int, client_ref: str) -> bool:
    """Take an open AVAILABLE slot for ``client_ref``; the request then waits for approval."""
    await get_appointment(session, appointment_id)
    claimed = await session.execute(
        update(Appointment)
        .where(Appointment.appointment_id == appointment_id, Appointment.status == statuses.AVAILABLE)
        .values(client_ref=client_ref, status=statuses.PENDING_APPROVAL)
    )
    if claimed.rowcount != 1:
        await end_unchanged(session)
        return False
    await session.commit()
    logger.info("appointment_claimed", extra={"extra": {"appointment_id": appointment_id, "client_ref": client_ref}})
    return True
