"""Common booking surface over group sessions and one-to-one appointments."""

from __future__ import annotations

from datetime import datetime
from typing import Protocol, runtime_checkable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from studio_scheduler.domain.appointments import service as appointment_service
from studio_scheduler.domain.appointments import statuses as appointment_statuses
from studio_scheduler.domain.appointments.db_models import Appointment
from studio_scheduler.domain.errors import NotFoundError
from studio_scheduler.domain.sessions import service as enrollment_service
from studio_scheduler.domain.sessions.db_models import SessionInstance


@runtime_checkable
class Bookable(Protocol):
    @property
    def capacity(self) -> int: ...

    async def participant_count(self, session: AsyncSession) -> int: ...

    async def book(self, session: AsyncSession, client_ref: str) -> bool: ...

    async def cancel(self, session: AsyncSession, client_ref: str) -> bool: ...


class SessionInstanceBookable:
    def __init__(self, instance: SessionInstance, *, now: datetime) -> None:
        self.instance_id = instance.instance_id
        self._capacity = instance.capacity
        self.now = now

    @property
    def capacity(self) -> int:
        return self._capacity

    async def participant_count(self, session: AsyncSession) -> int:
        return await enrollment_service.participant_count(session, self.instance_id)

    async def book(self, session: AsyncSession, client_ref: str) -> bool:
        result = await enrollment_service.book(session, self.instance_id, client_ref)
        return result.ok

    async def cancel(self, session: AsyncSession, client_ref: str) -> bool:
        result = await enrollment_service.cancel(
            session,
            self.instance_id,
            client_ref,
            reference_date=self.now.date(),
            now=self.now,
        )
        return result.ok


class AppointmentBookable:
    """A single appointment seen as a one-seat session owned by its client.

    Staff publish open slots as AVAILABLE appointments; booking one claims it
    for the client and sends it to staff approval.
    """

    def __init__(self, appointment_id: int) -> None:
        self.appointment_id = appointment_id

    @property
    def capacity(self) -> int:
        return 1

    async def _current_status(self, session: AsyncSession) -> str | None:
        return await session.scalar(select(Appointment.status).where(Appointment.appointment_id == self.appointment_id))

    async def participant_count(self, session: AsyncSession) -> int:
        status = await self._current_status(session)
        return 1 if status in appointment_statuses.BLOCKING_STATUSES else 0

    async def book(self, session: AsyncSession, client_ref: str) -> bool:
        return await appointment_service.claim_appointment(session, self.appointment_id, client_ref)

    async def cancel(self, session: AsyncSession, client_ref: str) -> bool:
        row = (
            await session.execute(
                select(Appointment.client_ref, Appointment.status).where(
                    Appointment.appointment_id == self.appointment_id
                )
            )
        ).one_or_none()
        if row is None:
            raise NotFoundError(detail=f"Appointment {self.appointment_id} not found")
        owner, status = row
        if owner != client_ref or status not in appointment_statuses.CANCELLABLE_STATUSES:
            return False
        await appointment_service.cancel_appointment(
            session, self.appointment_id, actor_ref=client_ref, is_staff=False
        )
        return True
