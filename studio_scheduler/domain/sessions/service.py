from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from datetime import date, datetime

from sqlalchemy import String, exists, func, insert, literal, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from studio_scheduler.domain.errors import (
    AlreadyEnrolledError,
    CapacityExceededError,
    DomainError,
    NotEnrolledError,
    NotFoundError,
    ValidationError,
)
from studio_scheduler.domain.guest_signups import statuses as guest_statuses
from studio_scheduler.domain.guest_signups.db_models import GuestSignup
from studio_scheduler.domain.sessions import schemas, statuses
from studio_scheduler.domain.sessions.db_models import Enrollment, SessionInstance
from studio_scheduler.domain.waitlist import statuses as waitlist_statuses
from studio_scheduler.domain.waitlist.db_models import WaitlistEntry
from studio_scheduler.infra.db import end_unchanged
from studio_scheduler.infra.metrics import metrics
from studio_scheduler.shared.clock import weekday_sunday_first

logger = logging.getLogger(__name__)


class EnrollmentOutcome(str, enum.Enum):
    BOOKED = "BOOKED"
    ALREADY_ENROLLED = "ALREADY_ENROLLED"
    CAPACITY_EXCEEDED = "CAPACITY_EXCEEDED"
    WAITLISTED = "WAITLISTED"
    ALREADY_WAITLISTED = "ALREADY_WAITLISTED"


class CancellationOutcome(str, enum.Enum):
    CANCELLED = "CANCELLED"
    NOT_ENROLLED = "NOT_ENROLLED"


@dataclass
class BookingResult:
    outcome: EnrollmentOutcome
    instance_id: int
    client_ref: str
    enrollment: Enrollment | None = None

    @property
    def ok(self) -> bool:
        return self.outcome == EnrollmentOutcome.BOOKED

    def to_error(self) -> DomainError | None:
        if self.outcome == EnrollmentOutcome.ALREADY_ENROLLED:
            return AlreadyEnrolledError(detail="Client is already enrolled in this session")
        if self.outcome == EnrollmentOutcome.CAPACITY_EXCEEDED:
            return CapacityExceededError(detail="Session is full")
        return None


@dataclass
class CancellationResult:
    outcome: CancellationOutcome
    instance_id: int
    client_ref: str
    affected: int = 0
    instance_ids: list[int] = field(default_factory=list)
    promoted: int = 0

    @property
    def ok(self) -> bool:
        return self.outcome == CancellationOutcome.CANCELLED

    def to_error(self) -> DomainError | None:
        if self.outcome == CancellationOutcome.NOT_ENROLLED:
            return NotEnrolledError(detail="Client is not enrolled in this session")
        return None


def _active_enrollment_count(instance_id_expr):
    return (
        select(func.count())
        .select_from(Enrollment)
        .where(
            Enrollment.instance_id == instance_id_expr,
            Enrollment.status == statuses.ENROLLMENT_ACTIVE,
        )
        .correlate(SessionInstance)
        .scalar_subquery()
    )


def _approved_guest_count(instance_id_expr):
    return (
        select(func.count())
        .select_from(GuestSignup)
        .where(
            GuestSignup.instance_id == instance_id_expr,
            GuestSignup.status.in_(guest_statuses.SEAT_HOLDING_STATUSES),
        )
        .correlate(SessionInstance)
        .scalar_subquery()
    )


def participant_count_clause(instance_id_expr):
    """Seats taken: active enrollments plus approved guests."""
    return _active_enrollment_count(instance_id_expr) + _approved_guest_count(instance_id_expr)


def seat_available_clause():
    """True for a ``SessionInstance`` row that still has a free seat."""
    return SessionInstance.capacity > participant_count_clause(SessionInstance.instance_id)


async def participant_count(session: AsyncSession, instance_id: int) -> int:
    value = await session.scalar(select(participant_count_clause(instance_id)))
    return int(value or 0)


async def get_instance(session: AsyncSession, instance_id: int, *, lock: bool = False) -> SessionInstance:
    stmt = select(SessionInstance).where(SessionInstance.instance_id == instance_id)
    if lock:
        stmt = stmt.with_for_update()
    instance = await session.scalar(stmt)
    if instance is None:
        raise NotFoundError(detail=f"Session {instance_id} not found")
    return instance


async def is_enrolled(session: AsyncSession, instance_id: int, client_ref: str) -> bool:
    stmt = select(
        exists().where(
            Enrollment.instance_id == instance_id,
            Enrollment.client_ref == client_ref,
            Enrollment.status == statuses.ENROLLMENT_ACTIVE,
        )
    )
    return bool(await session.scalar(stmt))


async def future_siblings(
    session: AsyncSession,
    reference: SessionInstance,
    *,
    from_date: date | None = None,
    include_overridden: bool = False,
) -> list[SessionInstance]:
    """Same-series instances on the reference weekday, on or after the reference date."""
    if reference.parent_series_id is None:
        return []
    start = max(reference.session_date, from_date) if from_date else reference.session_date
    result = await session.execute(
        select(SessionInstance)
        .where(
            SessionInstance.parent_series_id == reference.parent_series_id,
            SessionInstance.session_date >= start,
            SessionInstance.instance_id != reference.instance_id,
        )
        .order_by(SessionInstance.session_date, SessionInstance.start_time, SessionInstance.instance_id)
    )
    weekday = weekday_sunday_first(reference.session_date)
    siblings = []
    for instance in result.scalars().all():
        if weekday_sunday_first(instance.session_date) != weekday:
            continue
        if instance.is_overridden and not include_overridden:
            continue
        siblings.append(instance)
    return siblings


async def insert_enrollment(
    session: AsyncSession,
    instance_id: int,
    client_ref: str,
    *,
    source: str = statuses.SOURCE_DIRECT,
) -> BookingResult:
    """Conditionally enroll inside the caller's transaction.

    The seat check and the insert are one ``INSERT ... SELECT`` statement; the
    instance row is locked first so concurrent writers on Postgres queue behind
    each other.
    """
    await get_instance(session, instance_id, lock=True)
    already_enrolled = exists().where(
        Enrollment.instance_id == SessionInstance.instance_id,
        Enrollment.client_ref == client_ref,
        Enrollment.status == statuses.ENROLLMENT_ACTIVE,
    )
    source_rows = select(
        SessionInstance.instance_id,
        literal(client_ref, String),
        literal(statuses.ENROLLMENT_ACTIVE, String),
        literal(source, String),
        SessionInstance.session_date,
        SessionInstance.start_time,
    ).where(
        SessionInstance.instance_id == instance_id,
        seat_available_clause(),
        ~already_enrolled,
    )
    stmt = insert(Enrollment).from_select(
        ["instance_id", "client_ref", "status", "source", "session_date", "session_time"],
        source_rows,
    )
    result = await session.execute(stmt)
    if result.rowcount == 1:
        enrollment = await session.scalar(
            select(Enrollment).where(
                Enrollment.instance_id == instance_id,
                Enrollment.client_ref == client_ref,
                Enrollment.status == statuses.ENROLLMENT_ACTIVE,
            )
        )
        await session.execute(
            update(WaitlistEntry)
            .where(
                WaitlistEntry.instance_id == instance_id,
                WaitlistEntry.client_ref == client_ref,
                WaitlistEntry.status.in_(waitlist_statuses.ACTIVE_STATUSES),
            )
            .values(status=waitlist_statuses.BOOKED)
        )
        return BookingResult(EnrollmentOutcome.BOOKED, instance_id, client_ref, enrollment)
    if await is_enrolled(session, instance_id, client_ref):
        return BookingResult(EnrollmentOutcome.ALREADY_ENROLLED, instance_id, client_ref)
    return BookingResult(EnrollmentOutcome.CAPACITY_EXCEEDED, instance_id, client_ref)


async def book(
    session: AsyncSession,
    instance_id: int,
    client_ref: str,
    *,
    source: str = statuses.SOURCE_DIRECT,
) -> BookingResult:
    try:
        result = await insert_enrollment(session, instance_id, client_ref, source=source)
    except IntegrityError:
        # Lost a race against the same client's concurrent booking.
        await session.rollback()
        result = BookingResult(EnrollmentOutcome.ALREADY_ENROLLED, instance_id, client_ref)
    except DomainError:
        await session.rollback()
        raise
    if result.ok:
        await session.commit()
    else:
        await end_unchanged(session)
    metrics.record_enrollment(result.outcome.value.lower())
    logger.info(
        "enrollment_booked" if result.ok else "enrollment_not_booked",
        extra={"extra": {"instance_id": instance_id, "client_ref": client_ref, "outcome": result.outcome.value}},
    )
    return result


async def cancel_enrollment_row(
    session: AsyncSession,
    instance_id: int,
    client_ref: str,
    *,
    now: datetime,
    reason: str = statuses.CANCEL_REASON_CLIENT,
) -> bool:
    result = await session.execute(
        update(Enrollment)
        .where(
            Enrollment.instance_id == instance_id,
            Enrollment.client_ref == client_ref,
            Enrollment.status == statuses.ENROLLMENT_ACTIVE,
        )
        .values(status=statuses.ENROLLMENT_CANCELLED, cancelled_at=now, cancel_reason=reason)
    )
    return result.rowcount == 1


async def cancel(
    session: AsyncSession,
    instance_id: int,
    client_ref: str,
    *,
    cascade: bool = False,
    reference_date: date,
    now: datetime,
) -> CancellationResult:
    """Cancel a client's seat, optionally in every future instance of the series too.

    Each freed seat is offered to the waitlist before returning.
    """
    from studio_scheduler.domain.waitlist.service import promote_in_transaction  # lazy import

    reference = await get_instance(session, instance_id)
    targets = [reference]
    if cascade:
        targets.extend(await future_siblings(session, reference, from_date=reference_date, include_overridden=True))

    result = CancellationResult(CancellationOutcome.NOT_ENROLLED, instance_id, client_ref)
    try:
        for target in targets:
            if not await cancel_enrollment_row(session, target.instance_id, client_ref, now=now):
                continue
            result.affected += 1
            result.instance_ids.append(target.instance_id)
            promoted = await promote_in_transaction(session, target.instance_id, now=now)
            result.promoted += len(promoted)
    except Exception:
        await session.rollback()
        raise

    if result.affected:
        result.outcome = CancellationOutcome.CANCELLED
        await session.commit()
    else:
        await end_unchanged(session)
    metrics.record_enrollment("cancelled", result.affected)
    logger.info(
        "enrollment_cancelled" if result.ok else "enrollment_cancel_noop",
        extra={
            "extra": {
                "instance_id": instance_id,
                "client_ref": client_ref,
                "cascade": cascade,
                "affected": result.affected,
                "promoted": result.promoted,
            }
        },
    )
    return result


async def create_instance(session: AsyncSession, payload: schemas.SessionInstanceCreate) -> SessionInstance:
    if payload.capacity <= 0:
        raise ValidationError(detail="Capacity must be positive")
    instance = SessionInstance(
        name=payload.name,
        description=payload.description,
        location=payload.location,
        instructor_ref=payload.instructor_ref,
        session_date=payload.session_date,
        start_time=payload.start_time,
        duration_minutes=payload.duration_minutes,
        capacity=payload.capacity,
        series_id=None,
        parent_series_id=None,
        is_generated_instance=False,
        is_overridden=False,
    )
    session.add(instance)
    await session.commit()
    await session.refresh(instance)
    logger.info("session_instance_created", extra={"extra": {"instance_id": instance.instance_id}})
    return instance


async def list_instances(
    session: AsyncSession,
    *,
    date_from: date | None = None,
    date_to: date | None = None,
    series_id: int | None = None,
    instructor_ref: str | None = None,
) -> list[tuple[SessionInstance, int]]:
    stmt = select(SessionInstance, participant_count_clause(SessionInstance.instance_id))
    if date_from:
        stmt = stmt.where(SessionInstance.session_date >= date_from)
    if date_to:
        stmt = stmt.where(SessionInstance.session_date <= date_to)
    if series_id is not None:
        stmt = stmt.where(SessionInstance.parent_series_id == series_id)
    if instructor_ref:
        stmt = stmt.where(SessionInstance.instructor_ref == instructor_ref)
    stmt = stmt.order_by(SessionInstance.session_date, SessionInstance.start_time, SessionInstance.instance_id)
    result = await session.execute(stmt)
    return [(instance, int(count or 0)) for instance, count in result.all()]


async def list_participants(session: AsyncSession, instance_id: int) -> list[Enrollment]:
    await get_instance(session, instance_id)
    result = await session.execute(
        select(Enrollment)
        .where(Enrollment.instance_id == instance_id, Enrollment.status == statuses.ENROLLMENT_ACTIVE)
        .order_by(Enrollment.created_at, Enrollment.enrollment_id)
    )
    return list(result.scalars().all())


def to_response(instance: SessionInstance, count: int) -> schemas.SessionInstanceResponse:
    return schemas.SessionInstanceResponse(
        instance_id=instance.instance_id,
        name=instance.name,
        description=instance.description,
        location=instance.location,
        instructor_ref=instance.instructor_ref,
        session_date=instance.session_date,
        start_time=instance.start_time,
        duration_minutes=instance.duration_minutes,
        capacity=instance.capacity,
        participant_count=count,
        seats_left=max(instance.capacity - count, 0),
        series_id=instance.series_id,
        parent_series_id=instance.parent_series_id,
        is_generated_instance=instance.is_generated_instance,
        is_overridden=instance.is_overridden,
    )
