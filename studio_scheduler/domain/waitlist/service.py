from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from studio_scheduler.domain.errors import (
    AlreadyEnrolledError,
    ConflictError,
    DomainError,
    DuplicateWaitlistError,
    NotFoundError,
    ValidationError,
)
from studio_scheduler.domain.notifications import service as notifications
from studio_scheduler.domain.sessions import service as enrollment_service
from studio_scheduler.domain.sessions import statuses as enrollment_statuses
from studio_scheduler.domain.sessions.service import EnrollmentOutcome
from studio_scheduler.domain.waitlist import statuses
from studio_scheduler.domain.waitlist.db_models import WaitlistEntry
from studio_scheduler.infra.db import end_unchanged
from studio_scheduler.infra.metrics import metrics

logger = logging.getLogger(__name__)


class WaitlistOutcome(str, enum.Enum):
    JOINED = "JOINED"
    DUPLICATE = "DUPLICATE"
    SEATS_AVAILABLE = "SEATS_AVAILABLE"
    ALREADY_ENROLLED = "ALREADY_ENROLLED"
    LEFT = "LEFT"
    NOT_ON_WAITLIST = "NOT_ON_WAITLIST"


@dataclass
class WaitlistResult:
    outcome: WaitlistOutcome
    instance_id: int
    client_ref: str
    entry: WaitlistEntry | None = None
    position: int | None = None

    @property
    def ok(self) -> bool:
        return self.outcome in {WaitlistOutcome.JOINED, WaitlistOutcome.LEFT}

    def to_error(self) -> DomainError | None:
        if self.outcome == WaitlistOutcome.DUPLICATE:
            return DuplicateWaitlistError(detail="Client is already on the waitlist for this session")
        if self.outcome == WaitlistOutcome.ALREADY_ENROLLED:
            return AlreadyEnrolledError(detail="Client is already enrolled in this session")
        if self.outcome == WaitlistOutcome.SEATS_AVAILABLE:
            return ConflictError(detail="Session still has free seats", title="Seats Available")
        if self.outcome == WaitlistOutcome.NOT_ON_WAITLIST:
            return NotFoundError(detail="Client is not on the waitlist for this session")
        return None


def _active_entry_stmt(instance_id: int, client_ref: str):
    return select(WaitlistEntry).where(
        WaitlistEntry.instance_id == instance_id,
        WaitlistEntry.client_ref == client_ref,
        WaitlistEntry.status.in_(statuses.ACTIVE_STATUSES),
    )


async def queue_position(session: AsyncSession, entry: WaitlistEntry) -> int:
    ahead = await session.scalar(
        select(func.count())
        .select_from(WaitlistEntry)
        .where(
            WaitlistEntry.instance_id == entry.instance_id,
            WaitlistEntry.status.in_(statuses.ACTIVE_STATUSES),
            or_(
                WaitlistEntry.created_at < entry.created_at,
                and_(
                    WaitlistEntry.created_at == entry.created_at,
                    WaitlistEntry.entry_id < entry.entry_id,
                ),
            ),
        )
    )
    return int(ahead or 0) + 1


async def add_to_waitlist(
    session: AsyncSession,
    instance_id: int,
    client_ref: str,
    *,
    now: datetime,
) -> WaitlistResult:
    """Queue a client inside the caller's transaction. Only full sessions take entries."""
    instance = await enrollment_service.get_instance(session, instance_id)
    if await enrollment_service.is_enrolled(session, instance_id, client_ref):
        return WaitlistResult(WaitlistOutcome.ALREADY_ENROLLED, instance_id, client_ref)
    taken = await enrollment_service.participant_count(session, instance_id)
    if taken < instance.capacity:
        return WaitlistResult(WaitlistOutcome.SEATS_AVAILABLE, instance_id, client_ref)
    existing = await session.scalar(_active_entry_stmt(instance_id, client_ref))
    if existing is not None:
        return WaitlistResult(WaitlistOutcome.DUPLICATE, instance_id, client_ref, existing)

    entry = WaitlistEntry(
        instance_id=instance_id,
        client_ref=client_ref,
        status=statuses.PENDING,
        created_at=now,
    )
    session.add(entry)
    await session.flush()
    position = await queue_position(session, entry)
    return WaitlistResult(WaitlistOutcome.JOINED, instance_id, client_ref, entry, position)


async def join_waitlist(
    session: AsyncSession,
    instance_id: int,
    client_ref: str,
    *,
    now: datetime,
) -> WaitlistResult:
    try:
        result = await add_to_waitlist(session, instance_id, client_ref, now=now)
    except IntegrityError:
        await session.rollback()
        result = WaitlistResult(WaitlistOutcome.DUPLICATE, instance_id, client_ref)
    except DomainError:
        await session.rollback()
        raise
    if result.ok:
        await session.commit()
        metrics.record_waitlist("joined")
    else:
        await end_unchanged(session)
    logger.info(
        "waitlist_join",
        extra={
            "extra": {
                "instance_id": instance_id,
                "client_ref": client_ref,
                "outcome": result.outcome.value,
                "position": result.position,
            }
        },
    )
    return result


async def leave_waitlist(session: AsyncSession, instance_id: int, client_ref: str) -> WaitlistResult:
    entry = await session.scalar(_active_entry_stmt(instance_id, client_ref))
    if entry is None:
        return WaitlistResult(WaitlistOutcome.NOT_ON_WAITLIST, instance_id, client_ref)
    updated = await session.execute(
        update(WaitlistEntry)
        .where(WaitlistEntry.entry_id == entry.entry_id, WaitlistEntry.status.in_(statuses.ACTIVE_STATUSES))
        .values(status=statuses.CANCELLED_BY_USER)
    )
    if updated.rowcount != 1:
        await end_unchanged(session)
        return WaitlistResult(WaitlistOutcome.NOT_ON_WAITLIST, instance_id, client_ref)
    await session.commit()
    await session.refresh(entry)
    metrics.record_waitlist("left")
    logger.info("waitlist_left", extra={"extra": {"instance_id": instance_id, "client_ref": client_ref}})
    return WaitlistResult(WaitlistOutcome.LEFT, instance_id, client_ref, entry)


async def expire_waitlist_entry(session: AsyncSession, entry_id: int) -> WaitlistEntry:
    """Terminal transition for an external timer; NOTIFIED entries never expire on their own."""
    entry = await session.get(WaitlistEntry, entry_id)
    if entry is None:
        raise NotFoundError(detail=f"Waitlist entry {entry_id} not found")
    updated = await session.execute(
        update(WaitlistEntry)
        .where(WaitlistEntry.entry_id == entry_id, WaitlistEntry.status.in_(statuses.ACTIVE_STATUSES))
        .values(status=statuses.EXPIRED)
    )
    if updated.rowcount != 1:
        await end_unchanged(session)
        raise ValidationError(
            detail="Waitlist entry is no longer active",
            errors=[{"code": "waitlist_entry_not_active", "entry_id": entry_id}],
        )
    await session.commit()
    await session.refresh(entry)
    metrics.record_waitlist("expired")
    logger.info("waitlist_entry_expired", extra={"extra": {"entry_id": entry_id}})
    return entry


async def promote_in_transaction(session: AsyncSession, instance_id: int, *, now: datetime) -> list[WaitlistEntry]:
    """Fill free seats from the waitlist in FIFO order without committing.

    Each entry is claimed with a PENDING -> NOTIFIED compare-and-swap before
    booking on the client's behalf; an entry that lost the swap is skipped.
    """
    instance = await enrollment_service.get_instance(session, instance_id)
    promoted: list[WaitlistEntry] = []
    skipped: set[int] = set()
    while await enrollment_service.participant_count(session, instance_id) < instance.capacity:
        stmt = (
            select(WaitlistEntry)
            .where(WaitlistEntry.instance_id == instance_id, WaitlistEntry.status == statuses.PENDING)
            .order_by(WaitlistEntry.created_at, WaitlistEntry.entry_id)
            .limit(1)
        )
        if skipped:
            stmt = stmt.where(WaitlistEntry.entry_id.notin_(skipped))
        entry = await session.scalar(stmt)
        if entry is None:
            break
        claimed = await session.execute(
            update(WaitlistEntry)
            .where(WaitlistEntry.entry_id == entry.entry_id, WaitlistEntry.status == statuses.PENDING)
            .values(status=statuses.NOTIFIED, notified_at=now)
        )
        if claimed.rowcount != 1:
            skipped.add(entry.entry_id)
            continue

        booking = await enrollment_service.insert_enrollment(
            session, instance_id, entry.client_ref, source=enrollment_statuses.SOURCE_WAITLIST
        )
        if booking.outcome == EnrollmentOutcome.CAPACITY_EXCEEDED:
            await session.execute(
                update(WaitlistEntry)
                .where(WaitlistEntry.entry_id == entry.entry_id)
                .values(status=statuses.PENDING, notified_at=None)
            )
            break

        await session.execute(
            update(WaitlistEntry).where(WaitlistEntry.entry_id == entry.entry_id).values(status=statuses.BOOKED)
        )
        skipped.add(entry.entry_id)
        if booking.outcome != EnrollmentOutcome.BOOKED:
            continue
        promoted.append(entry)
        await notifications.enqueue_notification(
            session,
            recipient=entry.client_ref,
            template=notifications.TEMPLATE_WAITLIST_PROMOTED,
            payload={
                "instance_id": instance_id,
                "session_date": instance.session_date.isoformat(),
                "start_time": instance.start_time.isoformat(timespec="minutes"),
            },
            dedupe_key=f"entry:{entry.entry_id}",
        )
        metrics.record_waitlist("promoted")
        logger.info(
            "waitlist_promoted",
            extra={"extra": {"instance_id": instance_id, "entry_id": entry.entry_id, "client_ref": entry.client_ref}},
        )
    return promoted


async def promote(session: AsyncSession, instance_id: int, *, now: datetime) -> list[WaitlistEntry]:
    try:
        promoted = await promote_in_transaction(session, instance_id, now=now)
    except Exception:
        await session.rollback()
        raise
    await session.commit()
    return promoted


async def list_waitlist(
    session: AsyncSession, instance_id: int, *, include_closed: bool = False
) -> list[WaitlistEntry]:
    await enrollment_service.get_instance(session, instance_id)
    stmt = select(WaitlistEntry).where(WaitlistEntry.instance_id == instance_id)
    if not include_closed:
        stmt = stmt.where(WaitlistEntry.status.in_(statuses.ACTIVE_STATUSES))
    stmt = stmt.order_by(WaitlistEntry.created_at, WaitlistEntry.entry_id)
    result = await session.execute(stmt)
    return list(result.scalars().all())
