"""Edits and deletions for one session or for it and its future siblings."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from studio_scheduler.domain.errors import CascadeConflictError
from studio_scheduler.domain.guest_signups import statuses as guest_statuses
from studio_scheduler.domain.guest_signups.db_models import GuestSignup, RescheduleProposal
from studio_scheduler.domain.notifications import service as notifications
from studio_scheduler.domain.series.db_models import SeriesExclusion
from studio_scheduler.domain.sessions import schemas, statuses
from studio_scheduler.domain.sessions.db_models import Enrollment, SessionInstance
from studio_scheduler.domain.sessions.service import future_siblings, get_instance, participant_count
from studio_scheduler.domain.waitlist import statuses as waitlist_statuses
from studio_scheduler.domain.waitlist.db_models import WaitlistEntry
from studio_scheduler.infra.db import end_unchanged
from studio_scheduler.infra.metrics import metrics

logger = logging.getLogger(__name__)

_INSTANCE_FIELDS = (
    "name",
    "description",
    "location",
    "instructor_ref",
    "start_time",
    "duration_minutes",
    "capacity",
)
_SCHEDULE_FIELDS = {"session_date", "start_time", "duration_minutes"}


@dataclass
class CascadeOutcome:
    reference_instance_id: int
    affected_instance_ids: list[int] = field(default_factory=list)
    cancelled_enrollments: int = 0

    def to_response(self) -> schemas.CascadeResponse:
        return schemas.CascadeResponse(
            reference_instance_id=self.reference_instance_id,
            affected_instance_ids=list(self.affected_instance_ids),
            cancelled_enrollments=self.cancelled_enrollments,
        )


async def _targets(
    session: AsyncSession, reference: SessionInstance, *, cascade: bool, include_overridden: bool = False
) -> list[SessionInstance]:
    targets = [reference]
    if cascade:
        targets.extend(await future_siblings(session, reference, include_overridden=include_overridden))
    return targets


async def _active_client_refs(session: AsyncSession, instance_id: int) -> list[str]:
    result = await session.execute(
        select(Enrollment.client_ref)
        .where(Enrollment.instance_id == instance_id, Enrollment.status == statuses.ENROLLMENT_ACTIVE)
        .order_by(Enrollment.enrollment_id)
    )
    return list(result.scalars().all())


async def check_capacity(session: AsyncSession, targets: list[SessionInstance], capacity: int) -> None:
    for target in targets:
        taken = await participant_count(session, target.instance_id)
        if capacity < taken:
            raise CascadeConflictError(
                detail=f"Capacity {capacity} is below the {taken} participants of session {target.instance_id}",
                instance_id=target.instance_id,
            )


def _patch_values(patch: schemas.SessionInstancePatch) -> dict:
    values = patch.model_dump(exclude_unset=True)
    return {key: value for key, value in values.items() if value is not None or key in {"description", "location"}}


async def apply_changes(
    session: AsyncSession,
    targets: list[SessionInstance],
    values: dict,
    *,
    day_delta: timedelta | None,
    now: datetime,
    mark_overridden: bool,
) -> list[int]:
    """Write ``values`` to every target inside the caller's transaction.

    Returns the ids whose capacity grew, which the caller promotes into.
    """
    grown: list[int] = []
    schedule_changed = bool(day_delta) or bool(_SCHEDULE_FIELDS & values.keys())
    for target in targets:
        previous_capacity = target.capacity
        for key in _INSTANCE_FIELDS:
            if key in values:
                setattr(target, key, values[key])
        if day_delta:
            target.session_date = target.session_date + day_delta
        if mark_overridden:
            target.is_overridden = True
        if target.capacity > previous_capacity:
            grown.append(target.instance_id)
        if schedule_changed:
            await _sync_enrollment_snapshot(session, target)
            for client_ref in await _active_client_refs(session, target.instance_id):
                await notifications.enqueue_notification(
                    session,
                    recipient=client_ref,
                    template=notifications.TEMPLATE_INSTANCE_UPDATED,
                    payload={
                        "instance_id": target.instance_id,
                        "name": target.name,
                        "session_date": target.session_date.isoformat(),
                        "start_time": target.start_time.isoformat(timespec="minutes"),
                    },
                    dedupe_key=f"{target.instance_id}:{client_ref}:{now.isoformat()}",
                )
    await session.flush()
    return grown


async def _sync_enrollment_snapshot(session: AsyncSession, target: SessionInstance) -> None:
    await session.execute(
        update(Enrollment)
        .where(Enrollment.instance_id == target.instance_id, Enrollment.status == statuses.ENROLLMENT_ACTIVE)
        .values(session_date=target.session_date, session_time=target.start_time)
    )


async def update_instance(
    session: AsyncSession,
    instance_id: int,
    patch: schemas.SessionInstancePatch,
    *,
    cascade: bool = False,
    now: datetime,
) -> CascadeOutcome:
    """Patch one session, or with ``cascade`` every future non-overridden sibling too.

    A new ``session_date`` on the reference moves each sibling by the same
    number of days. A capacity below any target's participant count aborts
    the whole edit with ``CascadeConflictError``.
    """
    from studio_scheduler.domain.waitlist.service import promote_in_transaction  # lazy import

    reference = await get_instance(session, instance_id)
    values = _patch_values(patch)
    day_delta = None
    if "session_date" in values:
        day_delta = values.pop("session_date") - reference.session_date

    outcome = CascadeOutcome(reference_instance_id=instance_id)
    targets = await _targets(session, reference, cascade=cascade)
    if "capacity" in values:
        try:
            await check_capacity(session, targets, values["capacity"])
        except CascadeConflictError:
            await end_unchanged(session)
            raise
    try:
        grown = await apply_changes(
            session,
            targets,
            values,
            day_delta=day_delta,
            now=now,
            mark_overridden=not cascade,
        )
        for target_id in grown:
            await promote_in_transaction(session, target_id, now=now)
        outcome.affected_instance_ids = [target.instance_id for target in targets]
        await session.commit()
    except Exception:
        await session.rollback()
        raise

    logger.info(
        "session_instance_updated",
        extra={
            "extra": {
                "instance_id": instance_id,
                "cascade": cascade,
                "affected": len(outcome.affected_instance_ids),
                "fields": sorted(values.keys()) + (["session_date"] if day_delta is not None else []),
            }
        },
    )
    return outcome


async def remove_instance(
    session: AsyncSession,
    target: SessionInstance,
    *,
    now: datetime,
    record_exclusion: bool = True,
) -> int:
    """Tear down one session inside the caller's transaction; returns cancelled enrollments."""
    client_refs = await _active_client_refs(session, target.instance_id)
    await session.execute(
        update(Enrollment)
        .where(Enrollment.instance_id == target.instance_id, Enrollment.status == statuses.ENROLLMENT_ACTIVE)
        .values(
            status=statuses.ENROLLMENT_CANCELLED,
            cancelled_at=now,
            cancel_reason=statuses.CANCEL_REASON_INSTANCE_DELETED,
        )
    )
    await session.execute(
        update(WaitlistEntry)
        .where(
            WaitlistEntry.instance_id == target.instance_id,
            WaitlistEntry.status.in_(waitlist_statuses.ACTIVE_STATUSES),
        )
        .values(status=waitlist_statuses.EXPIRED)
    )

    guests = (
        await session.execute(select(GuestSignup).where(GuestSignup.instance_id == target.instance_id))
    ).scalars().all()
    guest_emails = []
    for guest in guests:
        if guest.status in (guest_statuses.PENDING_APPROVAL, guest_statuses.RESCHEDULE_PROPOSED):
            guest.status = guest_statuses.REJECTED
        guest_emails.append(guest.guest_email)

    if record_exclusion and target.is_generated_instance and target.parent_series_id is not None:
        excluded_date = target.origin_date or target.session_date
        existing = await session.scalar(
            select(SeriesExclusion).where(
                SeriesExclusion.series_id == target.parent_series_id,
                SeriesExclusion.excluded_date == excluded_date,
            )
        )
        if existing is None:
            session.add(SeriesExclusion(series_id=target.parent_series_id, excluded_date=excluded_date))

    payload = {
        "instance_id": target.instance_id,
        "name": target.name,
        "session_date": target.session_date.isoformat(),
        "start_time": target.start_time.isoformat(timespec="minutes"),
    }
    for recipient in client_refs + guest_emails:
        await notifications.enqueue_notification(
            session,
            recipient=recipient,
            template=notifications.TEMPLATE_INSTANCE_CANCELLED,
            payload=payload,
            dedupe_key=f"{target.instance_id}:{recipient}",
        )

    # Foreign keys are not enforced on every backend, so detach history rows here.
    await session.execute(
        update(Enrollment).where(Enrollment.instance_id == target.instance_id).values(instance_id=None)
    )
    await session.execute(
        update(WaitlistEntry).where(WaitlistEntry.instance_id == target.instance_id).values(instance_id=None)
    )
    await session.execute(
        update(GuestSignup).where(GuestSignup.instance_id == target.instance_id).values(instance_id=None)
    )
    await session.execute(
        update(RescheduleProposal)
        .where(RescheduleProposal.proposed_instance_id == target.instance_id)
        .values(proposed_instance_id=None)
    )
    await session.delete(target)
    await session.flush()
    return len(client_refs)


async def delete_instance(
    session: AsyncSession,
    instance_id: int,
    *,
    cascade: bool = False,
    now: datetime,
) -> CascadeOutcome:
    reference = await get_instance(session, instance_id)
    outcome = CascadeOutcome(reference_instance_id=instance_id)
    try:
        targets = await _targets(session, reference, cascade=cascade)
        for target in targets:
            outcome.affected_instance_ids.append(target.instance_id)
            outcome.cancelled_enrollments += await remove_instance(session, target, now=now)
        await session.commit()
    except Exception:
        await session.rollback()
        raise

    metrics.record_enrollment("instance_deleted", outcome.cancelled_enrollments)
    logger.info(
        "session_instance_deleted",
        extra={
            "extra": {
                "instance_id": instance_id,
                "cascade": cascade,
                "affected": len(outcome.affected_instance_ids),
                "cancelled_enrollments": outcome.cancelled_enrollments,
            }
        },
    )
    return outcome
