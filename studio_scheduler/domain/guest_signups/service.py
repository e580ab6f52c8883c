from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy import exists, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from studio_scheduler.domain import reschedule_tokens
from studio_scheduler.domain.errors import (
    CapacityExceededError,
    ConflictError,
    DomainError,
    NotFoundError,
    ValidationError,
)
from studio_scheduler.domain.guest_signups import schemas, statuses
from studio_scheduler.domain.guest_signups.db_models import GuestSignup, RescheduleProposal
from studio_scheduler.domain.notifications import service as notifications
from studio_scheduler.domain.sessions import service as enrollment_service
from studio_scheduler.domain.sessions.db_models import SessionInstance
from studio_scheduler.infra.db import end_unchanged
from studio_scheduler.infra.metrics import metrics
from studio_scheduler.settings import settings

logger = logging.getLogger(__name__)


def _seat_free_for(instance_id_expr):
    return exists().where(
        SessionInstance.instance_id == instance_id_expr,
        enrollment_service.seat_available_clause(),
    )


def _instance_payload(instance: SessionInstance) -> dict:
    return {
        "instance_id": instance.instance_id,
        "name": instance.name,
        "session_date": instance.session_date.isoformat(),
        "start_time": instance.start_time.isoformat(timespec="minutes"),
    }


async def get_signup(session: AsyncSession, signup_id: int) -> GuestSignup:
    signup = await session.get(GuestSignup, signup_id)
    if signup is None:
        raise NotFoundError(detail=f"Guest signup {signup_id} not found")
    return signup


def _ensure_open(instance: SessionInstance, *, now: datetime) -> None:
    if instance.starts_at <= now:
        raise ValidationError(detail="Session has already started", errors=[{"code": "session_started"}])
    if instance.starts_at - now < timedelta(minutes=settings.guest_signup_cutoff_minutes):
        raise ValidationError(
            detail="Signups for this session are closed",
            errors=[{"code": "signup_closed", "cutoff_minutes": settings.guest_signup_cutoff_minutes}],
        )


async def _email_taken(session: AsyncSession, instance_id: int, guest_email: str, *, exclude_id=None) -> bool:
    criteria = [GuestSignup.instance_id == instance_id, GuestSignup.guest_email == guest_email]
    if exclude_id is not None:
        criteria.append(GuestSignup.signup_id != exclude_id)
    return bool(await session.scalar(select(exists().where(*criteria))))


async def _release_seat(session: AsyncSession, instance_id: int | None, *, now: datetime) -> None:
    from studio_scheduler.domain.waitlist.service import promote_in_transaction  # lazy import

    if instance_id is not None:
        await promote_in_transaction(session, instance_id, now=now)


async def create_guest_signup(
    session: AsyncSession,
    instance_id: int,
    payload: schemas.GuestSignupRequest,
    *,
    now: datetime,
) -> GuestSignup:
    instance = await enrollment_service.get_instance(session, instance_id)
    _ensure_open(instance, now=now)
    email = payload.guest_email.lower()
    if await _email_taken(session, instance_id, email):
        raise ConflictError(
            detail="This email is already signed up for the session",
            errors=[{"code": "duplicate_guest_signup"}],
        )
    if await enrollment_service.participant_count(session, instance_id) >= instance.capacity:
        raise CapacityExceededError(detail="Session is full")

    signup = GuestSignup(
        instance_id=instance_id,
        guest_name=payload.guest_name,
        guest_email=email,
        guest_phone=payload.guest_phone,
        status=statuses.PENDING_APPROVAL,
    )
    try:
        session.add(signup)
        await session.flush()
        await notifications.enqueue_notification(
            session,
            recipient=email,
            template=notifications.TEMPLATE_GUEST_SIGNUP_RECEIVED,
            payload={**_instance_payload(instance), "signup_id": signup.signup_id},
            dedupe_key=str(signup.signup_id),
        )
        await session.commit()
    except IntegrityError as exc:
        await session.rollback()
        raise ConflictError(
            detail="This email is already signed up for the session",
            errors=[{"code": "duplicate_guest_signup"}],
        ) from exc
    except Exception:
        await session.rollback()
        raise
    await session.refresh(signup)
    logger.info(
        "guest_signup_created",
        extra={"extra": {"signup_id": signup.signup_id, "instance_id": instance_id, "guest_email": email}},
    )
    return signup


async def approve_guest_signup(session: AsyncSession, signup_id: int, *, decided_by: str) -> GuestSignup:
    """Approve a pending signup only while its session still has a seat; one statement decides both."""
    signup = await get_signup(session, signup_id)
    if signup.instance_id is None:
        raise ConflictError(detail="Session no longer exists", errors=[{"code": "session_deleted"}])
    await enrollment_service.get_instance(session, signup.instance_id, lock=True)
    approved = await session.execute(
        update(GuestSignup)
        .where(
            GuestSignup.signup_id == signup_id,
            GuestSignup.status == statuses.PENDING_APPROVAL,
            _seat_free_for(GuestSignup.instance_id),
        )
        .values(status=statuses.APPROVED, decided_by=decided_by)
        .execution_options(synchronize_session=False)
    )
    if approved.rowcount != 1:
        await end_unchanged(session)
        await session.refresh(signup)
        if signup.status != statuses.PENDING_APPROVAL:
            raise ConflictError(
                detail="Guest signup is not awaiting approval",
                errors=[{"code": "guest_signup_not_pending", "status": signup.status}],
            )
        raise CapacityExceededError(detail="Session is full")

    await session.refresh(signup)
    instance = await enrollment_service.get_instance(session, signup.instance_id)
    await notifications.enqueue_notification(
        session,
        recipient=signup.guest_email,
        template=notifications.TEMPLATE_GUEST_SIGNUP_APPROVED,
        payload={**_instance_payload(instance), "signup_id": signup_id},
        dedupe_key=str(signup_id),
    )
    await session.commit()
    logger.info("guest_signup_approved", extra={"extra": {"signup_id": signup_id, "decided_by": decided_by}})
    return signup


async def reject_guest_signup(session: AsyncSession, signup_id: int, *, decided_by: str) -> GuestSignup:
    signup = await get_signup(session, signup_id)
    rejected = await session.execute(
        update(GuestSignup)
        .where(
            GuestSignup.signup_id == signup_id,
            GuestSignup.status.in_((statuses.PENDING_APPROVAL, statuses.RESCHEDULE_PROPOSED)),
        )
        .values(status=statuses.REJECTED, decided_by=decided_by)
        .execution_options(synchronize_session=False)
    )
    if rejected.rowcount != 1:
        await end_unchanged(session)
        raise ConflictError(
            detail="Guest signup can no longer be rejected",
            errors=[{"code": "guest_signup_not_pending", "status": signup.status}],
        )
    await session.refresh(signup)
    await notifications.enqueue_notification(
        session,
        recipient=signup.guest_email,
        template=notifications.TEMPLATE_GUEST_SIGNUP_REJECTED,
        payload={"signup_id": signup_id, "instance_id": signup.instance_id},
        dedupe_key=str(signup_id),
    )
    await session.commit()
    logger.info("guest_signup_rejected", extra={"extra": {"signup_id": signup_id, "decided_by": decided_by}})
    return signup


async def propose_reschedule(
    session: AsyncSession,
    signup_id: int,
    proposed_instance_id: int,
    *,
    now: datetime,
) -> RescheduleProposal:
    """Offer the guest a different session through a single-use token."""
    signup = await get_signup(session, signup_id)
    if signup.status == statuses.REJECTED:
        raise ConflictError(
            detail="Rejected signups cannot be rescheduled",
            errors=[{"code": "guest_signup_rejected"}],
        )
    if signup.instance_id == proposed_instance_id:
        raise ValidationError(
            detail="Proposed session is the current one",
            errors=[{"code": "same_instance"}],
        )
    proposed = await enrollment_service.get_instance(session, proposed_instance_id)
    _ensure_open(proposed, now=now)
    if await enrollment_service.participant_count(session, proposed_instance_id) >= proposed.capacity:
        raise CapacityExceededError(detail="Proposed session is full")
    if await _email_taken(session, proposed_instance_id, signup.guest_email, exclude_id=signup_id):
        raise ConflictError(
            detail="Guest is already signed up for the proposed session",
            errors=[{"code": "duplicate_guest_signup"}],
        )

    previous_status = signup.status
    proposal = RescheduleProposal(
        signup_id=signup_id,
        proposed_instance_id=proposed_instance_id,
        token=reschedule_tokens.issue_token(),
        expires_at=reschedule_tokens.token_expiry(now),
    )
    try:
        session.add(proposal)
        signup.status = statuses.RESCHEDULE_PROPOSED
        await session.flush()
        if previous_status in statuses.SEAT_HOLDING_STATUSES:
            await _release_seat(session, signup.instance_id, now=now)
        await notifications.enqueue_notification(
            session,
            recipient=signup.guest_email,
            template=notifications.TEMPLATE_GUEST_RESCHEDULE_PROPOSED,
            payload={
                **_instance_payload(proposed),
                "signup_id": signup_id,
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
    metrics.record_reschedule("guest", "proposed")
    logger.info(
        "guest_reschedule_proposed",
        extra={
            "extra": {
                "signup_id": signup_id,
                "proposal_id": proposal.proposal_id,
                "proposed_instance_id": proposed_instance_id,
            }
        },
    )
    return proposal


async def confirm_reschedule(session: AsyncSession, token: str, *, now: datetime) -> GuestSignup:
    """Consume ``token`` and move the signup to the proposed session as APPROVED.

    A full session raises ``CapacityExceededError`` and the rollback leaves
    the token unused.
    """
    try:
        proposal = await reschedule_tokens.consume_token(session, RescheduleProposal, token, now=now)
    except DomainError as exc:
        await end_unchanged(session)
        metrics.record_reschedule("guest", type(exc).__name__)
        raise
    except Exception as exc:
        await session.rollback()
        metrics.record_reschedule("guest", type(exc).__name__)
        raise

    try:
        signup = await get_signup(session, proposal.signup_id)
        if proposal.proposed_instance_id is None:
            raise NotFoundError(detail="Proposed session no longer exists")
        if signup.status == statuses.REJECTED:
            raise ConflictError(detail="Guest signup was rejected", errors=[{"code": "guest_signup_rejected"}])
        if await _email_taken(session, proposal.proposed_instance_id, signup.guest_email, exclude_id=signup.signup_id):
            raise ConflictError(
                detail="Guest is already signed up for the proposed session",
                errors=[{"code": "duplicate_guest_signup"}],
            )
        await enrollment_service.get_instance(session, proposal.proposed_instance_id, lock=True)
        previous_instance_id = signup.instance_id
        previous_status = signup.status
        moved = await session.execute(
            update(GuestSignup)
            .where(
                GuestSignup.signup_id == signup.signup_id,
                _seat_free_for(proposal.proposed_instance_id),
            )
            .values(instance_id=proposal.proposed_instance_id, status=statuses.APPROVED)
            .execution_options(synchronize_session=False)
        )
        if moved.rowcount != 1:
            raise CapacityExceededError(detail="Proposed session is full")
        if previous_status in statuses.SEAT_HOLDING_STATUSES:
            await _release_seat(session, previous_instance_id, now=now)
        await session.refresh(signup)
        instance = await enrollment_service.get_instance(session, proposal.proposed_instance_id)
        await notifications.enqueue_notification(
            session,
            recipient=signup.guest_email,
            template=notifications.TEMPLATE_GUEST_RESCHEDULE_CONFIRMED,
            payload={**_instance_payload(instance), "signup_id": signup.signup_id},
            dedupe_key=str(proposal.proposal_id),
        )
        await session.commit()
    except Exception as exc:
        await session.rollback()
        metrics.record_reschedule("guest", type(exc).__name__)
        raise

    metrics.record_reschedule("guest", "confirmed")
    logger.info(
        "guest_reschedule_confirmed",
        extra={
            "extra": {
                "signup_id": signup.signup_id,
                "proposal_id": proposal.proposal_id,
                "instance_id": signup.instance_id,
            }
        },
    )
    return signup


async def list_guest_signups(session: AsyncSession, instance_id: int) -> list[GuestSignup]:
    await enrollment_service.get_instance(session, instance_id)
    result = await session.execute(
        select(GuestSignup)
        .where(GuestSignup.instance_id == instance_id)
        .order_by(GuestSignup.created_at, GuestSignup.signup_id)
    )
    return list(result.scalars().all())
