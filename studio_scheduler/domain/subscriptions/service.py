from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Iterable

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from studio_scheduler.domain.errors import DuplicateSubscriptionError, NotFoundError, ValidationError
from studio_scheduler.domain.notifications import service as notifications
from studio_scheduler.domain.series.db_models import RecurringSeries
from studio_scheduler.domain.sessions import service as enrollment_service
from studio_scheduler.domain.sessions import statuses as enrollment_statuses
from studio_scheduler.domain.sessions.db_models import SessionInstance
from studio_scheduler.domain.sessions.service import EnrollmentOutcome
from studio_scheduler.domain.subscriptions.db_models import SeriesSubscription
from studio_scheduler.domain.waitlist import service as waitlist_service
from studio_scheduler.domain.waitlist.service import WaitlistOutcome
from studio_scheduler.infra.db import end_unchanged
from studio_scheduler.infra.metrics import metrics

logger = logging.getLogger(__name__)


@dataclass
class SubscriptionEnrollment:
    instance_id: int
    session_date: date
    outcome: EnrollmentOutcome


@dataclass
class SubscribeResult:
    subscription: SeriesSubscription
    enrollments: list[SubscriptionEnrollment] = field(default_factory=list)


def _active_subscription_stmt(series_id: int, client_ref: str):
    return select(SeriesSubscription).where(
        SeriesSubscription.series_id == series_id,
        SeriesSubscription.client_ref == client_ref,
        SeriesSubscription.is_active.is_(True),
    )


async def enroll_or_waitlist(
    session: AsyncSession,
    instance: SessionInstance,
    client_ref: str,
    *,
    subscription_id: int,
    now: datetime,
) -> EnrollmentOutcome:
    """Book a seat for a subscriber, falling back to the waitlist when full. Never commits."""
    booking = await enrollment_service.insert_enrollment(
        session, instance.instance_id, client_ref, source=enrollment_statuses.SOURCE_SUBSCRIPTION
    )
    if booking.outcome == EnrollmentOutcome.BOOKED:
        await notifications.enqueue_notification(
            session,
            recipient=client_ref,
            template=notifications.TEMPLATE_ENROLLMENT_BOOKED,
            payload={
                "instance_id": instance.instance_id,
                "name": instance.name,
                "session_date": instance.session_date.isoformat(),
                "start_time": instance.start_time.isoformat(timespec="minutes"),
                "subscription_id": subscription_id,
            },
            dedupe_key=f"subscription:{subscription_id}:{instance.instance_id}",
        )
        return booking.outcome
    if booking.outcome == EnrollmentOutcome.ALREADY_ENROLLED:
        return booking.outcome

    queued = await waitlist_service.add_to_waitlist(session, instance.instance_id, client_ref, now=now)
    if queued.outcome == WaitlistOutcome.JOINED:
        return EnrollmentOutcome.WAITLISTED
    if queued.outcome == WaitlistOutcome.DUPLICATE:
        return EnrollmentOutcome.ALREADY_WAITLISTED
    if queued.outcome == WaitlistOutcome.ALREADY_ENROLLED:
        return EnrollmentOutcome.ALREADY_ENROLLED
    return EnrollmentOutcome.CAPACITY_EXCEEDED


async def subscribe(
    session: AsyncSession,
    series_id: int,
    client_ref: str,
    end_date: date,
    *,
    today: date,
    now: datetime,
) -> SubscribeResult:
    """Subscribe a client to every instance of a series through ``end_date``.

    Already materialized instances in the window are booked right away; full
    ones put the client on their waitlist. Capacity never fails the call.
    """
    series = await session.get(RecurringSeries, series_id)
    if series is None:
        raise NotFoundError(detail=f"Series {series_id} not found")
    if end_date < today or end_date > series.series_end_date:
        raise ValidationError(
            detail="Subscription end date must fall between today and the series end date",
            errors=[
                {
                    "code": "invalid_subscription_window",
                    "end_date": end_date.isoformat(),
                    "series_end_date": series.series_end_date.isoformat(),
                }
            ],
        )
    if await session.scalar(_active_subscription_stmt(series_id, client_ref)) is not None:
        raise DuplicateSubscriptionError(detail="Client already has an active subscription to this series")

    subscription = SeriesSubscription(
        client_ref=client_ref,
        series_id=series_id,
        subscription_start_date=max(today, series.series_start_date),
        subscription_end_date=end_date,
        is_active=True,
    )
    result = SubscribeResult(subscription=subscription)
    try:
        session.add(subscription)
        await session.flush()
        instances = (
            await session.execute(
                select(SessionInstance)
                .where(
                    SessionInstance.parent_series_id == series_id,
                    SessionInstance.session_date >= subscription.subscription_start_date,
                    SessionInstance.session_date <= end_date,
                )
                .order_by(SessionInstance.session_date, SessionInstance.start_time, SessionInstance.instance_id)
            )
        ).scalars().all()
        for instance in instances:
            outcome = await enroll_or_waitlist(
                session,
                instance,
                client_ref,
                subscription_id=subscription.subscription_id,
                now=now,
            )
            result.enrollments.append(SubscriptionEnrollment(instance.instance_id, instance.session_date, outcome))
        await session.commit()
    except IntegrityError as exc:
        await session.rollback()
        raise DuplicateSubscriptionError(
            detail="Client already has an active subscription to this series"
        ) from exc
    except Exception:
        await session.rollback()
        raise

    await session.refresh(subscription)
    booked = sum(1 for item in result.enrollments if item.outcome == EnrollmentOutcome.BOOKED)
    waitlisted = sum(1 for item in result.enrollments if item.outcome == EnrollmentOutcome.WAITLISTED)
    metrics.record_enrollment("subscription_booked", booked)
    metrics.record_waitlist("joined", waitlisted)
    logger.info(
        "series_subscription_created",
        extra={
            "extra": {
                "subscription_id": subscription.subscription_id,
                "series_id": series_id,
                "client_ref": client_ref,
                "end_date": end_date.isoformat(),
                "booked": booked,
                "waitlisted": waitlisted,
            }
        },
    )
    return result


async def auto_enroll_new_instances(
    session: AsyncSession,
    instances: Iterable[SessionInstance],
    *,
    now: datetime,
) -> list[tuple[int, SubscriptionEnrollment]]:
    """Enroll active subscribers into freshly generated instances inside the caller's transaction."""
    by_series: dict[int, list[SessionInstance]] = defaultdict(list)
    for instance in instances:
        if instance.parent_series_id is not None:
            by_series[instance.parent_series_id].append(instance)

    enrolled: list[tuple[int, SubscriptionEnrollment]] = []
    for series_id, series_instances in by_series.items():
        subscriptions = (
            await session.execute(
                select(SeriesSubscription)
                .where(SeriesSubscription.series_id == series_id, SeriesSubscription.is_active.is_(True))
                .order_by(SeriesSubscription.created_at, SeriesSubscription.subscription_id)
            )
        ).scalars().all()
        for instance in sorted(series_instances, key=lambda item: (item.session_date, item.start_time)):
            for subscription in subscriptions:
                if not (
                    subscription.subscription_start_date
                    <= instance.session_date
                    <= subscription.subscription_end_date
                ):
                    continue
                outcome = await enroll_or_waitlist(
                    session,
                    instance,
                    subscription.client_ref,
                    subscription_id=subscription.subscription_id,
                    now=now,
                )
                enrolled.append(
                    (
                        subscription.subscription_id,
                        SubscriptionEnrollment(instance.instance_id, instance.session_date, outcome),
                    )
                )
    if enrolled:
        logger.info("series_subscription_auto_enrolled", extra={"extra": {"count": len(enrolled)}})
    return enrolled


async def unsubscribe(session: AsyncSession, series_id: int, client_ref: str) -> SeriesSubscription:
    subscription = await session.scalar(_active_subscription_stmt(series_id, client_ref))
    if subscription is None:
        raise NotFoundError(detail="No active subscription to this series")
    subscription.is_active = False
    await session.commit()
    await session.refresh(subscription)
    logger.info(
        "series_subscription_cancelled",
        extra={"extra": {"subscription_id": subscription.subscription_id, "client_ref": client_ref}},
    )
    return subscription


async def list_subscriptions(
    session: AsyncSession, client_ref: str, *, active_only: bool = False
) -> list[SeriesSubscription]:
    stmt = select(SeriesSubscription).where(SeriesSubscription.client_ref == client_ref)
    if active_only:
        stmt = stmt.where(SeriesSubscription.is_active.is_(True))
    stmt = stmt.order_by(SeriesSubscription.created_at.desc(), SeriesSubscription.subscription_id.desc())
    result = await session.execute(stmt)
    return list(result.scalars().all())
