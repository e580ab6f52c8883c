from datetime import date, datetime, time

import anyio
import pytest
from sqlalchemy import select

from studio_scheduler.domain.errors import DuplicateSubscriptionError, NotFoundError, ValidationError
from studio_scheduler.domain.series import service as series_service
from studio_scheduler.domain.series.schemas import RecurringSeriesCreate
from studio_scheduler.domain.sessions import statuses as enrollment_statuses
from studio_scheduler.domain.sessions.db_models import Enrollment, SessionInstance
from studio_scheduler.domain.sessions.service import EnrollmentOutcome, book
from studio_scheduler.domain.subscriptions import service as subscription_service
from studio_scheduler.domain.waitlist.service import list_waitlist
from studio_scheduler.jobs.series_sweep import run_series_sweep
from studio_scheduler.settings import settings

TODAY = date(2025, 2, 24)
NOW = datetime(2025, 2, 24, 6, 0)


async def _seed_monday_series(session, *, capacity: int = 4):
    payload = RecurringSeriesCreate(
        name="Barre",
        instructor_ref="coach-4",
        day_of_week=1,
        start_time=time(17, 0),
        end_time=time(18, 0),
        series_start_date=date(2025, 2, 24),
        series_end_date=date(2025, 3, 31),
        capacity=capacity,
    )
    series, _ = await series_service.create_series(session, payload, today=TODAY, now=NOW)
    return series


async def _instance_on(session, series_id: int, day: date) -> SessionInstance:
    return await session.scalar(
        select(SessionInstance).where(
            SessionInstance.parent_series_id == series_id,
            SessionInstance.session_date == day,
        )
    )


def test_subscription_books_existing_and_future_instances(async_session_maker):
    settings.series_horizon_days = 7

    async def _run():
        async with async_session_maker() as session:
            series = await _seed_monday_series(session)
            result = await subscription_service.subscribe(
                session, series.series_id, "client-a", date(2025, 3, 31), today=TODAY, now=NOW
            )
            assert [(item.session_date, item.outcome) for item in result.enrollments] == [
                (date(2025, 2, 24), EnrollmentOutcome.BOOKED),
                (date(2025, 3, 3), EnrollmentOutcome.BOOKED),
            ]
            assert result.subscription.is_active is True
            assert result.subscription.subscription_start_date == TODAY

        async with async_session_maker() as session:
            summary = await run_series_sweep(session, today=date(2025, 3, 3), now=datetime(2025, 3, 3, 6, 0))
            assert summary["created"] == 1

        async with async_session_maker() as session:
            new_instance = await _instance_on(session, series.series_id, date(2025, 3, 10))
            assert new_instance is not None
            enrollment = await session.scalar(
                select(Enrollment).where(
                    Enrollment.instance_id == new_instance.instance_id,
                    Enrollment.client_ref == "client-a",
                )
            )
            assert enrollment.status == enrollment_statuses.ENROLLMENT_ACTIVE
            assert enrollment.source == enrollment_statuses.SOURCE_SUBSCRIPTION

    anyio.run(_run)


def test_full_instance_puts_subscriber_on_waitlist(async_session_maker):
    settings.series_horizon_days = 7

    async def _run():
        async with async_session_maker() as session:
            series = await _seed_monday_series(session, capacity=1)
            first = await _instance_on(session, series.series_id, date(2025, 2, 24))
            await book(session, first.instance_id, "client-early")

            result = await subscription_service.subscribe(
                session, series.series_id, "client-a", date(2025, 3, 10), today=TODAY, now=NOW
            )
            outcomes = {item.session_date: item.outcome for item in result.enrollments}
            assert outcomes[date(2025, 2, 24)] == EnrollmentOutcome.WAITLISTED
            assert outcomes[date(2025, 3, 3)] == EnrollmentOutcome.BOOKED

            waiting = await list_waitlist(session, first.instance_id)
            assert [entry.client_ref for entry in waiting] == ["client-a"]

    anyio.run(_run)


def test_subscription_window_is_validated(async_session_maker):
    async def _run():
        async with async_session_maker() as session:
            series = await _seed_monday_series(session)

            with pytest.raises(ValidationError) as past:
                await subscription_service.subscribe(
                    session, series.series_id, "client-a", date(2025, 2, 20), today=TODAY, now=NOW
                )
            assert past.value.errors[0]["code"] == "invalid_subscription_window"

            with pytest.raises(ValidationError):
                await subscription_service.subscribe(
                    session, series.series_id, "client-a", date(2025, 4, 7), today=TODAY, now=NOW
                )

            with pytest.raises(NotFoundError):
                await subscription_service.subscribe(session, 999, "client-a", date(2025, 3, 3), today=TODAY, now=NOW)

            assert await subscription_service.list_subscriptions(session, "client-a") == []

    anyio.run(_run)


def test_second_active_subscription_rejected(async_session_maker):
    async def _run():
        async with async_session_maker() as session:
            series = await _seed_monday_series(session)
            await subscription_service.subscribe(
                session, series.series_id, "client-a", date(2025, 3, 17), today=TODAY, now=NOW
            )
            with pytest.raises(DuplicateSubscriptionError):
                await subscription_service.subscribe(
                    session, series.series_id, "client-a", date(2025, 3, 31), today=TODAY, now=NOW
                )

    anyio.run(_run)


def test_unsubscribe_stops_future_auto_enrollment(async_session_maker):
    settings.series_horizon_days = 7

    async def _run():
        async with async_session_maker() as session:
            series = await _seed_monday_series(session)
            await subscription_service.subscribe(
                session, series.series_id, "client-a", date(2025, 3, 31), today=TODAY, now=NOW
            )
            cancelled = await subscription_service.unsubscribe(session, series.series_id, "client-a")
            assert cancelled.is_active is False

            with pytest.raises(NotFoundError):
                await subscription_service.unsubscribe(session, series.series_id, "client-a")

        async with async_session_maker() as session:
            await run_series_sweep(session, today=date(2025, 3, 3), now=datetime(2025, 3, 3, 6, 0))

        async with async_session_maker() as session:
            new_instance = await _instance_on(session, series.series_id, date(2025, 3, 10))
            enrollment = await session.scalar(
                select(Enrollment).where(Enrollment.instance_id == new_instance.instance_id)
            )
            assert enrollment is None

            history = await subscription_service.list_subscriptions(session, "client-a")
            assert len(history) == 1
            assert await subscription_service.list_subscriptions(session, "client-a", active_only=True) == []

    anyio.run(_run)
