from datetime import date, datetime, time

import anyio
import pytest
from sqlalchemy import func, select

from studio_scheduler.domain.notifications.service import TEMPLATE_ENROLLMENT_BOOKED, enqueue_notification
from studio_scheduler.domain.outbox.db_models import OutboxEvent
from studio_scheduler.domain.series import service as series_service
from studio_scheduler.domain.series.schemas import RecurringSeriesCreate
from studio_scheduler.domain.sessions.db_models import SessionInstance
from studio_scheduler.infra.metrics import configure_metrics
from studio_scheduler.infra.notifications import LogNotificationAdapter, NoopNotificationAdapter
from studio_scheduler.jobs import run as jobs_run
from studio_scheduler.jobs import series_sweep
from studio_scheduler.settings import settings
from studio_scheduler.shared.clock import FixedClock


async def _seed_weekly_series(session) -> int:
    payload = RecurringSeriesCreate(
        name="Evening Yoga",
        instructor_ref="coach-1",
        day_of_week=3,
        start_time=time(18, 0),
        end_time=time(19, 0),
        series_start_date=date(2025, 1, 8),
        series_end_date=date(2025, 2, 26),
    )
    series, _ = await series_service.create_series(
        session, payload, today=date(2025, 1, 6), now=datetime(2025, 1, 6, 8, 0)
    )
    return series.series_id


def test_run_jobs_sweeps_series_and_delivers_outbox(async_session_maker):
    settings.series_horizon_days = 7

    async def _run():
        async with async_session_maker() as session:
            series_id = await _seed_weekly_series(session)
            await enqueue_notification(
                session,
                recipient="client-a",
                template=TEMPLATE_ENROLLMENT_BOOKED,
                payload={"instance_id": 1},
                dedupe_key="enrollment:1",
            )
            await session.commit()

        outcomes = await jobs_run.run_jobs(
            list(jobs_run.JOB_NAMES),
            async_session_maker,
            adapter=LogNotificationAdapter(),
            clock=FixedClock(datetime(2025, 1, 13, 6, 0)),
        )
        assert outcomes == {"series-sweep": True, "outbox-delivery": True}

        async with async_session_maker() as session:
            dates = (
                await session.execute(
                    select(SessionInstance.session_date)
                    .where(SessionInstance.parent_series_id == series_id)
                    .order_by(SessionInstance.session_date)
                )
            ).scalars().all()
            assert dates == [date(2025, 1, 8), date(2025, 1, 15)]
            event = await session.scalar(select(OutboxEvent))
            assert event.status == "sent"

    anyio.run(_run)


def test_failing_job_does_not_stop_the_loop(async_session_maker, monkeypatch):
    metrics_client = configure_metrics(True)

    async def _broken_sweep(session, *, today, now):
        raise RuntimeError("sweep exploded")

    monkeypatch.setattr(series_sweep, "run_series_sweep", _broken_sweep)

    async def _run():
        return await jobs_run.run_jobs(
            ["series-sweep", "outbox-delivery"],
            async_session_maker,
            adapter=NoopNotificationAdapter(),
            clock=FixedClock(datetime(2025, 1, 13, 6, 0)),
        )

    try:
        outcomes = anyio.run(_run)
        assert outcomes == {"series-sweep": False, "outbox-delivery": True}
        errors = metrics_client.registry.get_sample_value(
            "job_errors_total", {"job": "series-sweep", "reason": "RuntimeError"}
        )
        assert errors == 1.0
        assert metrics_client.registry.get_sample_value(
            "job_last_success_timestamp", {"job": "outbox-delivery"}
        )
    finally:
        configure_metrics(False)


def test_sweep_is_a_no_op_without_new_dates(async_session_maker):
    async def _run():
        async with async_session_maker() as session:
            await _seed_weekly_series(session)
            before = await session.scalar(select(func.count()).select_from(SessionInstance))

        async with async_session_maker() as session:
            summary = await series_sweep.run_series_sweep(
                session, today=date(2025, 1, 13), now=datetime(2025, 1, 13, 6, 0)
            )
            assert summary == {"series": 1, "created": 0, "conflicts": 0}
            assert await session.scalar(select(func.count()).select_from(SessionInstance)) == before

    anyio.run(_run)


def test_parser_and_unknown_job():
    args = jobs_run.build_parser().parse_args(["--job", "outbox-delivery", "--once"])
    assert args.jobs == ["outbox-delivery"]
    assert args.once is True
    assert args.interval == 60

    with pytest.raises(SystemExit):
        jobs_run.build_parser().parse_args(["--job", "unknown-job"])

    with pytest.raises(ValueError):
        jobs_run._job_runner(
            "unknown-job", adapter=NoopNotificationAdapter(), clock=FixedClock(datetime(2025, 1, 13))
        )
