import argparse
import asyncio
import logging
import time
from collections.abc import Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from studio_scheduler.infra.db import dispose_engine, get_session_factory
from studio_scheduler.infra.logging import configure_logging, log_context
from studio_scheduler.infra.metrics import configure_metrics, metrics
from studio_scheduler.infra.notifications import NotificationAdapter, resolve_notification_adapter
from studio_scheduler.jobs import outbox, series_sweep
from studio_scheduler.settings import settings
from studio_scheduler.shared.clock import FacilityClock

logger = logging.getLogger(__name__)

JOB_NAMES = ("series-sweep", "outbox-delivery")

Runner = Callable[[AsyncSession], Awaitable[dict[str, int]]]


async def _run_job(name: str, session_factory: async_sessionmaker, runner: Runner) -> dict[str, int]:
    metrics.record_job_heartbeat(name)
    with log_context(job=name):
        async with session_factory() as session:
            result = await runner(session)
        logger.info("job_complete", extra={"extra": {"job": name, **result}})
    metrics.record_job_success(name, time.time())
    return result


def _job_runner(name: str, *, adapter: NotificationAdapter, clock: FacilityClock) -> Runner:
    if name == "series-sweep":
        return lambda session: series_sweep.run_series_sweep(session, today=clock.today(), now=clock.now())
    if name == "outbox-delivery":
        return lambda session: outbox.run_outbox_delivery(session, adapter)
    raise ValueError(f"unknown_job:{name}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run scheduled jobs")
    parser.add_argument("--job", action="append", dest="jobs", choices=JOB_NAMES, help="Job name to run")
    parser.add_argument("--interval", type=int, default=60, help="Seconds between loops when not using --once")
    parser.add_argument("--once", action="store_true", help="Run jobs once and exit")
    return parser


async def run_jobs(
    job_names: list[str],
    session_factory: async_sessionmaker,
    *,
    adapter: NotificationAdapter,
    clock: FacilityClock,
) -> dict[str, bool]:
    outcomes: dict[str, bool] = {}
    for name in job_names:
        runner = _job_runner(name, adapter=adapter, clock=clock)
        try:
            await _run_job(name, session_factory, runner)
            outcomes[name] = True
        except Exception as exc:  # noqa: BLE001
            metrics.record_job_error(name, type(exc).__name__)
            logger.warning("job_failed", extra={"extra": {"job": name, "reason": type(exc).__name__}})
            outcomes[name] = False
    return outcomes


async def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    configure_logging(settings.log_level, service=settings.app_name)
    configure_metrics(settings.metrics_enabled)
    adapter = resolve_notification_adapter(settings)
    session_factory = get_session_factory()
    job_names = args.jobs or list(JOB_NAMES)

    try:
        while True:
            await run_jobs(job_names, session_factory, adapter=adapter, clock=FacilityClock())
            if args.once:
                break
            await asyncio.sleep(max(args.interval, 1))
    finally:
        await dispose_engine()


if __name__ == "__main__":
    asyncio.run(main())
