from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Iterable

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from studio_scheduler.domain.errors import ConflictError, ValidationError
from studio_scheduler.domain.series import schemas
from studio_scheduler.domain.series.db_models import RecurringSeries, SeriesExclusion
from studio_scheduler.domain.sessions.db_models import SessionInstance
from studio_scheduler.infra.metrics import metrics
from studio_scheduler.settings import settings
from studio_scheduler.shared.clock import facility_now, weekday_sunday_first

logger = logging.getLogger(__name__)

DEFAULT_DURATION_MINUTES = 60


@dataclass
class SeriesGenerationReport:
    series_id: int
    created: list[SessionInstance] = field(default_factory=list)
    skipped_dates: list[date] = field(default_factory=list)
    window: tuple[date, date] | None = None

    def to_response(self) -> schemas.RecurringSeriesGenerateResponse:
        return schemas.RecurringSeriesGenerateResponse(
            series_id=self.series_id,
            created=[
                schemas.GeneratedInstanceReport(
                    instance_id=instance.instance_id,
                    session_date=instance.session_date,
                    start_time=instance.start_time,
                )
                for instance in self.created
            ],
            skipped_dates=list(self.skipped_dates),
        )


def series_duration_minutes(series: RecurringSeries) -> int:
    minutes = (
        datetime.combine(date.min, series.end_time) - datetime.combine(date.min, series.start_time)
    ).total_seconds() // 60
    return int(minutes) if minutes > 0 else DEFAULT_DURATION_MINUTES


def validate_series_range(start: date, end: date) -> None:
    if end < start:
        raise ValidationError(
            detail="series_end_date must not be before series_start_date",
            errors=[{"code": "invalid_range", "series_start_date": str(start), "series_end_date": str(end)}],
        )


def iter_series_dates(series: RecurringSeries, start: date, end: date) -> Iterable[date]:
    current = start
    while current <= end:
        if weekday_sunday_first(current) == series.day_of_week:
            yield current
            current += timedelta(days=7)
        else:
            current += timedelta(days=1)


def generation_window(series: RecurringSeries, as_of: date, until: date | None) -> tuple[date, date]:
    if until is None:
        if settings.series_horizon_days:
            until = as_of + timedelta(days=settings.series_horizon_days)
        else:
            until = series.series_end_date
    return max(series.series_start_date, as_of), min(series.series_end_date, until)


async def generate_instances(
    session: AsyncSession,
    series: RecurringSeries,
    as_of: date,
    until: date | None = None,
    *,
    now: datetime | None = None,
    manage_transaction: bool = True,
) -> SeriesGenerationReport:
    """Materialize one instance per matching date in the window.

    Safe to call repeatedly: dates that already have an instance (by origin
    date or by date and start time) and excluded dates are skipped. New
    instances are offered to the series' active subscriptions before the
    single commit.
    """
    from studio_scheduler.domain.subscriptions.service import auto_enroll_new_instances  # lazy import

    validate_series_range(series.series_start_date, series.series_end_date)
    start, end = generation_window(series, as_of, until)
    report = SeriesGenerationReport(series_id=series.series_id, window=(start, end))
    if end < start:
        return report

    excluded = set(
        (
            await session.execute(
                select(SeriesExclusion.excluded_date).where(
                    SeriesExclusion.series_id == series.series_id,
                    SeriesExclusion.excluded_date >= start,
                    SeriesExclusion.excluded_date <= end,
                )
            )
        ).scalars()
    )
    existing_rows = (
        await session.execute(
            select(SessionInstance.origin_date, SessionInstance.session_date, SessionInstance.start_time).where(
                SessionInstance.parent_series_id == series.series_id,
            )
        )
    ).all()
    existing_origins = {row.origin_date for row in existing_rows if row.origin_date is not None}
    existing_slots = {(row.session_date, row.start_time) for row in existing_rows}

    duration = series_duration_minutes(series)
    try:
        for day in iter_series_dates(series, start, end):
            if day in excluded or day in existing_origins or (day, series.start_time) in existing_slots:
                report.skipped_dates.append(day)
                continue
            instance = SessionInstance(
                name=series.name,
                description=series.description,
                location=series.location,
                instructor_ref=series.instructor_ref,
                session_date=day,
                start_time=series.start_time,
                duration_minutes=duration,
                capacity=series.capacity,
                series_id=series.series_id,
                parent_series_id=series.series_id,
                is_generated_instance=True,
                is_overridden=False,
                origin_date=day,
            )
            session.add(instance)
            report.created.append(instance)
        await session.flush()
        if report.created:
            await auto_enroll_new_instances(session, report.created, now=now or facility_now())
        if manage_transaction:
            await session.commit()
    except IntegrityError as exc:
        if manage_transaction:
            await session.rollback()
        logger.info(
            "series_generation_conflict",
            extra={"extra": {"series_id": report.series_id, "error_type": type(exc).__name__}},
        )
        raise ConflictError(detail="Series instances are being generated concurrently") from exc
    except Exception:
        if manage_transaction:
            await session.rollback()
        raise

    metrics.record_instances_generated(len(report.created))
    logger.info(
        "series_instances_generated",
        extra={
            "extra": {
                "series_id": series.series_id,
                "window_start": start.isoformat(),
                "window_end": end.isoformat(),
                "created": len(report.created),
                "skipped": len(report.skipped_dates),
            }
        },
    )
    return report
