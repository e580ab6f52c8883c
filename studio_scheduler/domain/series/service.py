from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta

from sqlalchemy import delete, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from studio_scheduler.domain.errors import CascadeConflictError, NotFoundError, ValidationError
from studio_scheduler.domain.series import schemas
from studio_scheduler.domain.series.db_models import RecurringSeries, SeriesExclusion
from studio_scheduler.domain.series.expander import (
    SeriesGenerationReport,
    generate_instances,
    series_duration_minutes,
    validate_series_range,
)
from studio_scheduler.domain.sessions import cascade as cascade_editor
from studio_scheduler.domain.sessions.db_models import SessionInstance
from studio_scheduler.domain.subscriptions.db_models import SeriesSubscription
from studio_scheduler.infra.db import end_unchanged
from studio_scheduler.shared.clock import weekday_sunday_first

logger = logging.getLogger(__name__)

_PROPAGATED_FIELDS = ("name", "description", "location", "instructor_ref", "start_time", "capacity")


@dataclass
class SeriesUpdateReport:
    series: RecurringSeries
    affected_instance_ids: list[int] = field(default_factory=list)
    created_instance_ids: list[int] = field(default_factory=list)
    deleted_instance_ids: list[int] = field(default_factory=list)

    def to_response(self) -> schemas.SeriesUpdateResponse:
        return schemas.SeriesUpdateResponse(
            series=schemas.RecurringSeriesResponse.model_validate(self.series),
            affected_instance_ids=list(self.affected_instance_ids),
            created_instance_ids=list(self.created_instance_ids),
            deleted_instance_ids=list(self.deleted_instance_ids),
        )


@dataclass
class SeriesDeleteReport:
    series_id: int
    deleted_instance_ids: list[int] = field(default_factory=list)
    cancelled_enrollments: int = 0
    deactivated_subscriptions: int = 0

    def to_response(self) -> schemas.SeriesDeleteResponse:
        return schemas.SeriesDeleteResponse(
            series_id=self.series_id,
            deleted_instance_ids=list(self.deleted_instance_ids),
            cancelled_enrollments=self.cancelled_enrollments,
            deactivated_subscriptions=self.deactivated_subscriptions,
        )


async def get_series(session: AsyncSession, series_id: int) -> RecurringSeries:
    series = await session.get(RecurringSeries, series_id)
    if series is None:
        raise NotFoundError(detail=f"Series {series_id} not found")
    return series


async def create_series(
    session: AsyncSession,
    payload: schemas.RecurringSeriesCreate,
    *,
    today: date,
    now: datetime,
) -> tuple[RecurringSeries, SeriesGenerationReport]:
    validate_series_range(payload.series_start_date, payload.series_end_date)
    series = RecurringSeries(
        name=payload.name,
        description=payload.description,
        location=payload.location,
        instructor_ref=payload.instructor_ref,
        day_of_week=payload.day_of_week,
        start_time=payload.start_time,
        end_time=payload.end_time,
        series_start_date=payload.series_start_date,
        series_end_date=payload.series_end_date,
        capacity=payload.capacity,
    )
    try:
        session.add(series)
        await session.flush()
        report = await generate_instances(session, series, today, now=now, manage_transaction=False)
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    await session.refresh(series)
    logger.info(
        "series_created",
        extra={
            "extra": {
                "series_id": series.series_id,
                "day_of_week": series.day_of_week,
                "instances_created": len(report.created),
            }
        },
    )
    return series, report


async def generate_for_series(
    session: AsyncSession,
    series_id: int,
    *,
    as_of: date,
    until: date | None = None,
    now: datetime,
) -> SeriesGenerationReport:
    series = await get_series(session, series_id)
    return await generate_instances(session, series, as_of, until, now=now)


async def list_series_instances(session: AsyncSession, series_id: int, *, date_from: date | None = None):
    from studio_scheduler.domain.sessions.service import list_instances  # lazy import

    await get_series(session, series_id)
    return await list_instances(session, series_id=series_id, date_from=date_from)


def _weekday_delta(old_day_of_week: int, new_day_of_week: int) -> timedelta:
    """Days to the next occurrence of the new weekday; instances only ever move forward."""
    return timedelta(days=(new_day_of_week - old_day_of_week) % 7)


async def _pattern_instances(
    session: AsyncSession, series: RecurringSeries, *, day_of_week: int, from_date: date
) -> list[SessionInstance]:
    result = await session.execute(
        select(SessionInstance)
        .where(
            SessionInstance.parent_series_id == series.series_id,
            SessionInstance.session_date >= from_date,
            SessionInstance.is_overridden.is_(False),
        )
        .order_by(SessionInstance.session_date, SessionInstance.instance_id)
    )
    return [
        instance
        for instance in result.scalars().all()
        if weekday_sunday_first(instance.session_date) == day_of_week
    ]


async def update_series(
    session: AsyncSession,
    series_id: int,
    patch: schemas.RecurringSeriesUpdate,
    *,
    cascade: bool = False,
    reference_date: date,
    now: datetime,
) -> SeriesUpdateReport:
    """Change the series definition.

    With ``cascade`` the instance-level fields are copied onto every future
    non-overridden instance from ``reference_date`` on. A later end date
    materializes the new dates and an earlier one removes instances past it.
    """
    from studio_scheduler.domain.waitlist.service import promote_in_transaction  # lazy import

    series = await get_series(session, series_id)
    values = patch.model_dump(exclude_unset=True)
    values = {key: value for key, value in values.items() if value is not None or key in {"description", "location"}}

    new_start = values.get("series_start_date", series.series_start_date)
    new_end = values.get("series_end_date", series.series_end_date)
    validate_series_range(new_start, new_end)
    new_start_time = values.get("start_time", series.start_time)
    new_end_time = values.get("end_time", series.end_time)
    if new_end_time <= new_start_time:
        raise ValidationError(
            detail="end_time must be after start_time",
            errors=[{"code": "invalid_time_range"}],
        )

    old_end = series.series_end_date
    old_day_of_week = series.day_of_week
    if not cascade and values.get("day_of_week", old_day_of_week) != old_day_of_week:
        upcoming = await session.scalar(
            select(SessionInstance.instance_id)
            .where(
                SessionInstance.parent_series_id == series.series_id,
                SessionInstance.session_date >= reference_date,
            )
            .limit(1)
        )
        if upcoming is not None:
            raise ValidationError(
                detail="Changing the weekday of a series with upcoming sessions must cascade",
                errors=[{"code": "weekday_change_requires_cascade"}],
            )
    report = SeriesUpdateReport(series=series)
    targets: list[SessionInstance] = []
    if cascade:
        targets = await _pattern_instances(session, series, day_of_week=old_day_of_week, from_date=reference_date)
        if "capacity" in values:
            try:
                await cascade_editor.check_capacity(session, targets, values["capacity"])
            except CascadeConflictError:
                await end_unchanged(session)
                raise
    try:
        for key, value in values.items():
            setattr(series, key, value)

        if cascade and targets:
            instance_values = {key: values[key] for key in _PROPAGATED_FIELDS if key in values}
            if "start_time" in values or "end_time" in values:
                instance_values["duration_minutes"] = series_duration_minutes(series)
            day_delta = None
            if series.day_of_week != old_day_of_week:
                day_delta = _weekday_delta(old_day_of_week, series.day_of_week)
                overflow = [target for target in targets if target.session_date + day_delta > series.series_end_date]
                for target in overflow:
                    report.deleted_instance_ids.append(target.instance_id)
                    await cascade_editor.remove_instance(session, target, now=now, record_exclusion=False)
                targets = [target for target in targets if target not in overflow]
            grown = await cascade_editor.apply_changes(
                session,
                targets,
                instance_values,
                day_delta=day_delta,
                now=now,
                mark_overridden=False,
            )
            if day_delta:
                for target in targets:
                    target.origin_date = target.session_date
            for target_id in grown:
                await promote_in_transaction(session, target_id, now=now)
            report.affected_instance_ids = [target.instance_id for target in targets]

        if series.series_end_date < old_end:
            stale = (
                await session.execute(
                    select(SessionInstance)
                    .where(
                        SessionInstance.parent_series_id == series.series_id,
                        SessionInstance.session_date > series.series_end_date,
                    )
                    .order_by(SessionInstance.session_date)
                )
            ).scalars().all()
            for instance in stale:
                report.deleted_instance_ids.append(instance.instance_id)
                await cascade_editor.remove_instance(session, instance, now=now, record_exclusion=False)
        elif series.series_end_date > old_end or (cascade and series.day_of_week != old_day_of_week):
            generated = await generate_instances(
                session, series, reference_date, now=now, manage_transaction=False
            )
            report.created_instance_ids = [instance.instance_id for instance in generated.created]

        await session.commit()
    except Exception:
        await session.rollback()
        raise

    await session.refresh(series)
    logger.info(
        "series_updated",
        extra={
            "extra": {
                "series_id": series_id,
                "cascade": cascade,
                "fields": sorted(values.keys()),
                "affected": len(report.affected_instance_ids),
                "created": len(report.created_instance_ids),
                "deleted": len(report.deleted_instance_ids),
            }
        },
    )
    return report


async def delete_series(session: AsyncSession, series_id: int, *, now: datetime) -> SeriesDeleteReport:
    """Remove the series with all of its instances; enrollments stay as cancelled history."""
    series = await get_series(session, series_id)
    report = SeriesDeleteReport(series_id=series_id)
    try:
        instances = (
            await session.execute(
                select(SessionInstance)
                .where(
                    or_(
                        SessionInstance.parent_series_id == series_id,
                        SessionInstance.series_id == series_id,
                    )
                )
                .order_by(SessionInstance.session_date, SessionInstance.instance_id)
            )
        ).scalars().all()
        for instance in instances:
            report.deleted_instance_ids.append(instance.instance_id)
            report.cancelled_enrollments += await cascade_editor.remove_instance(
                session, instance, now=now, record_exclusion=False
            )

        subscriptions = (
            await session.execute(select(SeriesSubscription).where(SeriesSubscription.series_id == series_id))
        ).scalars().all()
        for subscription in subscriptions:
            if subscription.is_active:
                report.deactivated_subscriptions += 1
            subscription.is_active = False
            subscription.series_id = None

        await session.execute(delete(SeriesExclusion).where(SeriesExclusion.series_id == series_id))
        await session.delete(series)
        await session.commit()
    except Exception:
        await session.rollback()
        raise

    logger.info(
        "series_deleted",
        extra={
            "extra": {
                "series_id": series_id,
                "deleted_instances": len(report.deleted_instance_ids),
                "cancelled_enrollments": report.cancelled_enrollments,
                "deactivated_subscriptions": report.deactivated_subscriptions,
            }
        },
    )
    return report
