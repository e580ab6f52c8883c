"""Keeps every running series materialized up to its horizon.

Only needed when ``SERIES_HORIZON_DAYS`` bounds generation; without a horizon
the whole range is created with the series.
"""

import logging
from datetime import date, datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from studio_scheduler.domain.errors import ConflictError
from studio_scheduler.domain.series.db_models import RecurringSeries
from studio_scheduler.domain.series.expander import generate_instances
from studio_scheduler.infra.logging import log_context

logger = logging.getLogger(__name__)


async def run_series_sweep(session: AsyncSession, *, today: date, now: datetime) -> dict[str, int]:
    series_ids = (
        await session.execute(
            select(RecurringSeries.series_id)
            .where(RecurringSeries.series_end_date >= today)
            .order_by(RecurringSeries.series_id)
        )
    ).scalars().all()
    created = 0
    conflicts = 0
    for series_id in series_ids:
        with log_context(series_id=series_id):
            series = await session.get(RecurringSeries, series_id)
            if series is None:
                continue
            try:
                report = await generate_instances(session, series, today, now=now)
            except ConflictError:
                # Another writer materialized the same dates; the next sweep picks up the rest.
                conflicts += 1
                logger.info("series_sweep_conflict", extra={"extra": {"series_id": series_id}})
                continue
            created += len(report.created)
    return {"series": len(series_ids), "created": created, "conflicts": conflicts}
