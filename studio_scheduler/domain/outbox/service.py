"""Transactional outbox for notifications.

State transitions write their notifications into ``outbox_events`` in the same
transaction; the ``outbox-delivery`` job hands them to the configured
notification adapter afterwards, retrying with exponential backoff until
``outbox_max_attempts`` is reached.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable

from sqlalchemy import func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from studio_scheduler.domain.outbox.db_models import OutboxEvent
from studio_scheduler.infra.logging import log_context
from studio_scheduler.infra.metrics import metrics
from studio_scheduler.infra.notifications import NotificationAdapter
from studio_scheduler.settings import settings

logger = logging.getLogger(__name__)

STATUS_PENDING = "pending"
STATUS_RETRY = "retry"
STATUS_SENT = "sent"
STATUS_DEAD = "dead"
DUE_STATUSES = (STATUS_PENDING, STATUS_RETRY)

KIND_NOTIFICATION = "notification"

Delivery = Callable[[dict, NotificationAdapter], Awaitable[tuple[bool, str | None]]]


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


def retry_at(attempt: int, now: datetime) -> datetime:
    """Exponential backoff: base, 2x base, 4x base, ... after each failed attempt."""
    exponent = max(0, attempt - 1)
    return now + timedelta(seconds=settings.outbox_base_backoff_seconds * 2**exponent)


async def enqueue_outbox_event(
    session: AsyncSession,
    *,
    kind: str,
    payload: dict,
    dedupe_key: str,
) -> None:
    """Add an event to the caller's transaction; a repeated dedupe key is ignored."""
    bind = session.get_bind()
    insert_fn = pg_insert if bind is not None and bind.dialect.name == "postgresql" else sqlite_insert
    stmt = (
        insert_fn(OutboxEvent)
        .values(
            kind=kind,
            payload_json=payload,
            dedupe_key=dedupe_key,
            status=STATUS_PENDING,
            attempts=0,
            next_attempt_at=_utcnow(),
        )
        .on_conflict_do_nothing(index_elements=["dedupe_key"])
    )
    await session.execute(stmt)


async def _deliver_notification(payload: dict, adapter: NotificationAdapter) -> tuple[bool, str | None]:
    recipient = payload.get("recipient")
    template = payload.get("template")
    if not recipient or not template:
        return False, "missing_payload"
    try:
        delivered = await adapter.send(recipient, template, payload.get("payload") or {})
    except Exception as exc:  # noqa: BLE001
        return False, type(exc).__name__
    return delivered, None if delivered else "send_failed"


_DELIVERIES: dict[str, Delivery] = {KIND_NOTIFICATION: _deliver_notification}


async def deliver_outbox_event(
    session: AsyncSession, event: OutboxEvent, adapter: NotificationAdapter
) -> tuple[bool, str | None]:
    """One delivery attempt; records the outcome on the event and flushes."""
    now = _utcnow()
    event.attempts = (event.attempts or 0) + 1
    delivery = _DELIVERIES.get(event.kind)
    if delivery is None:
        delivered, error = False, "unknown_kind"
    else:
        delivered, error = await delivery(event.payload_json or {}, adapter)

    if delivered:
        event.status = STATUS_SENT
        event.sent_at = now
        event.next_attempt_at = None
        event.last_error = None
    elif event.attempts >= settings.outbox_max_attempts:
        event.status = STATUS_DEAD
        event.next_attempt_at = None
        event.last_error = error or "failed"
        logger.warning(
            "outbox_event_dead",
            extra={"extra": {"attempts": event.attempts, "error": event.last_error}},
        )
    else:
        event.status = STATUS_RETRY
        event.next_attempt_at = retry_at(event.attempts, now)
        event.last_error = error or "failed"
        logger.info("outbox_event_retry", extra={"extra": {"attempts": event.attempts, "error": event.last_error}})
    await session.flush()
    return delivered, event.last_error


async def process_outbox(session: AsyncSession, adapter: NotificationAdapter, *, limit: int = 50) -> dict[str, int]:
    """Deliver due events oldest first and commit the batch."""
    events = (
        await session.execute(
            select(OutboxEvent)
            .where(OutboxEvent.status.in_(DUE_STATUSES), OutboxEvent.next_attempt_at <= _utcnow())
            .order_by(OutboxEvent.created_at, OutboxEvent.event_id)
            .limit(limit)
        )
    ).scalars().all()
    summary = {"sent": 0, "dead": 0, "pending": 0}
    for event in events:
        template = (event.payload_json or {}).get("template")
        with log_context(outbox_event_id=event.event_id, outbox_kind=event.kind, template=template):
            delivered, _ = await deliver_outbox_event(session, event, adapter)
        if delivered:
            summary["sent"] += 1
        elif event.status == STATUS_DEAD:
            summary["dead"] += 1
        else:
            summary["pending"] += 1
    if events:
        await session.commit()
    await _record_queue_depth(session)
    return summary


async def _record_queue_depth(session: AsyncSession) -> None:
    counts = dict.fromkeys((STATUS_PENDING, STATUS_RETRY, STATUS_DEAD), 0)
    rows = await session.execute(
        select(OutboxEvent.status, func.count())
        .where(OutboxEvent.status.in_(list(counts)))
        .group_by(OutboxEvent.status)
    )
    for status, count in rows.all():
        counts[status] = int(count or 0)
    for status, count in counts.items():
        metrics.set_outbox_depth(status, count)
