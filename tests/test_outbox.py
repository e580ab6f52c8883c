import json

import anyio
import httpx
from sqlalchemy import func, select

from studio_scheduler.domain.notifications.service import TEMPLATE_WAITLIST_PROMOTED, enqueue_notification
from studio_scheduler.domain.outbox.db_models import OutboxEvent
from studio_scheduler.domain.outbox.service import process_outbox
from studio_scheduler.infra.notifications import (
    LogNotificationAdapter,
    NoopNotificationAdapter,
    WebhookNotificationAdapter,
    resolve_notification_adapter,
)
from studio_scheduler.settings import settings

WEBHOOK_URL = "https://hooks.example.com/notify"


async def _queue(session, dedupe_key: str = "entry:1") -> None:
    await enqueue_notification(
        session,
        recipient="client-a",
        template=TEMPLATE_WAITLIST_PROMOTED,
        payload={"instance_id": 7},
        dedupe_key=dedupe_key,
    )
    await session.commit()


def test_enqueue_is_idempotent(async_session_maker):
    async def _run():
        async with async_session_maker() as session:
            await _queue(session)
            await _queue(session)
            count = await session.scalar(select(func.count()).select_from(OutboxEvent))
            assert count == 1

            event = await session.scalar(select(OutboxEvent))
            assert event.dedupe_key == "waitlist_promoted:entry:1"
            assert event.payload_json["recipient"] == "client-a"
            assert event.status == "pending"

    anyio.run(_run)


def test_missing_recipient_is_not_queued(async_session_maker):
    async def _run():
        async with async_session_maker() as session:
            queued = await enqueue_notification(
                session,
                recipient=None,
                template=TEMPLATE_WAITLIST_PROMOTED,
                payload={},
                dedupe_key="entry:2",
            )
            assert queued is False
            assert await session.scalar(select(func.count()).select_from(OutboxEvent)) == 0

    anyio.run(_run)


def test_process_outbox_sends_via_webhook(async_session_maker):
    seen: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(json.loads(request.content))
        return httpx.Response(200)

    adapter = WebhookNotificationAdapter(WEBHOOK_URL, transport=httpx.MockTransport(handler))

    async def _run():
        async with async_session_maker() as session:
            await _queue(session)
            summary = await process_outbox(session, adapter, limit=10)
            assert summary["sent"] == 1
            event = await session.scalar(select(OutboxEvent))
            assert event.status == "sent"
            assert event.attempts == 1
            assert event.last_error is None
            assert event.sent_at is not None

    anyio.run(_run)
    assert seen[0]["template"] == TEMPLATE_WAITLIST_PROMOTED
    assert seen[0]["payload"] == {"instance_id": 7}


def test_failed_delivery_is_retried_then_dead(async_session_maker, monkeypatch):
    adapter = WebhookNotificationAdapter(
        WEBHOOK_URL, transport=httpx.MockTransport(lambda request: httpx.Response(500))
    )

    async def _run():
        async with async_session_maker() as session:
            await _queue(session)
            summary = await process_outbox(session, adapter, limit=10)
            assert summary == {"sent": 0, "dead": 0, "pending": 1}
            event = await session.scalar(select(OutboxEvent))
            assert event.status == "retry"
            assert event.last_error == "send_failed"
            assert event.next_attempt_at is not None

        monkeypatch.setattr(settings, "outbox_max_attempts", 1)
        async with async_session_maker() as session:
            await _queue(session, dedupe_key="entry:3")
            await process_outbox(session, adapter, limit=10)
            dead = await session.scalar(
                select(OutboxEvent).where(OutboxEvent.dedupe_key == "waitlist_promoted:entry:3")
            )
            assert dead.status == "dead"
            assert dead.last_error == "send_failed"
            assert dead.next_attempt_at is None

    anyio.run(_run)


def test_adapter_follows_notification_mode():
    settings.notification_mode = "off"
    assert isinstance(resolve_notification_adapter(settings), NoopNotificationAdapter)
    settings.notification_mode = "log"
    assert isinstance(resolve_notification_adapter(settings), LogNotificationAdapter)
