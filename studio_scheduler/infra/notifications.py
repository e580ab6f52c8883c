import logging
from typing import Any

import httpx

from studio_scheduler.infra.metrics import metrics
from studio_scheduler.settings import settings

logger = logging.getLogger(__name__)


class NoopNotificationAdapter:
    async def send(self, recipient: str, template: str, payload: dict[str, Any]) -> bool:  # noqa: D401
        logger.info(
            "notification_skipped",
            extra={"extra": {"recipient": recipient, "template": template, "mode": "off"}},
        )
        metrics.record_notification(template, "skipped")
        return True


class LogNotificationAdapter:
    async def send(self, recipient: str, template: str, payload: dict[str, Any]) -> bool:
        logger.info(
            "notification_dispatched",
            extra={"extra": {"recipient": recipient, "template": template, "payload": payload}},
        )
        metrics.record_notification(template, "sent")
        return True


class WebhookNotificationAdapter:
    """Posts ``{recipient, template, payload}`` to the configured delivery service."""

    def __init__(
        self,
        url: str,
        *,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.url = url
        self.timeout = timeout if timeout is not None else settings.notification_webhook_timeout_seconds
        self.transport = transport

    async def send(self, recipient: str, template: str, payload: dict[str, Any]) -> bool:
        body = {"recipient": recipient, "template": template, "payload": payload}
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            response = await client.post(self.url, json=body)
        if 200 <= response.status_code < 300:
            metrics.record_notification(template, "sent")
            return True
        logger.warning(
            "notification_webhook_rejected",
            extra={"extra": {"template": template, "status_code": response.status_code}},
        )
        metrics.record_notification(template, "error")
        return False


NotificationAdapter = NoopNotificationAdapter | LogNotificationAdapter | WebhookNotificationAdapter


def resolve_notification_adapter(
    app_settings, *, transport: httpx.AsyncBaseTransport | None = None
) -> NotificationAdapter:
    if app_settings.notification_mode == "log":
        return LogNotificationAdapter()
    if app_settings.notification_mode == "webhook" and app_settings.notification_webhook_url:
        return WebhookNotificationAdapter(app_settings.notification_webhook_url, transport=transport)
    return NoopNotificationAdapter()
