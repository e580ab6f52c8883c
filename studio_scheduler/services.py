from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from studio_scheduler.infra.metrics import Metrics, configure_metrics
from studio_scheduler.infra.notifications import NotificationAdapter, resolve_notification_adapter


@dataclass
class AppServices:
    """Typed container for runtime services stored on `app.state.services`."""

    metrics: Metrics
    notification_adapter: NotificationAdapter


def build_app_services(app_settings, *, metrics: Metrics | None = None) -> AppServices:
    metrics_client = metrics or configure_metrics(app_settings.metrics_enabled)
    return AppServices(
        metrics=metrics_client,
        notification_adapter=resolve_notification_adapter(app_settings),
    )


def resolve_services(container_like: Any) -> AppServices | None:
    if isinstance(container_like, AppServices):
        return container_like
    if container_like is None:
        return None
    state = getattr(container_like, "state", container_like)
    return getattr(state, "services", None)
