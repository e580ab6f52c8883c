import logging
import time

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

logger = logging.getLogger(__name__)


class Metrics:
    def __init__(self, enabled: bool = False, service_name: str = "studio-scheduler") -> None:
        self._configure(enabled, service_name)

    def _configure(self, enabled: bool, service_name: str = "studio-scheduler") -> None:
        self.enabled = enabled
        self.service_name = service_name
        self.registry = CollectorRegistry(auto_describe=True)
        if not enabled:
            self.enrollment_events = None
            self.waitlist_events = None
            self.series_instances = None
            self.reschedule_events = None
            self.outbox_queue_depth = None
            self.notifications = None
            self.http_5xx = None
            self.http_latency = None
            self.job_heartbeat = None
            self.job_last_success = None
            self.job_errors = None
            return

        self.enrollment_events = Counter(
            "enrollment_events_total",
            "Enrollment outcomes by action.",
            ["action"],
            registry=self.registry,
        )
        self.waitlist_events = Counter(
            "waitlist_events_total",
            "Waitlist transitions by action.",
            ["action"],
            registry=self.registry,
        )
        self.series_instances = Counter(
            "series_instances_generated_total",
            "Session instances materialized from recurring series.",
            registry=self.registry,
        )
        self.reschedule_events = Counter(
            "reschedule_events_total",
            "Reschedule proposal lifecycle by kind and outcome.",
            ["kind", "outcome"],
            registry=self.registry,
        )
        self.outbox_queue_depth = Gauge(
            "outbox_queue_messages",
            "Outbox queue depth by status (pending/retry/dead).",
            ["status"],
            registry=self.registry,
        )
        self.notifications = Counter(
            "notifications_total",
            "Notification deliveries by template and status.",
            ["template", "status"],
            registry=self.registry,
        )
        self.http_5xx = Counter(
            "http_5xx_total",
            "HTTP responses with status >= 500.",
            ["method", "route"],
            registry=self.registry,
        )
        self.http_latency = Histogram(
            "http_request_latency_seconds",
            "HTTP request latency in seconds.",
            ["method", "route", "status_class"],
            buckets=(0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10),
            registry=self.registry,
        )
        self.job_heartbeat = Gauge(
            "job_last_heartbeat_timestamp",
            "Unix timestamp for the latest job heartbeat.",
            ["job"],
            registry=self.registry,
        )
        self.job_last_success = Gauge(
            "job_last_success_timestamp",
            "Unix timestamp for the latest successful job loop.",
            ["job"],
            registry=self.registry,
        )
        self.job_errors = Counter(
            "job_errors_total",
            "Job execution errors by job and reason.",
            ["job", "reason"],
            registry=self.registry,
        )

    def record_enrollment(self, action: str, count: int = 1) -> None:
        if not self.enabled or self.enrollment_events is None:
            return
        if count <= 0:
            return
        self.enrollment_events.labels(action=action).inc(count)

    def record_waitlist(self, action: str, count: int = 1) -> None:
        if not self.enabled or self.waitlist_events is None:
            return
        if count <= 0:
            return
        self.waitlist_events.labels(action=action).inc(count)

    def record_instances_generated(self, count: int) -> None:
        if not self.enabled or self.series_instances is None:
            return
        if count <= 0:
            return
        self.series_instances.inc(count)

    def record_reschedule(self, kind: str, outcome: str) -> None:
        if not self.enabled or self.reschedule_events is None:
            return
        self.reschedule_events.labels(kind=kind, outcome=outcome or "unknown").inc()

    def record_notification(self, template: str, status: str) -> None:
        if not self.enabled or self.notifications is None:
            return
        self.notifications.labels(template=template or "unknown", status=status).inc()

    def set_outbox_depth(self, status: str, count: int) -> None:
        if not self.enabled or self.outbox_queue_depth is None:
            return
        safe_status = status or "unknown"
        self.outbox_queue_depth.labels(status=safe_status).set(max(0, count))

    def record_http_5xx(self, method: str, route: str) -> None:
        if not self.enabled or self.http_5xx is None:
            return
        self.http_5xx.labels(method=method, route=route).inc()

    def record_http_latency(self, method: str, route: str, status_code: int, duration_seconds: float) -> None:
        if not self.enabled or self.http_latency is None:
            return
        status_class = f"{status_code // 100}xx" if status_code else "unknown"
        duration_seconds = max(0.0, float(duration_seconds))
        self.http_latency.labels(method=method, route=route, status_class=status_class).observe(
            duration_seconds
        )

    def record_job_heartbeat(self, job: str, timestamp: float | None = None) -> None:
        if not self.enabled or self.job_heartbeat is None:
            return
        ts = timestamp if timestamp is not None else time.time()
        self.job_heartbeat.labels(job=job).set(ts)

    def record_job_success(self, job: str, timestamp: float | None = None) -> None:
        if not self.enabled or self.job_last_success is None:
            return
        ts = timestamp if timestamp is not None else time.time()
        self.job_last_success.labels(job=job).set(ts)

    def record_job_error(self, job: str, reason: str) -> None:
        if not self.enabled or self.job_errors is None:
            return
        safe_reason = reason or "unknown"
        self.job_errors.labels(job=job, reason=safe_reason).inc()

    def render(self) -> tuple[bytes, str]:
        if not self.enabled:
            return b"metrics_disabled 1\n", "text/plain; version=0.0.4"
        try:
            return generate_latest(self.registry), CONTENT_TYPE_LATEST
        except Exception:  # noqa: BLE001
            logger.exception("metrics_render_failed")
            return b"metrics_render_failed 1\n", "text/plain; version=0.0.4"


metrics = Metrics(enabled=False)


def configure_metrics(enabled: bool, service_name: str = "studio-scheduler") -> Metrics:
    metrics._configure(enabled, service_name)
    return metrics
