"""JSON log lines with guest contact details and reschedule tokens scrubbed.

Messages are short event names (``enrollment_booked``, ``job_failed``);
structured fields travel in ``extra={"extra": {...}}`` or in the
request/job scoped ``LOG_CONTEXT``.
"""

import contextvars
import json
import logging
import re
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterator

EMAIL_RE = re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}")
PHONE_RE = re.compile(r"\b(?:\+?\d{1,3}[-.\s]?)?\(?\d{3}\)?[-.\s]?\d{3}[-.\s]?\d{3,4}\b")
TOKEN_QUERY_RE = re.compile(
    r"(?P<key>(?:token|access_token|refresh_token|auth|signature|sig))=(?P<value>[^&\s]+)",
    re.IGNORECASE,
)
# Reschedule tokens are 32 random bytes rendered as hex.
RESCHEDULE_TOKEN_RE = re.compile(r"\b[0-9a-f]{64}\b")
AUTH_HEADER_RE = re.compile(r"(?i)\bauthorization\s*[:=]\s*[^\s]+")
BEARER_RE = re.compile(r"(?i)bearer\s+[A-Za-z0-9._\-]+")

_REDACTIONS: tuple[tuple[re.Pattern[str], Any], ...] = (
    (EMAIL_RE, "[REDACTED_EMAIL]"),
    (TOKEN_QUERY_RE, lambda match: f"{match.group('key')}=[REDACTED_TOKEN]"),
    (RESCHEDULE_TOKEN_RE, "[REDACTED_TOKEN]"),
    (PHONE_RE, "[REDACTED_PHONE]"),
    (AUTH_HEADER_RE, "authorization=[REDACTED_TOKEN]"),
    (BEARER_RE, "Bearer [REDACTED_TOKEN]"),
)

GUEST_CONTACT_KEYS = {"guest_name", "guest_email", "guest_phone", "email", "phone", "recipient"}
SENSITIVE_KEYS = GUEST_CONTACT_KEYS | {
    "authorization",
    "token",
    "reschedule_token",
    "access_token",
    "refresh_token",
    "signature",
}
LOG_CONTEXT: contextvars.ContextVar[dict[str, Any]] = contextvars.ContextVar("log_context", default={})
_LOG_RECORD_ATTRS = set(logging.LogRecord(None, 0, "", 0, "", (), None).__dict__.keys())


def redact_pii(value: str) -> str:
    for pattern, replacement in _REDACTIONS:
        value = pattern.sub(replacement, value)
    return value


def _sanitize_value(value: Any, key: str | None = None) -> Any:
    if key and key.lower() in SENSITIVE_KEYS:
        return "[REDACTED]"
    if isinstance(value, str):
        return redact_pii(value)
    if isinstance(value, (list, tuple)):
        return [_sanitize_value(item) for item in value]
    if isinstance(value, dict):
        return {item_key: _sanitize_value(item_value, item_key) for item_key, item_value in value.items()}
    return value


def _without_none(fields: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in fields.items() if value is not None}


def update_log_context(**kwargs: Any) -> dict[str, Any]:
    merged = {**LOG_CONTEXT.get({}), **_without_none(kwargs)}
    LOG_CONTEXT.set(merged)
    return merged


def clear_log_context() -> None:
    LOG_CONTEXT.set({})


@contextmanager
def log_context(**kwargs: Any) -> Iterator[dict[str, Any]]:
    """Adds fields for the duration of the block, then restores the outer context."""
    token = LOG_CONTEXT.set({**LOG_CONTEXT.get({}), **_without_none(kwargs)})
    try:
        yield LOG_CONTEXT.get()
    finally:
        LOG_CONTEXT.reset(token)


def _extract_extra(record: logging.LogRecord) -> dict[str, Any]:
    structured: dict[str, Any] = {}
    for key, value in record.__dict__.items():
        if key in _LOG_RECORD_ATTRS or key.startswith("_"):
            continue
        structured[key] = value
    extra_payload = structured.pop("extra", None)
    if isinstance(extra_payload, dict):
        structured.update(extra_payload)
    return structured


class RedactingJsonFormatter(logging.Formatter):
    def __init__(self, service: str | None = None) -> None:
        super().__init__()
        self.service = service

    def format(self, record: logging.LogRecord) -> str:  # noqa: D401 - concise formatter
        payload: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "message": redact_pii(str(record.getMessage())),
            "logger": record.name,
        }
        if self.service:
            payload["service"] = self.service
        context = LOG_CONTEXT.get({})
        if context:
            payload.update(_sanitize_value(context))
        extra = _extract_extra(record)
        if extra:
            payload.update(_sanitize_value(extra))
        if record.exc_info and record.exc_info[0] is not None:
            payload["error_type"] = record.exc_info[0].__name__
        return json.dumps(payload, ensure_ascii=False, default=str)


def configure_logging(level: str = "INFO", service: str | None = None) -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(RedactingJsonFormatter(service=service))
    root = logging.getLogger()
    root.setLevel(level.upper())
    root.handlers.clear()
    root.addHandler(handler)
    # Bound parameters in engine logs are not redacted.
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
