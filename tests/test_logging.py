import json
import logging
from datetime import datetime

import anyio

from studio_scheduler.infra.logging import clear_log_context, configure_logging, log_context, update_log_context
from studio_scheduler.infra.notifications import NoopNotificationAdapter
from studio_scheduler.jobs import run as jobs_run
from studio_scheduler.jobs import series_sweep
from studio_scheduler.main import app
from studio_scheduler.shared.clock import FixedClock


def _remove_route(path: str) -> None:
    app.router.routes = [route for route in app.router.routes if getattr(route, "path", None) != path]


def _log_lines(capsys) -> list[dict]:
    captured = capsys.readouterr()
    lines = (captured.out + captured.err).strip().splitlines()
    return [json.loads(line) for line in lines if line.startswith("{")]


def test_guest_contact_details_are_redacted(capsys):
    configure_logging()
    logger = logging.getLogger("guest-test")

    logger.info(
        "guest signup from ana@example.com",
        extra={
            "extra": {
                "guest_email": "ana@example.com",
                "guest_phone": "+1 555 010 0100",
                "note": "call 555-010-0199 before class",
                "instance_id": 12,
            }
        },
    )

    payload = _log_lines(capsys)[-1]
    assert payload["message"] == "guest signup from [REDACTED_EMAIL]"
    assert payload["guest_email"] == "[REDACTED]"
    assert payload["guest_phone"] == "[REDACTED]"
    assert "555-010-0199" not in payload["note"]
    assert payload["instance_id"] == 12


def test_reschedule_tokens_are_redacted(capsys):
    configure_logging()
    logger = logging.getLogger("token-test")
    token = "ab" * 32

    logger.info(
        f"confirm link /v1/public/reschedule/confirm?token={token}",
        extra={"extra": {"reschedule_token": token, "hint": f"token {token}"}},
    )

    payload = _log_lines(capsys)[-1]
    assert token not in json.dumps(payload)
    assert payload["reschedule_token"] == "[REDACTED]"
    assert "[REDACTED_TOKEN]" in payload["message"]


def test_log_context_is_merged_until_cleared(capsys):
    configure_logging()
    logger = logging.getLogger("context-test")

    update_log_context(series_id=4, job=None)
    logger.info("with_context")
    clear_log_context()
    logger.info("without_context")

    with_context, without_context = _log_lines(capsys)[-2:]
    assert with_context["series_id"] == 4
    assert "job" not in with_context
    assert "series_id" not in without_context


def test_scoped_context_restores_outer_fields(capsys):
    configure_logging(service="studio-scheduler")
    logger = logging.getLogger("scope-test")

    with log_context(job="series-sweep"):
        with log_context(series_id=9):
            logger.info("inner")
        logger.info("outer")
    logger.info("after")

    inner, outer, after = _log_lines(capsys)[-3:]
    assert inner["job"] == "series-sweep"
    assert inner["series_id"] == 9
    assert inner["service"] == "studio-scheduler"
    assert outer["job"] == "series-sweep"
    assert "series_id" not in outer
    assert "job" not in after


def test_request_id_present_in_logs_and_response(client_no_raise, capsys):
    configure_logging()

    async def boom():  # pragma: no cover - executed via HTTP
        raise RuntimeError("boom")

    route_path = "/boom-log"
    app.router.add_api_route(route_path, boom, methods=["GET"])

    response = client_no_raise.get(route_path, headers={"X-Request-ID": "req-123"})

    assert response.status_code == 500
    assert response.json()["request_id"] == "req-123"
    unhandled = next(line for line in reversed(_log_lines(capsys)) if line["message"] == "unhandled_exception")
    assert unhandled["request_id"] == "req-123"
    assert unhandled["error_type"] == "RuntimeError"
    _remove_route(route_path)


def test_request_log_carries_caller(client, capsys, as_client):
    configure_logging()

    client.get("/v1/sessions", headers=as_client("client-a"))

    request_line = next(line for line in reversed(_log_lines(capsys)) if line["message"] == "request")
    assert request_line["path"] == "/v1/sessions"
    assert request_line["status_code"] == 200
    assert request_line["client_ref"] == "client-a"
    assert request_line["role"] == "client"


def test_failed_job_is_logged(async_session_maker, monkeypatch, capsys):
    configure_logging()

    async def _broken_sweep(session, *, today, now):
        raise RuntimeError("sweep exploded")

    monkeypatch.setattr(series_sweep, "run_series_sweep", _broken_sweep)

    async def _run():
        await jobs_run.run_jobs(
            ["series-sweep"],
            async_session_maker,
            adapter=NoopNotificationAdapter(),
            clock=FixedClock(datetime(2025, 1, 13, 6, 0)),
        )

    anyio.run(_run)

    failed = next(line for line in _log_lines(capsys) if line["message"] == "job_failed")
    assert failed["job"] == "series-sweep"
    assert failed["reason"] == "RuntimeError"
    assert failed["level"] == "WARNING"
