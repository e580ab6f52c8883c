from datetime import date, time

import anyio
from sqlalchemy.exc import OperationalError

from studio_scheduler.domain.errors import UnavailableError
from studio_scheduler.domain.sessions.db_models import SessionInstance
from studio_scheduler.main import app


def _seed_instance(async_session_maker, *, capacity: int = 1) -> int:
    async def _run():
        async with async_session_maker() as session:
            instance = SessionInstance(
                name="Yoga Flow",
                instructor_ref="coach-1",
                session_date=date(2025, 1, 8),
                start_time=time(18, 0),
                capacity=capacity,
            )
            session.add(instance)
            await session.commit()
            return instance.instance_id

    return anyio.run(_run)


def test_identity_is_required(client):
    response = client.get("/v1/sessions")
    assert response.status_code == 401
    assert response.headers["content-type"].startswith("application/problem+json")
    body = response.json()
    assert body["type"].endswith("/unauthorized")
    assert body["request_id"] == response.headers["X-Request-ID"]


def test_unknown_role_is_forbidden(client):
    response = client.get("/v1/sessions", headers={"X-Client-Id": "client-a", "X-Client-Role": "owner"})
    assert response.status_code == 403
    assert response.json()["type"].endswith("/forbidden")


def test_clients_cannot_create_sessions(client, staff_headers, as_client):
    body = {
        "name": "Spin",
        "instructor_ref": "coach-2",
        "session_date": "2025-01-09",
        "start_time": "07:30",
        "capacity": 3,
    }
    assert client.post("/v1/sessions", json=body, headers=as_client("client-a")).status_code == 403

    created = client.post("/v1/sessions", json=body, headers=staff_headers)
    assert created.status_code == 201
    payload = created.json()
    assert payload["seats_left"] == 3
    assert payload["is_generated_instance"] is False

    fetched = client.get(f"/v1/sessions/{payload['instance_id']}", headers=as_client("client-a"))
    assert fetched.status_code == 200
    assert fetched.json()["start_time"] == "07:30:00"


def test_enrollment_endpoint_maps_outcomes(client, async_session_maker, as_client, staff_headers):
    instance_id = _seed_instance(async_session_maker)

    booked = client.post(f"/v1/sessions/{instance_id}/enrollment", headers=as_client("client-a"))
    assert booked.status_code == 201
    assert booked.json()["outcome"] == "BOOKED"
    assert booked.json()["enrollment"]["client_ref"] == "client-a"

    again = client.post(f"/v1/sessions/{instance_id}/enrollment", headers=as_client("client-a"))
    assert again.status_code == 409
    assert again.json()["type"].endswith("/already-enrolled")

    full = client.post(f"/v1/sessions/{instance_id}/enrollment", headers=as_client("client-b"))
    assert full.status_code == 409
    assert full.json()["type"].endswith("/capacity-exceeded")

    participants = client.get(f"/v1/sessions/{instance_id}/participants", headers=staff_headers)
    assert [item["client_ref"] for item in participants.json()] == ["client-a"]


def test_clients_cannot_act_for_others(client, async_session_maker, as_client, staff_headers):
    instance_id = _seed_instance(async_session_maker, capacity=2)

    denied = client.post(
        f"/v1/sessions/{instance_id}/enrollment",
        json={"client_ref": "client-b"},
        headers=as_client("client-a"),
    )
    assert denied.status_code == 403

    on_behalf = client.post(
        f"/v1/sessions/{instance_id}/enrollment",
        json={"client_ref": "client-b"},
        headers=staff_headers,
    )
    assert on_behalf.status_code == 201
    assert on_behalf.json()["client_ref"] == "client-b"

    not_enrolled = client.delete(f"/v1/sessions/{instance_id}/enrollment", headers=as_client("client-a"))
    assert not_enrolled.status_code == 409
    assert not_enrolled.json()["type"].endswith("/not-enrolled")

    cancelled = client.delete(f"/v1/sessions/{instance_id}/enrollment", headers=as_client("client-b"))
    assert cancelled.status_code == 200
    assert cancelled.json()["affected"] == 1


def test_waitlist_join_after_full(client, async_session_maker, as_client):
    instance_id = _seed_instance(async_session_maker)
    client.post(f"/v1/sessions/{instance_id}/enrollment", headers=as_client("client-a"))

    joined = client.post(f"/v1/sessions/{instance_id}/waitlist", headers=as_client("client-b"))
    assert joined.status_code == 201
    assert joined.json()["position"] == 1

    duplicate = client.post(f"/v1/sessions/{instance_id}/waitlist", headers=as_client("client-b"))
    assert duplicate.status_code == 409
    assert duplicate.json()["type"].endswith("/duplicate-waitlist")


def test_series_create_generates_instances(client, staff_headers, as_client):
    body = {
        "name": "Morning Pilates",
        "instructor_ref": "coach-1",
        "day_of_week": 2,
        "start_time": "09:00",
        "end_time": "10:00",
        "series_start_date": "2025-01-07",
        "series_end_date": "2025-01-21",
        "capacity": 6,
    }
    assert client.post("/v1/series", json=body, headers=as_client("client-a")).status_code == 403

    created = client.post("/v1/series", json=body, headers=staff_headers)
    assert created.status_code == 201
    payload = created.json()
    assert [item["session_date"] for item in payload["generated"]["created"]] == [
        "2025-01-07",
        "2025-01-14",
        "2025-01-21",
    ]

    series_id = payload["series"]["series_id"]
    instances = client.get(f"/v1/series/{series_id}/instances", headers=as_client("client-a"))
    assert instances.status_code == 200
    assert {item["duration_minutes"] for item in instances.json()} == {60}

    invalid = client.post("/v1/series", json={**body, "end_time": "08:00"}, headers=staff_headers)
    assert invalid.status_code == 422
    assert invalid.json()["errors"]


def test_missing_resources_are_404(client, staff_headers):
    missing = client.get("/v1/sessions/9999", headers=staff_headers)
    assert missing.status_code == 404
    assert missing.json()["type"].endswith("/not-found")
    assert client.get("/v1/series/9999", headers=staff_headers).status_code == 404


def test_storage_errors_map_to_503(client):
    async def flaky_storage():
        raise OperationalError("SELECT 1", {}, Exception("database is locked"))

    async def overloaded():
        raise UnavailableError(detail="Try again shortly", retry_after_seconds=5)

    app.router.add_api_route("/v1/_flaky", flaky_storage, methods=["GET"])
    app.router.add_api_route("/v1/_overloaded", overloaded, methods=["GET"])
    try:
        storage = client.get("/v1/_flaky")
        assert storage.status_code == 503
        assert storage.headers["Retry-After"] == "1"
        assert storage.json()["type"].endswith("/unavailable")

        busy = client.get("/v1/_overloaded")
        assert busy.status_code == 503
        assert busy.headers["Retry-After"] == "5"
    finally:
        app.router.routes = [
            route for route in app.router.routes if getattr(route, "path", None) not in {"/v1/_flaky", "/v1/_overloaded"}
        ]


def test_request_id_is_echoed(client):
    response = client.get("/healthz", headers={"X-Request-ID": "req-123"})
    assert response.status_code == 200
    assert response.headers["X-Request-ID"] == "req-123"
