import asyncio

import pytest
from sqlalchemy import text

from studio_scheduler.api import routes_health
from studio_scheduler.main import app
from studio_scheduler.settings import Settings


async def _set_alembic_version(async_session_maker, version: str | None) -> None:
    async with async_session_maker() as session:
        await session.execute(text("CREATE TABLE IF NOT EXISTS alembic_version (version_num VARCHAR(32) NOT NULL)"))
        await session.execute(text("DELETE FROM alembic_version"))
        if version is not None:
            await session.execute(
                text("INSERT INTO alembic_version (version_num) VALUES (:version)"),
                {"version": version},
            )
        await session.commit()


@pytest.fixture(autouse=True)
def reset_heads_cache():
    routes_health._heads_cache.update({"timestamp": 0.0, "heads": None})
    yield
    routes_health._heads_cache.update({"timestamp": 0.0, "heads": None})


@pytest.fixture()
def prod_settings():
    app.state.app_settings = Settings(app_env="prod", _env_file=None)


def test_healthz(client):
    assert client.get("/healthz").json() == {"status": "ok"}
    assert client.head("/healthz").status_code == 200


def test_readyz_checks_database_only_outside_prod(client):
    response = client.get("/readyz")

    assert response.status_code == 200
    payload = response.json()
    assert payload["ok"] is True
    assert [check["name"] for check in payload["checks"]] == ["db"]


def test_readyz_in_sync_migrations(monkeypatch, client, async_session_maker, prod_settings):
    asyncio.run(_set_alembic_version(async_session_maker, "head1"))
    monkeypatch.setattr(routes_health, "_expected_heads", lambda: ["head1"])

    response = client.get("/readyz")

    assert response.status_code == 200
    migrations = next(check for check in response.json()["checks"] if check["name"] == "migrations")
    assert migrations["ok"] is True
    assert migrations["detail"]["current_version"] == "head1"


def test_readyz_pending_migrations(monkeypatch, client, async_session_maker, prod_settings):
    asyncio.run(_set_alembic_version(async_session_maker, "old"))
    monkeypatch.setattr(routes_health, "_expected_heads", lambda: ["head1"])

    response = client.get("/readyz")

    assert response.status_code == 503
    payload = response.json()
    assert payload["ok"] is False
    migrations = next(check for check in payload["checks"] if check["name"] == "migrations")
    assert migrations["detail"]["message"] == "migrations pending"


def test_readyz_skips_when_scripts_missing(monkeypatch, client, prod_settings):
    monkeypatch.setattr(routes_health, "_expected_heads", lambda: None)

    response = client.get("/readyz")

    assert response.status_code == 200
    migrations = next(check for check in response.json()["checks"] if check["name"] == "migrations")
    assert migrations["detail"]["migrations_check"] == "skipped"


def test_readyz_reports_missing_database(client):
    app.state.db_session_factory = None

    response = client.get("/readyz")

    assert response.status_code == 503
    assert response.json()["checks"][0]["detail"]["message"] == "database session factory unavailable"
