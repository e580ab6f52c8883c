import asyncio
import os
from datetime import datetime
from pathlib import Path

os.environ.setdefault("APP_ENV", "dev")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./test.db")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool, StaticPool

from studio_scheduler.infra.db import Base, get_db_session
from studio_scheduler.main import app
from studio_scheduler.settings import settings
from studio_scheduler.shared.clock import FixedClock

# Monday morning before every fixture date used in the suite.
TEST_NOW = datetime(2025, 1, 6, 8, 0)


@pytest.fixture(scope="session")
def test_engine():
    db_path = Path("test.db")
    if db_path.exists():
        db_path.unlink()
    engine = create_async_engine(
        "sqlite+aiosqlite:///./test.db",
        connect_args={"check_same_thread": False, "timeout": 30},
        poolclass=StaticPool,
    )

    async def init_models() -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    asyncio.run(init_models())
    yield engine
    asyncio.run(engine.dispose())


@pytest.fixture(scope="session")
def async_session_maker(test_engine):
    return async_sessionmaker(test_engine, expire_on_commit=False)


@pytest.fixture()
def file_session_maker(tmp_path):
    """Separate connections per session so concurrent writers really contend."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'concurrency.db'}",
        connect_args={"timeout": 30},
        poolclass=NullPool,
    )

    async def init_models() -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    asyncio.run(init_models())
    yield async_sessionmaker(engine, expire_on_commit=False)
    asyncio.run(engine.dispose())


@pytest.fixture(autouse=True)
def restore_settings():
    original = {
        "app_env": settings.app_env,
        "testing": settings.testing,
        "metrics_enabled": settings.metrics_enabled,
        "metrics_token": settings.metrics_token,
        "series_horizon_days": settings.series_horizon_days,
        "slot_step_minutes": settings.slot_step_minutes,
        "working_hours_raw": settings.working_hours_raw,
        "guest_signup_cutoff_minutes": settings.guest_signup_cutoff_minutes,
        "reschedule_token_ttl_hours": settings.reschedule_token_ttl_hours,
        "outbox_max_attempts": settings.outbox_max_attempts,
        "notification_mode": settings.notification_mode,
        "signal_required_categories_raw": settings.signal_required_categories_raw,
    }
    yield
    for key, value in original.items():
        setattr(settings, key, value)


@pytest.fixture(autouse=True)
def enable_test_mode():
    settings.testing = True
    settings.app_env = "dev"
    yield


@pytest.fixture(autouse=True)
def restore_app_state():
    original_metrics = getattr(app.state, "metrics", None)
    original_app_settings = getattr(app.state, "app_settings", None)
    yield
    if original_metrics is not None:
        app.state.metrics = original_metrics
    elif hasattr(app.state, "metrics"):
        delattr(app.state, "metrics")

    if original_app_settings is not None:
        app.state.app_settings = original_app_settings
    elif hasattr(app.state, "app_settings"):
        delattr(app.state, "app_settings")


@pytest.fixture(autouse=True)
def clean_database(test_engine):
    async def truncate_tables() -> None:
        async with test_engine.begin() as conn:
            for table in reversed(Base.metadata.sorted_tables):
                await conn.execute(table.delete())

    asyncio.run(truncate_tables())
    yield


@pytest.fixture()
def clock():
    return FixedClock(TEST_NOW)


def _build_client(async_session_maker, clock, *, raise_server_exceptions: bool):
    async def override_db_session():
        async with async_session_maker() as session:
            yield session

    app.dependency_overrides[get_db_session] = override_db_session
    original_factory = getattr(app.state, "db_session_factory", None)
    original_clock = getattr(app.state, "clock", None)
    app.state.db_session_factory = async_session_maker
    app.state.clock = clock
    return original_factory, original_clock, TestClient(app, raise_server_exceptions=raise_server_exceptions)


@pytest.fixture()
def client(async_session_maker, clock):
    original_factory, original_clock, test_client = _build_client(
        async_session_maker, clock, raise_server_exceptions=True
    )
    with test_client:
        yield test_client
    app.dependency_overrides.clear()
    app.state.db_session_factory = original_factory
    app.state.clock = original_clock


@pytest.fixture()
def client_no_raise(async_session_maker, clock):
    """Test client that returns HTTP responses instead of raising server exceptions."""
    original_factory, original_clock, test_client = _build_client(
        async_session_maker, clock, raise_server_exceptions=False
    )
    with test_client:
        yield test_client
    app.dependency_overrides.clear()
    app.state.db_session_factory = original_factory
    app.state.clock = original_clock


@pytest.fixture()
def staff_headers():
    return {"X-Client-Id": "staff-1", "X-Client-Role": "staff"}


@pytest.fixture()
def as_client():
    def _headers(client_ref: str) -> dict[str, str]:
        return {"X-Client-Id": client_ref, "X-Client-Role": "client"}

    return _headers
