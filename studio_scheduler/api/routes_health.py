import asyncio
import logging
import time
from pathlib import Path
from typing import Any

from alembic.config import Config
from alembic.script import ScriptDirectory
from fastapi import APIRouter, Request, Response
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

router = APIRouter()
logger = logging.getLogger(__name__)

_PROJECT_ROOT = Path(__file__).resolve().parents[2]
_DB_CHECK_TIMEOUT_SECONDS = 2.0
_HEADS_CACHE_TTL_SECONDS = 60
_heads_cache: dict[str, Any] = {"timestamp": 0.0, "heads": None}


def _expected_heads() -> list[str] | None:
    """Alembic heads shipped with the code, or None when the scripts are not deployed."""
    now = time.monotonic()
    if now - _heads_cache["timestamp"] < _HEADS_CACHE_TTL_SECONDS:
        return _heads_cache["heads"]
    heads: list[str] | None
    try:
        cfg = Config(str(_PROJECT_ROOT / "alembic.ini"))
        cfg.set_main_option("script_location", str(_PROJECT_ROOT / "alembic"))
        heads = list(ScriptDirectory.from_config(cfg).get_heads())
    except Exception as exc:  # noqa: BLE001
        logger.warning("migrations_check_skipped", extra={"extra": {"error_type": type(exc).__name__}})
        heads = None
    _heads_cache.update({"timestamp": now, "heads": heads})
    return heads


@router.get("/healthz")
async def healthz() -> dict[str, str]:
    return {"status": "ok"}


@router.head("/healthz")
async def healthz_head() -> Response:
    return Response(status_code=200)


def _session_factory(request: Request):
    return getattr(request.app.state, "db_session_factory", None)


async def _db_check(request: Request) -> tuple[bool, dict[str, Any]]:
    session_factory = _session_factory(request)
    if session_factory is None:
        return False, {"message": "database session factory unavailable"}

    async def _ping():
        async with session_factory() as session:
            await session.execute(text("SELECT 1"))

    try:
        await asyncio.wait_for(_ping(), timeout=_DB_CHECK_TIMEOUT_SECONDS)
    except asyncio.TimeoutError:
        return False, {"message": "database check timed out", "timeout_seconds": _DB_CHECK_TIMEOUT_SECONDS}
    except SQLAlchemyError as exc:
        logger.debug("database_check_failed", exc_info=exc)
        return False, {"message": "database check failed", "error": type(exc).__name__}
    return True, {"message": "database reachable"}


async def _migrations_check(request: Request) -> tuple[bool, dict[str, Any]]:
    heads = _expected_heads()
    if heads is None:
        return True, {"message": "migration scripts not deployed", "migrations_check": "skipped"}
    session_factory = _session_factory(request)
    if session_factory is None:
        return False, {"message": "database session factory unavailable", "expected_heads": heads}

    async def _current_revision() -> str | None:
        async with session_factory() as session:
            result = await session.execute(text("SELECT version_num FROM alembic_version"))
            row = result.first()
            return row[0] if row else None

    try:
        current = await asyncio.wait_for(_current_revision(), timeout=_DB_CHECK_TIMEOUT_SECONDS)
    except asyncio.TimeoutError:
        return False, {"message": "migration check timed out", "expected_heads": heads}
    except SQLAlchemyError as exc:
        return False, {"message": "migration check failed", "error": type(exc).__name__, "expected_heads": heads}
    in_sync = current in heads
    return in_sync, {
        "message": "migrations in sync" if in_sync else "migrations pending",
        "current_version": current,
        "expected_heads": heads,
    }


async def _run_check(name: str, check_fn) -> dict[str, Any]:  # noqa: ANN001
    start = time.perf_counter()
    try:
        ok, detail = await check_fn()
    except Exception as exc:  # noqa: BLE001
        logger.exception("readiness_check_failed", extra={"extra": {"check": name}})
        ok, detail = False, {"message": "unexpected error", "error": type(exc).__name__}
    elapsed_ms = (time.perf_counter() - start) * 1000
    return {"name": name, "ok": bool(ok), "ms": round(elapsed_ms, 2), "detail": detail}


@router.get("/readyz")
async def readyz(request: Request) -> JSONResponse:
    checks = [await _run_check("db", lambda: _db_check(request))]
    app_settings = getattr(request.app.state, "app_settings", None)
    # Schema drift only gates readiness where migrations are the deploy path.
    if app_settings is not None and app_settings.app_env == "prod":
        checks.append(await _run_check("migrations", lambda: _migrations_check(request)))

    overall_ok = all(check["ok"] for check in checks)
    return JSONResponse(status_code=200 if overall_ok else 503, content={"ok": overall_ok, "checks": checks})
