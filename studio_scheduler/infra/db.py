import logging
from typing import Any, AsyncGenerator

from sqlalchemy import event
from sqlalchemy.engine import make_url
from sqlalchemy.exc import TimeoutError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from studio_scheduler.settings import settings

Base = declarative_base()

# Register every mapped class on Base.metadata before the first session is built.
import studio_scheduler.infra.models  # noqa: F401,E402

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None

logger = logging.getLogger(__name__)


def _engine_kwargs(database_url: str) -> dict[str, Any]:
    backend = make_url(database_url).get_backend_name()
    if backend == "postgresql":
        return {
            "pool_pre_ping": True,
            "pool_size": settings.database_pool_size,
            "max_overflow": settings.database_max_overflow,
            "pool_timeout": settings.database_pool_timeout_seconds,
            "connect_args": {
                "application_name": settings.app_name,
                "options": f"-c statement_timeout={int(settings.database_statement_timeout_ms)}",
            },
        }
    if backend == "sqlite":
        # Writers wait for the file lock instead of failing with "database is locked".
        return {"connect_args": {"timeout": settings.database_pool_timeout_seconds}}
    return {"pool_pre_ping": True}


def _get_session_factory() -> async_sessionmaker[AsyncSession]:
    global _engine, _session_factory
    if _session_factory is None:
        _engine = create_async_engine(settings.database_url, **_engine_kwargs(settings.database_url))
        _log_pool_timeouts(_engine)
        _session_factory = async_sessionmaker(_engine, expire_on_commit=False, class_=AsyncSession)
    return _session_factory


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Request-scoped session; services commit their own unit of work."""
    async with _get_session_factory()() as session:
        yield session


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    return _get_session_factory()


async def end_unchanged(session: AsyncSession) -> None:
    """Close a transaction that wrote nothing.

    A rollback would expire every object the caller still holds; sessions are
    built with ``expire_on_commit=False`` so an empty commit releases locks and
    leaves them loaded.
    """
    await session.commit()


async def dispose_engine() -> None:
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None


def _log_pool_timeouts(engine: AsyncEngine) -> None:
    @event.listens_for(engine.sync_engine, "handle_error")
    def receive_error(context):  # noqa: ANN001
        exc = context.original_exception or context.sqlalchemy_exception
        if isinstance(exc, TimeoutError):
            logger.warning(
                "db_pool_timeout",
                extra={"extra": {"statement": str(context.statement) if context.statement else None}},
            )
