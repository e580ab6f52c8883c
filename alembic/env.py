from logging.config import fileConfig

from alembic import context
from sqlalchemy import engine_from_config, pool
from sqlalchemy.engine import make_url

import studio_scheduler.infra.models  # noqa: F401
from studio_scheduler.infra.db import Base
from studio_scheduler.settings import settings

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)


def _sync_database_url(raw_url: str) -> str:
    url = make_url(raw_url)
    if url.drivername.endswith("+aiosqlite"):
        url = url.set(drivername="sqlite")
    return url.render_as_string(hide_password=False)


config.set_main_option("sqlalchemy.url", _sync_database_url(settings.database_url))

target_metadata = Base.metadata


def run_migrations_offline() -> None:
    context.configure(
        url=config.get_main_option("sqlalchemy.url"),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    connectable = engine_from_config(
        config.get_section(config.config_ini_section),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )

    with connectable.connect() as connection:
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            render_as_batch=connection.dialect.name == "sqlite",
        )

        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
