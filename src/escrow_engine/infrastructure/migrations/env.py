"""Alembic environment for the escrow engine schema.

Offline mode renders SQL for review; online mode runs against DATABASE_URL
through the async engine. SQLite (local runs, the simulation) gets batch mode
so ALTERs on the escrow tables work there too.

The settlement_claims and open_scope_key unique constraints carry the engine's
exactly-once guarantees, so autogenerate compares types as well as names.
"""

import asyncio

from alembic import context
from sqlalchemy import pool
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import async_engine_from_config

from escrow_engine.config import get_settings
from escrow_engine.infrastructure.database.orm_models import Base
from escrow_engine.logging_config import get_logger, setup_logging

config = context.config
settings = get_settings()
config.set_main_option("sqlalchemy.url", settings.database_url)

# alembic.ini carries no logging sections; migrations log like the app does.
setup_logging(settings.app_log_level, json_logs=not settings.is_development)

logger = get_logger("escrow_engine.migrations")
target_metadata = Base.metadata


def _configure(**kwargs) -> None:
    context.configure(
        target_metadata=target_metadata,
        compare_type=True,
        **kwargs,
    )


def run_migrations_offline() -> None:
    _configure(
        url=config.get_main_option("sqlalchemy.url"),
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        render_as_batch=settings.database_url.startswith("sqlite"),
    )
    with context.begin_transaction():
        context.run_migrations()


def do_run_migrations(connection: Connection) -> None:
    _configure(connection=connection, render_as_batch=connection.dialect.name == "sqlite")
    with context.begin_transaction():
        context.run_migrations()


async def run_async_migrations() -> None:
    connectable = async_engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )
    logger.info("migrations.started", dialect=connectable.dialect.name)
    async with connectable.connect() as connection:
        await connection.run_sync(do_run_migrations)
    await connectable.dispose()
    logger.info("migrations.finished", tables=len(target_metadata.tables))


if context.is_offline_mode():
    run_migrations_offline()
else:
    asyncio.run(run_async_migrations())
