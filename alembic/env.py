"""Alembic environment for the escrow event log and offer snapshot schema.

The target URL is ``SQLALCHEMY_DATABASE_URL`` when set, otherwise the
services' own ``DATABASE_URL`` (read through ``DatabaseSettings``, so `.env`
works too). Migrations run on the async engine: asyncpg for PostgreSQL,
aiosqlite for local SQLite files.
"""

from __future__ import annotations

import asyncio
import os
from logging.config import fileConfig

from alembic import context
from sqlalchemy import pool
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import async_engine_from_config

from escrow_orderflow.config import DatabaseSettings
from escrow_orderflow.storage.database import normalize_async_database_url
from escrow_orderflow.storage.models import Base

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

# events, offers, processing_diagnostics
target_metadata = Base.metadata


def _get_database_url() -> str:
    override = os.environ.get("SQLALCHEMY_DATABASE_URL")
    if override:
        return normalize_async_database_url(os.path.expandvars(override))
    settings = DatabaseSettings(_env_file=".env", _env_file_encoding="utf-8")
    return normalize_async_database_url(settings.url)


config.set_main_option("sqlalchemy.url", _get_database_url())


def run_migrations_offline() -> None:
    """Emit the schema as SQL without connecting."""
    context.configure(
        url=config.get_main_option("sqlalchemy.url"),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )

    with context.begin_transaction():
        context.run_migrations()


def _do_run_migrations(connection: Connection) -> None:
    context.configure(
        connection=connection,
        target_metadata=target_metadata,
        render_as_batch=connection.dialect.name == "sqlite",
    )

    with context.begin_transaction():
        context.run_migrations()


async def _run_migrations_online() -> None:
    engine = async_engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )
    try:
        async with engine.connect() as connection:
            await connection.run_sync(_do_run_migrations)
    finally:
        await engine.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    asyncio.run(_run_migrations_online())
