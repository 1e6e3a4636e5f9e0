"""Alembic environment for the SignVault database.

There are no SQLAlchemy models; every migration is raw SQL via op.execute().
Online migrations run on an async aiosqlite engine driven by anyio.
"""

import logging

import anyio
from sqlalchemy import pool
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import async_engine_from_config

from alembic import context

logger = logging.getLogger("alembic.env")

config = context.config
target_metadata = None


def get_database_url() -> str:
    """URL from ``-x database_url=...`` or the programmatic config."""
    url = context.get_x_argument(as_dictionary=True).get("database_url")
    if not url:
        url = config.get_main_option("sqlalchemy.url")
    if not url:
        url = "sqlite+aiosqlite:////app/data/signvault.db"
        logger.warning(f"No database URL configured, using default: {url}")
    return url


def run_migrations_offline() -> None:
    """Emit SQL to stdout instead of executing it."""
    context.configure(
        url=get_database_url(),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )

    with context.begin_transaction():
        context.run_migrations()


def do_run_migrations(connection: Connection) -> None:
    context.configure(connection=connection, target_metadata=target_metadata)

    with context.begin_transaction():
        context.run_migrations()


async def run_async_migrations() -> None:
    config.set_main_option("sqlalchemy.url", get_database_url())

    connectable = async_engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )

    async with connectable.connect() as connection:
        await connection.run_sync(do_run_migrations)

    await connectable.dispose()


def run_migrations_online() -> None:
    anyio.run(run_async_migrations)


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
