"""
Alembic environment for the NutriChat billing ledger.

Runs migrations through the async engine, against the same URL the
application uses. Autogenerate only considers the tables this service
owns in the public schema; Supabase's auth/storage tables are ignored.
"""

import asyncio
import os
import sys
from logging.config import fileConfig

from sqlalchemy import pool
from sqlalchemy.ext.asyncio import create_async_engine
from alembic import context

# backend/ on the path so `app` imports when alembic runs from the CLI
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlmodel import SQLModel  # noqa: E402

import app.infrastructure.db.models  # noqa: E402,F401
from app.config.settings import get_settings  # noqa: E402
from app.infrastructure.db.database import async_database_url  # noqa: E402


config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = SQLModel.metadata

OWNED_TABLES = frozenset(target_metadata.tables)


def include_name(name, type_, parent_names):
    """Reflect only the public schema and only our own tables."""
    if type_ == "schema":
        return name in (None, "public")
    if type_ == "table":
        return name in OWNED_TABLES
    return True


def _configure(**kwargs) -> None:
    context.configure(
        target_metadata=target_metadata,
        include_name=include_name,
        compare_type=True,
        **kwargs,
    )


def run_migrations_offline() -> None:
    """Emit the migration SQL without a database connection."""
    _configure(
        url=async_database_url(get_settings()),
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()


def do_run_migrations(connection) -> None:
    _configure(connection=connection, compare_server_default=True)
    with context.begin_transaction():
        context.run_migrations()


async def run_migrations_online() -> None:
    engine = create_async_engine(async_database_url(get_settings()), poolclass=pool.NullPool)
    try:
        async with engine.connect() as connection:
            await connection.run_sync(do_run_migrations)
    finally:
        await engine.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    asyncio.run(run_migrations_online())
