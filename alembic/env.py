"""Alembic environment configuration for Atelier.

Supports both online (against real Postgres) and offline (SQL script) modes.
DATABASE_URL comes from environment / .env file via pydantic-settings; online
runs reuse the application's engine builder so the same timeouts apply.
"""

import asyncio
from logging.config import fileConfig

from alembic import context
from sqlalchemy.engine import Connection

from src.config.settings import get_settings
from src.db.session import Base, create_engine_from_settings
import src.db.tables  # noqa: F401 — register all ORM models

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata

settings = get_settings()
config.set_main_option("sqlalchemy.url", settings.DATABASE_URL)


def _configure(**kwargs) -> None:
    # SQLite cannot ALTER most constraints in place
    context.configure(
        target_metadata=target_metadata,
        compare_type=True,
        render_as_batch=settings.DATABASE_URL.startswith("sqlite"),
        **kwargs,
    )


def run_migrations_offline() -> None:
    """Run migrations in 'offline' mode — emit SQL to stdout."""
    _configure(
        url=config.get_main_option("sqlalchemy.url"),
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()


def do_run_migrations(connection: Connection) -> None:
    _configure(connection=connection)
    with context.begin_transaction():
        context.run_migrations()


async def run_async_migrations() -> None:
    """Run migrations in 'online' mode with the application's async engine."""
    engine = create_engine_from_settings(settings)
    try:
        async with engine.connect() as connection:
            await connection.run_sync(do_run_migrations)
    finally:
        await engine.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    asyncio.run(run_async_migrations())
