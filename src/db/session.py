"""SQLAlchemy async session setup for Atelier.

Provides:
- Base: DeclarativeBase for all ORM models
- create_engine_from_settings: async engine with bounded timeouts
- build_session_factory: session maker bound to an engine
- get_async_session: FastAPI dependency with Unit-of-Work commit/rollback

The engine and session factory are created in the application lifespan and
kept on ``app.state``; nothing here opens connections at import time.
"""

from collections.abc import AsyncGenerator

from fastapi import Request
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from src.config.settings import Settings


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy ORM models."""

    pass


def create_engine_from_settings(settings: Settings) -> AsyncEngine:
    """Build the async engine. Statement timeouts apply to asyncpg only."""
    connect_args: dict = {}
    if settings.DATABASE_URL.startswith("postgresql+asyncpg"):
        connect_args["command_timeout"] = settings.DATABASE_COMMAND_TIMEOUT
    kwargs: dict = {"pool_pre_ping": True, "connect_args": connect_args}
    if not settings.DATABASE_URL.startswith("sqlite"):
        kwargs["pool_timeout"] = settings.DATABASE_POOL_TIMEOUT
    return create_async_engine(settings.DATABASE_URL, **kwargs)


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


async def get_async_session(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """Yield an async database session with Unit-of-Work semantics.

    Repositories only call add()/flush()/execute().
    Commit happens once at the end of a successful request.
    Rollback happens on any exception.
    """
    session_factory: async_sessionmaker[AsyncSession] = request.app.state.session_factory
    async with session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
