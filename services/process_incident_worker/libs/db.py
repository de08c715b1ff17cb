"""Database engine and session factory for async SQLAlchemy.

Unlike a process-wide singleton, the engine and session factory are built
explicitly from ``Settings`` and handed to whoever needs them (the store, the
schema script). Callers own the engine and must ``await engine.dispose()``.

Example:
    >>> engine = build_engine(Settings())
    >>> sessions = build_session_factory(engine)
    >>> async with sessions() as session:
    ...     await session.execute(text("SELECT 1"))
"""

from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine  # type: ignore

from libs.config import Settings, normalize_database_url
from libs.orm_models import Base


def build_engine(settings: Settings) -> AsyncEngine:
    """Return an async engine for ``settings.database_url``.

    ``postgres://`` and ``postgresql://`` URLs are normalized to the
    ``asyncpg`` driver.
    """
    return create_async_engine(normalize_database_url(settings.database_url), pool_pre_ping=True)


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    """Return a session factory with ``expire_on_commit=False``."""
    return async_sessionmaker(engine, expire_on_commit=False)


async def create_schema(engine: AsyncEngine) -> None:
    """Create the incident tables if they do not exist."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
