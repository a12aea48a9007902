"""
Async database engine and session factory.

Uses SQLAlchemy 2.x async engine with asyncpg driver for PostgreSQL /
TimescaleDB. Provides module-level engine and session factory singletons,
initialised once at startup from the DATABASE_URL setting.

CHANGELOG:
- 2026-10-18: Initial creation (STORY-013)
"""

import os

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

# Module-level singletons, initialized lazily via init_engine().
async_engine: AsyncEngine | None = None
async_session_factory: async_sessionmaker[AsyncSession] | None = None


def _get_database_url() -> str:
    """Read DATABASE_URL from environment.

    Raises:
        RuntimeError: If DATABASE_URL is not set.
    """
    url = os.environ.get("DATABASE_URL")
    if not url:
        raise RuntimeError("DATABASE_URL environment variable is required")
    return url


def create_engine(url: str | None = None) -> AsyncEngine:
    """Create an async SQLAlchemy engine.

    Args:
        url: Database URL. Read from DATABASE_URL when omitted.
    """
    return create_async_engine(url or _get_database_url(), echo=False, pool_pre_ping=True)


def create_session_factory(
    engine: AsyncEngine | None = None,
) -> async_sessionmaker[AsyncSession]:
    """Create an async session factory.

    Args:
        engine: Optional async engine. If not provided, creates one from config.
    """
    if engine is None:
        engine = create_engine()
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


def init_engine(url: str | None = None) -> async_sessionmaker[AsyncSession]:
    """Initialize the module-level async engine and session factory.

    Safe to call multiple times; subsequent calls return the existing factory.
    """
    global async_engine, async_session_factory  # noqa: PLW0603
    if async_engine is None:
        async_engine = create_engine(url)
        async_session_factory = create_session_factory(async_engine)
    assert async_session_factory is not None
    return async_session_factory


async def dispose_engine() -> None:
    """Close pooled connections and reset the singletons."""
    global async_engine, async_session_factory  # noqa: PLW0603
    if async_engine is not None:
        await async_engine.dispose()
    async_engine = None
    async_session_factory = None
