"""Async SQLAlchemy engine and sessions.

HTTP handlers get one session per request through ``get_session``.
WebSocket sessions outlive any request, so tracker saves and notification
reads open their own short sessions from ``get_session_factory()``.
"""

from collections.abc import AsyncGenerator

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


async def init_db(url: str, pool_size: int = 10, max_overflow: int = 5) -> None:
    """Create the engine and the session factory."""
    global _engine, _session_factory  # noqa: PLW0603
    _engine = create_async_engine(
        url,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_pre_ping=True,
    )
    # Rows are read after commit to build change records
    _session_factory = async_sessionmaker(_engine, class_=AsyncSession, expire_on_commit=False)


async def close_db() -> None:
    """Dispose of the engine. Sessions requested afterwards fail fast."""
    global _engine, _session_factory  # noqa: PLW0603
    engine = _engine
    _engine = None
    _session_factory = None
    if engine is not None:
        await engine.dispose()


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    if _session_factory is None:
        msg = "Database not initialized. Call init_db() first."
        raise RuntimeError(msg)
    return _session_factory


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield a request-scoped session (FastAPI dependency)."""
    async with get_session_factory()() as session:
        yield session


async def ping_db(session: AsyncSession) -> bool:
    """True when the database answers a trivial query."""
    result = await session.execute(text("SELECT 1"))
    return result.scalar() == 1
