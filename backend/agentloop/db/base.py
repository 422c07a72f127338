"""Declarative base and the async engine behind ``SqlStore``."""

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from agentloop.core.config import Settings


class Base(DeclarativeBase):
    pass


_engine: AsyncEngine | None = None
_sessions: async_sessionmaker[AsyncSession] | None = None


async def init_db(settings: Settings) -> async_sessionmaker[AsyncSession]:
    """Open the engine once, create missing job and session tables, return the session factory."""
    global _engine, _sessions

    if _sessions is None:
        _engine = create_async_engine(settings.database_url, echo=settings.debug, pool_pre_ping=True)
        _sessions = async_sessionmaker(_engine, expire_on_commit=False)

        import agentloop.db.models  # noqa: F401  registers the tables on Base.metadata

        async with _engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
    return _sessions


async def ping_db() -> None:
    if _sessions is None:
        raise RuntimeError("database is not initialised")
    async with _sessions() as session:
        await session.execute(text("SELECT 1"))


async def close_db() -> None:
    global _engine, _sessions

    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _sessions = None
