"""
database.py — async engine, session factory and request-scoped sessions.

Three tables live behind this engine: survey_submissions, progress_tracking
and api_keys (see models/). PostgreSQL via asyncpg in deployment; the test
suite and local runs can point DATABASE_URL at sqlite+aiosqlite instead.

Routes get a session through get_db, which commits once the handler returns.
The stats WebSocket and the api-key CSV import open their own sessions:

    async with AsyncSessionLocal() as db:
        stats = await build_stats(db, presence)
"""
from collections.abc import AsyncGenerator

from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from courseweb.config import settings


class Base(DeclarativeBase):
    """Declarative base for models/; alembic/env.py reads Base.metadata."""


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------
_engine_kwargs: dict = {
    "echo": settings.debug,
    "pool_pre_ping": True,
}
if not settings.is_sqlite:
    # SQLite pools do not accept sizing arguments
    _engine_kwargs.update(pool_size=5, max_overflow=10)

async_engine = create_async_engine(settings.database_url, **_engine_kwargs)

AsyncSessionLocal = async_sessionmaker(
    bind=async_engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """One session per request: commit on success, roll back on any exception."""
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
