"""Async database engine, session factory, and lifespan management.

PostgreSQL through SQLAlchemy 2.0 async and asyncpg; pool sizing comes from
``settings.db``. Redis only backs the optional cross-instance maintenance
lock, so the client is created on first use.
"""

from __future__ import annotations

import contextlib
from collections.abc import AsyncGenerator

import redis.asyncio as aioredis
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from src.config import settings

# ── Async PostgreSQL engine ──────────────────────────────────────────

engine: AsyncEngine = create_async_engine(
    settings.db.database_url,
    echo=settings.log_level == "DEBUG",
    pool_size=settings.db.pool_size,
    max_overflow=settings.db.max_overflow,
    pool_pre_ping=True,
    pool_recycle=3600,
)

# ── Session factory ──────────────────────────────────────────────────

async_session_factory = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency yielding a session that commits on success.

    Any exception raised by the route rolls the whole request back.
    """
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


# ── Redis client ─────────────────────────────────────────────────────

_redis: aioredis.Redis | None = None


def get_redis() -> aioredis.Redis:
    global _redis
    if _redis is None:
        _redis = aioredis.from_url(settings.db.redis_url, decode_responses=True)
    return _redis


# ── Lifespan helpers ─────────────────────────────────────────────────


async def init_db() -> None:
    """Verify connectivity; create owned tables outside production.

    Production schemas come from Alembic. The external clinic/patient
    tables are never created here.
    """
    async with engine.begin() as conn:
        from src.models.base import Base
        from src.models.appointment import Appointment
        from src.models.recurring_template import RecurringTemplate

        if not settings.is_production:
            await conn.run_sync(
                Base.metadata.create_all,
                tables=[RecurringTemplate.__table__, Appointment.__table__],
            )


async def close_db() -> None:
    """Dispose the engine pool and the Redis connection, if one was opened."""
    global _redis
    await engine.dispose()
    if _redis is not None:
        await _redis.aclose()
        _redis = None


@contextlib.asynccontextmanager
async def db_lifespan() -> AsyncGenerator[None, None]:
    """Create owned tables (outside production) on entry; release connections on exit."""
    await init_db()
    try:
        yield
    finally:
        await close_db()
