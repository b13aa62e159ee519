"""
Async database engine helpers — PostgreSQL, MySQL, SQLite.

Driver mapping:
  postgresql://  → postgresql+asyncpg://     (requires asyncpg)
  mysql://       → mysql+aiomysql://         (requires aiomysql)
  sqlite://      → sqlite+aiosqlite://       (requires aiosqlite)

Usage:
    engine = create_engine("sqlite:///./sessions.db")
    await init_db(engine)                       # create tables once
    factory = create_session_factory(engine)
    async with session_scope(factory) as db:
        result = await db.execute(...)
    await engine.dispose()
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from sqlalchemy.ext.asyncio import (
    AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine,
)
from sqlalchemy.pool import StaticPool

from database.models import Base

logger = structlog.get_logger()


def to_async_url(db_url: str) -> str:
    """Convert a sync database URL to its async driver equivalent."""
    replacements = [
        ("postgresql://", "postgresql+asyncpg://"),
        ("postgres://", "postgresql+asyncpg://"),
        ("mysql://", "mysql+aiomysql://"),
        ("mysql+pymysql://", "mysql+aiomysql://"),
        ("sqlite://", "sqlite+aiosqlite://"),
    ]
    for sync_prefix, async_prefix in replacements:
        if db_url.startswith(sync_prefix):
            return db_url.replace(sync_prefix, async_prefix, 1)
    # Already async or unknown: return as-is
    return db_url


def _is_memory_sqlite(db_url: str) -> bool:
    rest = db_url.split("://", 1)[-1]
    return db_url.startswith("sqlite") and (":memory:" in db_url or rest in ("", "/"))


def engine_kwargs(db_url: str, echo: bool = False) -> dict:
    """Return database-specific engine configuration."""
    base = {"echo": echo}

    if "sqlite" in db_url:
        kwargs = {**base, "connect_args": {"check_same_thread": False}}
        if _is_memory_sqlite(db_url):
            # One shared connection, otherwise every checkout sees an empty database
            kwargs["poolclass"] = StaticPool
        return kwargs

    # PostgreSQL / MySQL: connection pool tuning
    return {
        **base,
        "pool_size": 10,
        "max_overflow": 20,
        "pool_timeout": 30,
        "pool_recycle": 1800,
        "pool_pre_ping": True,
    }


def create_engine(db_url: str, echo: bool = False) -> AsyncEngine:
    url = to_async_url(db_url)
    engine = create_async_engine(url, **engine_kwargs(url, echo))
    logger.info("database_engine_created",
                dialect=engine.dialect.name,
                url=str(engine.url).split("@")[-1] if "@" in str(engine.url) else str(engine.url))
    return engine


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@asynccontextmanager
async def session_scope(factory: async_sessionmaker[AsyncSession]) -> AsyncGenerator[AsyncSession, None]:
    """Provide a transactional async session scope."""
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db(engine: AsyncEngine) -> None:
    """Create all tables. Safe to call more than once."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("database_initialized",
                dialect=engine.dialect.name,
                tables=list(Base.metadata.tables.keys()))
