"""
Async engine and session scopes for the job store and the CRM directory.

Both read the database named by `database.url` in settings. Sync-style URLs
are mapped onto their async drivers (asyncpg, aiomysql, aiosqlite) so the
CRM's existing connection string can be reused unchanged.

    await init_db()
    async with get_session() as db:
        await db.execute(...)
    await close_db()
"""
from __future__ import annotations

import structlog
from contextlib import asynccontextmanager
from typing import Any, AsyncContextManager, AsyncGenerator, Callable

from sqlalchemy.ext.asyncio import (
    create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker,
)

from config.settings import DatabaseConfig, get_settings
from database.models import Base

logger = structlog.get_logger()

# A callable returning a transactional session context; stores take one of these
SessionScope = Callable[[], AsyncContextManager[AsyncSession]]

_ASYNC_DRIVERS = {
    "postgresql": "postgresql+asyncpg",
    "postgres": "postgresql+asyncpg",
    "mysql": "mysql+aiomysql",
    "mysql+pymysql": "mysql+aiomysql",
    "sqlite": "sqlite+aiosqlite",
}

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def _to_async_url(db_url: str) -> str:
    scheme, sep, rest = db_url.partition("://")
    driver = _ASYNC_DRIVERS.get(scheme)
    if not sep or driver is None:
        return db_url
    return f"{driver}://{rest}"


def _engine_kwargs(db_url: str, db: DatabaseConfig, echo: bool) -> dict[str, Any]:
    if db_url.startswith("sqlite"):
        # The dispatcher task and request handlers share one file
        return {"echo": echo, "connect_args": {"check_same_thread": False}}
    return {
        "echo": echo,
        "pool_size": db.pool_size,
        "max_overflow": db.pool_size * 2,
        "pool_recycle": db.pool_recycle_seconds,
        "pool_pre_ping": True,
    }


def _redacted(db_url: str) -> str:
    return db_url.rsplit("@", 1)[-1]


def get_engine() -> AsyncEngine:
    global _engine
    if _engine is None:
        settings = get_settings()
        db_url = _to_async_url(settings.database.url)
        _engine = create_async_engine(
            db_url, **_engine_kwargs(db_url, settings.database, settings.debug)
        )
        logger.info("database_engine_created", dialect=_engine.dialect.name,
                    target=_redacted(db_url))
    return _engine


def make_session_scope(factory: async_sessionmaker[AsyncSession]) -> SessionScope:
    """Wrap a session factory so each scope commits on success and rolls back on error."""

    @asynccontextmanager
    async def _scope() -> AsyncGenerator[AsyncSession, None]:
        async with factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    return _scope


@asynccontextmanager
async def get_session() -> AsyncGenerator[AsyncSession, None]:
    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(get_engine(), class_=AsyncSession,
                                              expire_on_commit=False)
    async with make_session_scope(_session_factory)() as session:
        yield session


async def init_db() -> None:
    """Create any missing tables (scheduled_jobs, messages, clients, templates)."""
    engine = get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("database_initialized", dialect=engine.dialect.name,
                tables=sorted(Base.metadata.tables))


async def close_db() -> None:
    global _engine, _session_factory
    if _engine is None:
        return
    await _engine.dispose()
    _engine = None
    _session_factory = None
    logger.info("database_closed")
