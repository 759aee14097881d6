"""SQLAlchemy 2.x async database setup.

This module defines the async engine and session factory but does not
hard-code any connection credentials.
"""

from __future__ import annotations

from typing import AsyncIterator

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from .config import settings


def _engine_options(url: str) -> dict:
    """Pool sizing applies to server databases; SQLite uses a single-connection pool."""
    if url.startswith("sqlite"):
        return {}
    return {"pool_size": settings.db.pool_size, "max_overflow": settings.db.max_overflow}


engine: AsyncEngine = create_async_engine(
    settings.db.url,
    echo=settings.db.echo,
    future=True,
    **_engine_options(settings.db.url),
)

AsyncSessionMaker = async_sessionmaker(bind=engine, expire_on_commit=False, class_=AsyncSession)


async def get_session() -> AsyncIterator[AsyncSession]:
    """FastAPI-friendly async session dependency.

    Usage:
        async def endpoint(session: AsyncSession = Depends(get_session)):
            ...
    """

    async with AsyncSessionMaker() as session:
        yield session


def get_session_maker() -> async_sessionmaker[AsyncSession]:
    """Dependency for code that opens one session per unit of work (batch loads)."""
    return AsyncSessionMaker


def upsert_insert(session: AsyncSession, table):
    """Return a dialect-specific ``INSERT`` that supports ``ON CONFLICT``.

    Postgres in production, SQLite in tests. Both expose
    ``on_conflict_do_update`` / ``on_conflict_do_nothing`` and ``excluded``.
    """
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert(table)
    if dialect == "sqlite":
        return sqlite.insert(table)
    raise NotImplementedError(f"Upserts are not supported for dialect {dialect!r}")
