"""Pytest configuration and shared fixtures."""

import csv
import gzip
import io
import os
from pathlib import Path

# Settings are read at import time; keep tests off Postgres and on plain logs
os.environ.setdefault("DB_URL", "sqlite+aiosqlite://")
os.environ.setdefault("LOG_FORMAT", "text")
os.environ.setdefault("ETL_COUNT_ROWS", "false")

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from be.models import Base


def write_staging_file(path: Path, header: list[str], rows: list[list[str]]) -> Path:
    """Write ``rows`` as a gzip CSV export the way Snowflake unloads them."""
    path.parent.mkdir(parents=True, exist_ok=True)
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(header)
    writer.writerows(rows)
    with gzip.open(path, "wt", encoding="utf-8") as fh:
        fh.write(buffer.getvalue())
    return path


@pytest.fixture
def staging_file(tmp_path):
    """Factory writing a gzip CSV under the temporary staging directory."""
    def _write(name: str, header: list[str], rows: list[list[str]]) -> Path:
        return write_staging_file(tmp_path / name, header, rows)
    return _write


@pytest_asyncio.fixture
async def engine():
    """In-memory SQLite engine with the full schema."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_maker(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=engine, expire_on_commit=False, class_=AsyncSession)


@pytest_asyncio.fixture
async def session(session_maker):
    async with session_maker() as session:
        yield session
