"""Engine options."""

from be.config import settings
from be.db import _engine_options


def test_server_urls_get_pool_sizing():
    options = _engine_options("postgresql+asyncpg://user:pw@db:5432/contractors")

    assert options == {"pool_size": settings.db.pool_size, "max_overflow": settings.db.max_overflow}


def test_sqlite_urls_keep_default_pool():
    assert _engine_options("sqlite+aiosqlite://") == {}
