"""API tests with the database dependencies pointed at a temporary SQLite file."""

import asyncio

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from be import models
from be.api import MAPPING_STATS_QUERY, app
from be.cache import QueryCache
from be.config import settings
from be.db import get_session, get_session_maker

from .test_tables import METRICS_HEADER, metrics_row


@pytest.fixture
def session_factory(tmp_path):
    """File-backed database; NullPool keeps connections off the TestClient's loop."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'api.db'}", poolclass=NullPool)
    maker = async_sessionmaker(bind=engine, expire_on_commit=False, class_=AsyncSession)

    async def create():
        async with engine.begin() as conn:
            await conn.run_sync(models.Base.metadata.create_all)

    asyncio.run(create())
    yield maker
    asyncio.run(engine.dispose())


@pytest.fixture
def cache():
    return QueryCache(max_size=10, default_ttl=60.0)


@pytest.fixture
def client(session_factory, cache, tmp_path, monkeypatch):
    """Test client with fresh cache, database and staging directory."""
    async def override_session():
        async with session_factory() as session:
            yield session

    monkeypatch.setattr(settings.etl, "data_dir", str(tmp_path / "staging"))
    app.dependency_overrides[get_session] = override_session
    app.dependency_overrides[get_session_maker] = lambda: session_factory
    app.state.cache = cache
    yield TestClient(app)
    app.dependency_overrides = {}
    app.state.cache = None


def seed_contractors(session_factory):
    async def seed():
        async with session_factory() as session:
            session.add_all([
                models.ContractorProfile(canonical_name="ACME CORPORATION", display_name="Acme Corporation"),
                models.ContractorProfile(canonical_name="INITECH INC", display_name="Initech Inc"),
                models.ContractorCache(contractor_uei="UEI000000001", contractor_name="Acme Corp."),
                models.ContractorCache(contractor_uei="UEI000000002", contractor_name="Initech, Inc."),
                models.ContractorCache(contractor_uei="UEI000000003", contractor_name="Zyxwvut Holdings"),
            ])
            await session.commit()

    asyncio.run(seed())


class TestInfoEndpoints:

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_root_lists_endpoints(self, client):
        assert "load_table" in client.get("/").json()["endpoints"]

    def test_tables(self, client):
        tables = client.get("/etl/tables").json()
        assert [t["key"] for t in tables] == ["universe", "metrics", "peer", "portfolio", "sub", "network", "search"]
        assert tables[1]["table_name"] == "contractor_metrics_monthly"


class TestLoadEndpoint:

    def test_unknown_table_is_404(self, client):
        assert client.post("/etl/load/nope").status_code == 404

    def test_load_invalidates_cached_results(self, client, cache, staging_file):
        staging_file(
            "staging/full_contractor_metrics_monthly/part_0.csv.gz",
            METRICS_HEADER,
            [metrics_row("U1", "2024-01-01", "1.5"), metrics_row("U2", "2024-01-01", "2.5")],
        )
        cache.set("metrics by month", {"data": [], "metadata": {"table": "contractor_metrics_monthly"}})
        cache.set("peer by month", {"data": [], "metadata": {"table": "peer_comparisons_monthly"}})

        response = client.post("/etl/load/metrics", json={"batch_size": 1})

        body = response.json()
        assert response.status_code == 200
        assert body["status"] == "success"
        assert body["total_processed"] == 2
        assert body["total_inserted"] == 2
        assert cache.get("metrics by month") is None
        assert cache.get("peer by month") is not None

    def test_missing_staging_files_is_422(self, client):
        response = client.post("/etl/load/peer")

        assert response.status_code == 422
        assert response.json()["error"] == "staging_file_error"


class TestFuzzyMatchingEndpoints:

    def test_stats_are_cached_until_a_run_applies_matches(self, client, cache, session_factory):
        seed_contractors(session_factory)

        stats = client.get("/fuzzy-matching/stats").json()
        assert stats == {"total_ueis": 3, "mapped_ueis": 0, "unmapped_ueis": 3, "mapping_percentage": 0}
        assert cache.has(MAPPING_STATS_QUERY)

        run = client.post("/fuzzy-matching/run", json={}).json()
        assert run["found_matches"] == 2
        assert run["applied_matches"] == 2
        assert run["stats"]["mapped_ueis"] == 2
        assert not cache.has(MAPPING_STATS_QUERY)

        assert client.get("/fuzzy-matching/stats").json()["mapped_ueis"] == 2

    def test_sample(self, client, session_factory):
        seed_contractors(session_factory)

        sample = client.get("/fuzzy-matching/sample", params={"count": 1}).json()

        assert len(sample) == 1
        assert sample[0]["confidence"] == 100

    def test_sample_count_is_bounded(self, client):
        assert client.get("/fuzzy-matching/sample", params={"count": 0}).status_code == 400


class TestCacheEndpoints:

    def test_invalidate_by_pattern(self, client, cache):
        cache.set("select * from contractor_universe", 1)
        cache.set("select * from peer_comparisons_monthly", 2)

        response = client.post("/cache/invalidate", json={"pattern": "universe"})

        assert response.json() == {"removed": 1}
        assert client.get("/cache/stats").json()["size"] == 1

    def test_invalidate_by_table(self, client, cache):
        cache.set("stats", {"metadata": {"table": "contractor_uei_mappings"}})

        assert client.post("/cache/invalidate", json={"table": "contractor_uei_mappings"}).json() == {"removed": 1}

    def test_invalid_pattern_is_400(self, client):
        assert client.post("/cache/invalidate", json={"pattern": "("}).status_code == 400
