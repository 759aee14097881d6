"""Unit tests for QueryCache.

A fake clock drives expiry so no test has to sleep past a TTL.
"""

import asyncio

import pytest

from be.cache import CacheEntry, QueryCache, make_cache_key


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(clock):
    return QueryCache(max_size=3, default_ttl=10.0, sweep_interval=0.01, clock=clock)


class TestCacheKey:
    """Key derivation from query text and parameters."""

    def test_parameter_order_does_not_matter(self):
        assert make_cache_key("select", {"a": 1, "b": 2}) == make_cache_key("select", {"b": 2, "a": 1})

    def test_parameter_values_matter(self):
        assert make_cache_key("select", {"a": 1}) != make_cache_key("select", {"a": 2})

    def test_query_text_matters(self):
        assert make_cache_key("select a") != make_cache_key("select b")

    def test_key_is_sha256_hex(self):
        key = make_cache_key("select", None)
        assert len(key) == 64
        int(key, 16)


class TestGetSet:
    """Basic hits, misses and expiry."""

    def test_hit_returns_stored_data(self, cache):
        cache.set("q", {"rows": [1, 2]}, params={"id": 1})
        assert cache.get("q", {"id": 1}) == {"rows": [1, 2]}
        assert cache.hits == 1

    def test_different_param_value_is_a_miss(self, cache):
        cache.set("q", "data", params={"id": 1})
        assert cache.get("q", {"id": 2}) is None
        assert cache.misses == 1

    def test_entry_visible_until_ttl_elapses(self, cache, clock):
        cache.set("q", "data", ttl=5.0)
        clock.advance(5.0)
        assert cache.get("q") == "data"

        clock.advance(0.1)
        assert cache.get("q") is None
        # Expired entries are removed on access
        assert len(cache) == 0

    def test_default_ttl_applies(self, cache, clock):
        cache.set("q", "data")
        clock.advance(9.9)
        assert cache.has("q")
        clock.advance(0.2)
        assert not cache.has("q")

    def test_has_does_not_touch_counters(self, cache, clock):
        cache.set("q", None)

        assert cache.has("q")
        assert not cache.has("missing")
        assert (cache.hits, cache.misses) == (0, 0)

        clock.advance(10.1)
        assert not cache.has("q")

    def test_set_returns_key(self, cache):
        key = cache.set("q", "data", params={"x": 1})
        assert key == make_cache_key("q", {"x": 1})
        assert key in cache

    def test_entry_expiry(self):
        entry = CacheEntry(key="k", query="q", data=None, timestamp=100.0, ttl=1.0)
        assert not entry.is_expired(101.0)
        assert entry.is_expired(101.5)


class TestEviction:
    """Capacity limit and oldest-first eviction."""

    def test_oldest_entry_evicted_when_full(self, cache, clock):
        for i in range(3):
            cache.set(f"q{i}", i)
            clock.advance(1.0)

        cache.set("q3", 3)

        assert len(cache) == 3
        assert cache.get("q0") is None
        assert [cache.get(f"q{i}") for i in (1, 2, 3)] == [1, 2, 3]

    def test_resetting_existing_key_does_not_evict(self, cache, clock):
        for i in range(3):
            cache.set(f"q{i}", i)
            clock.advance(1.0)

        cache.set("q0", "updated")

        assert len(cache) == 3
        assert cache.get("q0") == "updated"
        assert cache.get("q1") == 1

    def test_max_size_must_be_positive(self):
        with pytest.raises(ValueError):
            QueryCache(max_size=0)


class TestInvalidation:
    """Pattern, table and full invalidation."""

    def test_invalidate_everything(self, cache):
        cache.set("a", 1)
        cache.set("b", 2)
        assert cache.invalidate() == 2
        assert len(cache) == 0

    def test_pattern_matches_query_text(self, cache):
        cache.set("SELECT * FROM contractor_metrics_monthly", 1)
        cache.set("SELECT * FROM peer_comparisons_monthly", 2)

        removed = cache.invalidate("metrics")

        assert removed == 1
        assert cache.get("SELECT * FROM contractor_metrics_monthly") is None
        assert cache.get("SELECT * FROM peer_comparisons_monthly") == 2

    def test_pattern_matches_key(self, cache):
        key = cache.set("q", 1)
        assert cache.invalidate(f"^{key[:16]}") == 1

    def test_pattern_is_case_insensitive(self, cache):
        cache.set("select from Universe", 1)
        assert cache.invalidate("UNIVERSE") == 1

    def test_invalidate_by_table(self, cache):
        cache.set("stats", {"data": 1, "metadata": {"table": "contractor_uei_mappings"}})
        cache.set("metrics", {"data": 2, "metadata": {"table": "contractor_metrics_monthly"}})
        cache.set("plain", "no metadata")

        assert cache.invalidate_by_table("contractor_uei_mappings") == 1
        assert cache.get("stats") is None
        assert cache.get("metrics") is not None
        assert cache.get("plain") == "no metadata"


class TestSweep:
    """Expiry without access."""

    def test_sweep_removes_only_expired(self, cache, clock):
        cache.set("short", 1, ttl=1.0)
        cache.set("long", 2, ttl=100.0)
        clock.advance(2.0)

        assert cache.sweep() == 1
        assert len(cache) == 1
        assert cache.get("long") == 2

    @pytest.mark.asyncio
    async def test_background_sweep_runs_until_stopped(self, cache, clock):
        cache.set("q", 1, ttl=1.0)
        clock.advance(2.0)

        cache.start()
        assert cache.running
        await asyncio.sleep(0.05)
        assert len(cache) == 0

        await cache.stop()
        assert not cache.running

    @pytest.mark.asyncio
    async def test_start_is_idempotent_and_stop_without_start_is_noop(self, cache):
        await cache.stop()
        cache.start()
        task = cache._sweep_task
        cache.start()
        assert cache._sweep_task is task
        await cache.stop()


def test_stats_reports_hit_rate(cache):
    cache.set("q", 1)
    cache.get("q")
    cache.get("missing")

    stats = cache.stats()

    assert stats["size"] == 1
    assert stats["max_size"] == 3
    assert stats["hits"] == 1
    assert stats["misses"] == 1
    assert stats["hit_rate"] == 0.5
    assert stats["entries"][0]["ttl"] == 10.0
