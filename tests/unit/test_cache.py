"""
Unit tests for the expiring LRU cache.

Tests cover:
- Expiry against an injected timer
- LRU eviction at capacity
- get_or_set single construction
- Loads that overlap an invalidation are not stored
- Loaders never block other callers
- Predicate eviction and purge
"""

import threading

import pytest

from dbaas.duckgate_server.cache import ExpiringCache


class FakeTimer:
    """Manually advanced monotonic clock."""

    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class TestExpiringCache:
    """Tests for ExpiringCache."""

    @pytest.fixture
    def timer(self):
        return FakeTimer()

    @pytest.fixture
    def cache(self, timer):
        return ExpiringCache(max_size=3, ttl_seconds=10, timer=timer)

    def test_get_set(self, cache):
        """Stored values are readable and counted."""
        cache.set("a", 1)
        assert cache.get("a") == 1
        assert "a" in cache
        assert len(cache) == 1

    def test_missing_returns_default(self, cache):
        """Misses return the supplied default."""
        assert cache.get("nope") is None
        assert cache.get("nope", 5) == 5
        assert "nope" not in cache

    def test_falsy_values_are_cached(self, cache):
        """False is a value, not a miss."""
        cache.set("denied", False)
        assert cache.get("denied", "missing") is False
        assert "denied" in cache

    def test_entries_expire(self, cache, timer):
        """Entries vanish once the TTL has elapsed."""
        cache.set("a", 1)
        timer.advance(9.9)
        assert cache.get("a") == 1
        timer.advance(0.1)
        assert cache.get("a") is None
        assert len(cache) == 0

    def test_set_refreshes_expiry(self, cache, timer):
        """Re-setting a key restarts its TTL."""
        cache.set("a", 1)
        timer.advance(8)
        cache.set("a", 2)
        timer.advance(8)
        assert cache.get("a") == 2

    def test_lru_eviction(self, cache):
        """The least recently used entry is evicted at capacity."""
        cache.set("a", 1)
        cache.set("b", 2)
        cache.set("c", 3)
        cache.get("a")
        cache.set("d", 4)
        assert "b" not in cache
        assert "a" in cache
        assert len(cache) == 3

    def test_expired_swept_before_lru(self, cache, timer):
        """A full cache drops expired entries before live ones."""
        cache.set("old", 1)
        timer.advance(5)
        cache.set("b", 2)
        cache.set("c", 3)
        timer.advance(6)
        cache.set("d", 4)
        assert "old" not in cache
        assert cache.get("b") == 2
        assert cache.get("c") == 3

    def test_pop(self, cache):
        """pop returns the value once, then the default."""
        cache.set("a", 1)
        assert cache.pop("a") == 1
        assert cache.pop("a", "gone") == "gone"

    def test_evict_where(self, cache):
        """Only matching keys are evicted and their values returned."""
        cache.set("t|insert|a", 1)
        cache.set("t|update|a|where=id", 2)
        cache.set("t2|insert|a", 3)
        evicted = cache.evict_where(lambda key: key.startswith("t|"))
        assert sorted(evicted) == [1, 2]
        assert "t2|insert|a" in cache
        assert len(cache) == 1

    def test_purge(self, cache):
        """purge empties the cache."""
        cache.set("a", 1)
        cache.set("b", 2)
        cache.purge()
        assert len(cache) == 0

    def test_get_or_set(self, cache, timer):
        """The factory runs only on a miss or after expiry."""
        calls = []

        def factory():
            calls.append(1)
            return object()

        first = cache.get_or_set("k", factory)
        assert cache.get_or_set("k", factory) is first
        assert len(calls) == 1

        timer.advance(10)
        assert cache.get_or_set("k", factory) is not first
        assert len(calls) == 2

    def test_get_or_set_factory_error_stores_nothing(self, cache):
        """A failing factory leaves no entry behind."""
        def factory():
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            cache.get_or_set("k", factory)
        assert "k" not in cache

    def test_get_or_set_concurrent_single_instance(self):
        """Concurrent callers for one key all observe the same value."""
        cache = ExpiringCache(max_size=10, ttl_seconds=60)
        results = []
        barrier = threading.Barrier(8)

        def worker():
            barrier.wait()
            results.append(cache.get_or_set("k", object))

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len({id(r) for r in results}) == 1

    def test_invalid_size(self):
        """A non-positive capacity is rejected."""
        with pytest.raises(ValueError):
            ExpiringCache(max_size=0, ttl_seconds=1)


class TestGenerations:
    """Tests for invalidation racing an in-flight load."""

    @pytest.fixture
    def cache(self):
        return ExpiringCache(max_size=10, ttl_seconds=60)

    def test_load_overlapping_purge_not_stored(self, cache):
        """A value loaded across a purge is returned but not cached."""

        def factory():
            cache.purge()
            return "stale"

        assert cache.get_or_set("k", factory) == "stale"
        assert "k" not in cache
        assert cache.get_or_set("k", lambda: "fresh") == "fresh"
        assert cache.get("k") == "fresh"

    @pytest.mark.parametrize("removal", ["pop", "evict_where"])
    def test_load_overlapping_removal_not_stored(self, cache, removal):
        """Removing any key, even an absent one, voids in-flight loads."""

        def factory():
            if removal == "pop":
                cache.pop("k")
            else:
                cache.evict_where(lambda key: key == "k")
            return "stale"

        cache.get_or_set("k", factory)
        assert "k" not in cache

    def test_set_with_stale_generation(self, cache):
        """set() with an outdated generation stores nothing."""
        generation = cache.generation
        cache.pop("other")
        assert cache.set("k", 1, generation=generation) is False
        assert "k" not in cache
        assert cache.set("k", 1, generation=cache.generation) is True
        assert cache.get("k") == 1

    def test_first_stored_load_wins(self, cache):
        """A loader that finishes second returns the instance stored first."""
        inner = object()

        def outer_factory():
            assert cache.get_or_set("k", lambda: inner) is inner
            return object()

        assert cache.get_or_set("k", outer_factory) is inner

    def test_loader_does_not_block_other_keys(self, cache):
        """Hits on other keys proceed while a slow load is running."""
        cache.set("hit", True)
        seen = []

        def factory():
            reader = threading.Thread(target=lambda: seen.append(cache.get("hit")))
            reader.start()
            reader.join(2)
            assert not reader.is_alive()
            return "loaded"

        assert cache.get_or_set("slow", factory) == "loaded"
        assert seen == [True]
