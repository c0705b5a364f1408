"""Tests for the bounded LRU cache."""
import copy
import pickle
import threading

import numpy as np
import pytest

from fieldwright.exceptions import ConfigurationError
from fieldwright.infrastructure.cache import BoundedCache, CacheStats


# =============================================================================
# BoundedCache Tests
# =============================================================================

class TestBoundedCache:
    """Tests for insertion, lookup and eviction."""

    def test_put_and_get(self):
        """Test that a stored value can be read back."""
        cache = BoundedCache(max_size=4)
        cache.put(1, "one")

        assert cache.get(1) == "one"
        assert cache.contains(1)
        assert 1 in cache
        assert len(cache) == 1

    def test_missing_key(self):
        """Test that a missing key returns None."""
        cache = BoundedCache(max_size=4)

        assert cache.get(42) is None
        assert cache.get_ref(42) is None
        assert not cache.contains(42)

    def test_eviction_drops_first_key(self):
        """Test that N+1 inserts into a cache of N evict the first key."""
        capacity = 3
        cache = BoundedCache(max_size=capacity)
        for key in range(capacity + 1):
            cache.put(key, key * 10)

        assert not cache.contains(0)
        assert cache.contains(capacity)
        assert len(cache) == capacity

    def test_get_refreshes_recency(self):
        """Test that reading an entry protects it from the next eviction."""
        cache = BoundedCache(max_size=2)
        cache.put("a", 1)
        cache.put("b", 2)
        cache.get("a")
        cache.put("c", 3)

        assert cache.contains("a")
        assert not cache.contains("b")

    def test_contains_does_not_refresh_recency(self):
        """Test that contains() leaves the LRU order alone."""
        cache = BoundedCache(max_size=2)
        cache.put("a", 1)
        cache.put("b", 2)
        cache.contains("a")
        cache.put("c", 3)

        assert not cache.contains("a")

    def test_put_existing_key_updates(self):
        """Test that re-inserting a key replaces its value without evicting."""
        cache = BoundedCache(max_size=2)
        cache.put("a", 1)
        cache.put("b", 2)
        cache.put("a", 10)

        assert cache.get("a") == 10
        assert len(cache) == 2
        assert cache.stats().evictions == 0

    def test_get_returns_copy(self):
        """Test that get() hands out a copy while get_ref() hands out the value."""
        cache = BoundedCache(max_size=2)
        value = np.arange(4)
        cache.put("x", value)

        copied = cache.get("x")
        copied[0] = 99

        assert cache.get_ref("x") is value
        assert value[0] == 0

    def test_clear(self):
        """Test that clear() empties the cache."""
        cache = BoundedCache(max_size=2)
        cache.put(1, 1)
        cache.clear()

        assert len(cache) == 0

    def test_invalid_capacity(self):
        """Test that a capacity below 1 is rejected."""
        with pytest.raises(ConfigurationError):
            BoundedCache(max_size=0)

    def test_not_copyable(self):
        """Test that a cache cannot be copied or pickled."""
        cache = BoundedCache(max_size=2)

        with pytest.raises(TypeError):
            copy.copy(cache)
        with pytest.raises(TypeError):
            copy.deepcopy(cache)
        with pytest.raises(TypeError):
            pickle.dumps(cache)

    def test_concurrent_puts(self):
        """Test that concurrent writers never exceed capacity."""
        cache = BoundedCache(max_size=8)

        def writer(offset):
            for key in range(100):
                cache.put(offset * 1000 + key, key)

        threads = [threading.Thread(target=writer, args=(i,)) for i in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(cache) == 8
        assert cache.stats().evictions == 400 - 8


# =============================================================================
# CacheStats Tests
# =============================================================================

class TestCacheStats:
    """Tests for hit/miss accounting."""

    def test_counters(self):
        """Test hits, misses and entries after a few lookups."""
        cache = BoundedCache(max_size=2, name="fields")
        cache.put(1, "a")
        cache.get(1)
        cache.get(2)

        stats = cache.stats()
        assert stats.hits == 1
        assert stats.misses == 1
        assert stats.entries == 1
        assert stats.max_size == 2
        assert stats.hit_ratio == 0.5

    def test_empty_hit_ratio(self):
        """Test hit ratio with no lookups."""
        assert CacheStats().hit_ratio == 0.0

    def test_to_dict(self):
        """Test dictionary conversion."""
        data = CacheStats(hits=3, misses=1, evictions=0, entries=2, max_size=4).to_dict()

        assert data["hit_ratio"] == 0.75
        assert data["max_size"] == 4
