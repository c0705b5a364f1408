"""Caching infrastructure for fieldwright.

Components:
    - BoundedCache: fixed-capacity, thread-safe LRU memoization
    - CacheStats: hit/miss/eviction counters

Example:
    >>> from fieldwright.infrastructure.cache import BoundedCache
    >>>
    >>> cache = BoundedCache(max_size=64, name="stacked_fields")
    >>> cache.put(field_id, samples)
    >>> cached = cache.get_ref(field_id)
"""

from .bounded_cache import BoundedCache, CacheStats

__all__ = [
    "BoundedCache",
    "CacheStats",
]
