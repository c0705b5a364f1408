"""Fixed-capacity LRU memoization for field-level results.

Wrapping field sources compute each field once and keep the result here.
Memory stays bounded no matter how many fields a capture holds: when the cache
is full the least recently used entry is dropped, and a later request simply
recomputes it.
"""

import copy
import logging
import threading
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Dict, Generic, Hashable, Optional, TypeVar

from ...exceptions import ConfigurationError

logger = logging.getLogger(__name__)

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


@dataclass
class CacheStats:
    """Statistics for a bounded cache.

    Attributes:
        hits: Number of lookups that found an entry
        misses: Number of lookups that found nothing
        evictions: Number of entries dropped for capacity
        entries: Current number of entries
        max_size: Capacity
    """
    hits: int = 0
    misses: int = 0
    evictions: int = 0
    entries: int = 0
    max_size: int = 0

    @property
    def hit_ratio(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total > 0 else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "evictions": self.evictions,
            "entries": self.entries,
            "max_size": self.max_size,
            "hit_ratio": round(self.hit_ratio, 4),
        }


class BoundedCache(Generic[K, V]):
    """Thread-safe LRU cache with a fixed number of entries.

    The most recently used entry sits at the end of the internal
    OrderedDict. All operations run under a single lock; values are
    computed by callers outside of it.

    The cache owns its lock and is therefore not copyable.

    Example:
        >>> cache = BoundedCache(max_size=2)
        >>> cache.put(1, "a")
        >>> cache.put(2, "b")
        >>> cache.put(3, "c")
        >>> cache.contains(1)
        False
    """

    def __init__(self, max_size: int, name: str = "cache"):
        """Initialize the cache.

        Args:
            max_size: Maximum number of entries (>= 1)
            name: Label used in log messages and reports
        """
        if max_size < 1:
            raise ConfigurationError(
                "Cache capacity must be at least 1",
                config_key="max_size",
                config_value=max_size,
            )
        self._max_size = max_size
        self._name = name
        self._entries: "OrderedDict[K, V]" = OrderedDict()
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    @property
    def max_size(self) -> int:
        return self._max_size

    @property
    def name(self) -> str:
        return self._name

    def get(self, key: K) -> Optional[V]:
        """Get a copy of a cached value and mark it most recently used.

        Returns:
            Copy of the value, or None if not cached
        """
        value = self.get_ref(key)
        if value is None:
            return None
        return copy.copy(value)

    def get_ref(self, key: K) -> Optional[V]:
        """Get the stored value itself and mark it most recently used.

        Avoids copying large buffers. Stored buffers are immutable by
        convention (numpy arrays are inserted read-only), so the reference
        stays valid even after the entry is evicted.
        """
        with self._lock:
            if key not in self._entries:
                self._misses += 1
                return None
            self._entries.move_to_end(key)
            self._hits += 1
            return self._entries[key]

    def put(self, key: K, value: V) -> None:
        """Insert or update a value, evicting the least recently used entry if full."""
        with self._lock:
            if key in self._entries:
                self._entries[key] = value
                self._entries.move_to_end(key)
                return

            if len(self._entries) >= self._max_size:
                evicted_key, _ = self._entries.popitem(last=False)
                self._evictions += 1
                logger.debug(f"{self._name}: evicted {evicted_key!r}")

            self._entries[key] = value

    def contains(self, key: K) -> bool:
        """Check for a key without touching recency."""
        with self._lock:
            return key in self._entries

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return self.contains(key)  # type: ignore[arg-type]

    def stats(self) -> CacheStats:
        """Snapshot of hit/miss/eviction counters."""
        with self._lock:
            return CacheStats(
                hits=self._hits,
                misses=self._misses,
                evictions=self._evictions,
                entries=len(self._entries),
                max_size=self._max_size,
            )

    def __copy__(self):
        raise TypeError(f"{type(self).__name__} is not copyable")

    def __deepcopy__(self, memo):
        raise TypeError(f"{type(self).__name__} is not copyable")

    def __reduce__(self):
        raise TypeError(f"{type(self).__name__} cannot be pickled")

    def __repr__(self) -> str:
        return f"BoundedCache(name={self._name!r}, entries={len(self)}, max_size={self._max_size})"
