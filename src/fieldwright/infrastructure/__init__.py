"""Infrastructure shared by fieldwright stages."""

from .cache import BoundedCache, CacheStats

__all__ = [
    "BoundedCache",
    "CacheStats",
]
