"""Query-result cache consumed by the change-feed router."""

from taskflow_sync.cache.keys import CacheKey, InvalidationTarget, UnresolvedPlaceholderError
from taskflow_sync.cache.query_cache import QueryCache

__all__ = [
    "CacheKey",
    "InvalidationTarget",
    "QueryCache",
    "UnresolvedPlaceholderError",
]
