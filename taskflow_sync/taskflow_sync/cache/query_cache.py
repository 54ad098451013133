"""In-process read-through cache for query results.

Entries are keyed by :class:`CacheKey` and expire after a TTL.  The change
feed router never writes values into the cache; it only invalidates keys,
and the next ``read()`` re-fetches through the caller's ``fetch_fn``.

Design notes:
    * Invalidation is synchronous and lock-protected so that it can be
      applied with no ``await`` between the caller's checks and the removal.
    * Concurrent ``read()`` calls for the same key share one fetch.
    * A fetch that is in flight when its key is invalidated still answers
      its waiters but is not stored, so a pre-invalidation read can never
      be cached as fresh.
    * Listeners are told about every invalidated key so that live consumers
      (streams, views) can mark themselves stale.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from taskflow_sync.cache.keys import CacheKey

logger = logging.getLogger(__name__)

FetchFn = Callable[[], Awaitable[Any]]
InvalidationListener = Callable[[CacheKey], None]

# Result handed to waiters when the fetching task is cancelled.
_ABANDONED = object()


@dataclass(slots=True)
class _CacheEntry:
    """A cached value with an expiry monotonic timestamp."""

    value: Any
    expires_at: float
    created_at: float = field(default_factory=time.monotonic)


@dataclass(slots=True)
class _InflightFetch:
    future: asyncio.Future[Any]
    invalidated: bool = False


class QueryCache:
    """Keyed cache with invalidate-by-key and read-through fetch semantics.

    Parameters
    ----------
    ttl_seconds:
        Lifetime of a cached value.
    max_entries:
        Maximum number of entries to store.  When exceeded, expired entries
        are dropped first, then the oldest 10%.
    enabled:
        If ``False``, ``read()`` always fetches and nothing is stored.
    """

    def __init__(
        self,
        *,
        ttl_seconds: float = 300.0,
        max_entries: int = 10_000,
        enabled: bool = True,
    ) -> None:
        self._store: dict[CacheKey, _CacheEntry] = {}
        self._inflight: dict[CacheKey, _InflightFetch] = {}
        self._listeners: list[InvalidationListener] = []
        self._lock = threading.Lock()
        self._ttl = ttl_seconds
        self._max_entries = max_entries
        self._enabled = enabled

        self._hits = 0
        self._misses = 0
        self._invalidations = 0

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------

    def add_listener(self, listener: InvalidationListener) -> None:
        """Register a callback invoked with each invalidated key."""
        self._listeners.append(listener)

    def remove_listener(self, listener: InvalidationListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    # ------------------------------------------------------------------
    # Invalidation
    # ------------------------------------------------------------------

    def invalidate(self, key: CacheKey) -> bool:
        """Drop *key* and mark its consumers stale.  Returns ``True`` if a value was cached."""
        with self._lock:
            removed = self._store.pop(key, None)
            inflight = self._inflight.get(key)
            if inflight is not None:
                inflight.invalidated = True
            self._invalidations += 1
        self._notify(key)
        logger.debug("Cache invalidate: key=%s cached=%s", key, removed is not None)
        return removed is not None

    def invalidate_by_prefix(self, prefix: CacheKey | str) -> int:
        """Drop every key equal to or under *prefix*.  Returns count removed."""
        if isinstance(prefix, str):
            prefix = CacheKey.parse(prefix)
        with self._lock:
            keys = [k for k in self._store if k.matches_prefix(prefix)]
            for k in keys:
                del self._store[k]
            for k, inflight in self._inflight.items():
                if k.matches_prefix(prefix):
                    inflight.invalidated = True
            self._invalidations += 1
        for k in keys:
            self._notify(k)
        logger.debug("Cache invalidate prefix=%s removed=%d", prefix, len(keys))
        return len(keys)

    def invalidate_all(self) -> int:
        """Flush the entire cache.  Returns count removed."""
        with self._lock:
            keys = list(self._store)
            self._store.clear()
            for inflight in self._inflight.values():
                inflight.invalidated = True
            self._hits = 0
            self._misses = 0
        for k in keys:
            self._notify(k)
        logger.info("Full cache invalidation: removed %d entries", len(keys))
        return len(keys)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, key: CacheKey) -> Any | None:
        """Return the cached value for *key*, or ``None`` on miss or expiry."""
        if not self._enabled:
            return None
        with self._lock:
            entry = self._store.get(key)
            if entry is None:
                self._misses += 1
                return None
            if time.monotonic() > entry.expires_at:
                del self._store[key]
                self._misses += 1
                return None
            self._hits += 1
            return entry.value

    def contains(self, key: CacheKey) -> bool:
        with self._lock:
            entry = self._store.get(key)
            return entry is not None and time.monotonic() <= entry.expires_at

    async def read(self, key: CacheKey, fetch_fn: FetchFn) -> Any:
        """Return the cached value for *key*, fetching it on a miss.

        Concurrent misses for the same key await a single ``fetch_fn`` call.
        Fetch errors propagate to every waiter and nothing is cached.  If the
        fetching task is cancelled, a waiter retries the read itself.
        """
        if not self._enabled:
            return await fetch_fn()

        with self._lock:
            entry = self._store.get(key)
            if entry is not None and time.monotonic() <= entry.expires_at:
                self._hits += 1
                return entry.value
            inflight = self._inflight.get(key)
            owner = inflight is None
            if inflight is None:
                self._misses += 1
                inflight = _InflightFetch(future=asyncio.get_running_loop().create_future())
                self._inflight[key] = inflight

        if not owner:
            value = await asyncio.shield(inflight.future)
            if value is _ABANDONED:
                return await self.read(key, fetch_fn)
            return value

        try:
            value = await fetch_fn()
        except BaseException as exc:
            with self._lock:
                self._inflight.pop(key, None)
            if isinstance(exc, Exception):
                inflight.future.set_exception(exc)
                # Retrieve it so an un-awaited future is not reported as lost.
                inflight.future.exception()
            else:
                inflight.future.set_result(_ABANDONED)
            raise

        with self._lock:
            self._inflight.pop(key, None)
            if inflight.invalidated:
                logger.debug("Discarding fetch for %s: invalidated while in flight", key)
            else:
                self._put_locked(key, value)
        inflight.future.set_result(value)
        return value

    def put(self, key: CacheKey, value: Any) -> None:
        """Store *value* under *key* directly."""
        if not self._enabled:
            return
        with self._lock:
            self._put_locked(key, value)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def stats(self) -> dict[str, Any]:
        """Return cache hit/miss/invalidation statistics."""
        with self._lock:
            total = self._hits + self._misses
            return {
                "entries": len(self._store),
                "hits": self._hits,
                "misses": self._misses,
                "invalidations": self._invalidations,
                "hit_rate": round(self._hits / total, 4) if total > 0 else 0.0,
                "max_entries": self._max_entries,
                "enabled": self._enabled,
            }

    @property
    def size(self) -> int:
        """Number of entries currently in the cache (including expired)."""
        return len(self._store)

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _put_locked(self, key: CacheKey, value: Any) -> None:
        """Must be called while holding ``self._lock``."""
        if len(self._store) >= self._max_entries and key not in self._store:
            self._evict_oldest()
        now = time.monotonic()
        self._store[key] = _CacheEntry(value=value, expires_at=now + self._ttl, created_at=now)

    def _notify(self, key: CacheKey) -> None:
        for listener in list(self._listeners):
            try:
                listener(key)
            except Exception:
                logger.exception("Cache invalidation listener failed for key=%s", key)

    def _evict_oldest(self) -> None:
        """Remove expired entries, then the 10% oldest if still full.

        Must be called while holding ``self._lock``.
        """
        now = time.monotonic()
        expired_keys = [k for k, v in self._store.items() if now > v.expires_at]
        for k in expired_keys:
            del self._store[k]

        if len(self._store) < self._max_entries:
            return

        evict_count = max(1, self._max_entries // 10)
        oldest = sorted(self._store, key=lambda k: self._store[k].created_at)
        for k in oldest[:evict_count]:
            del self._store[k]

        logger.debug(
            "Evicted %d expired + %d oldest entries",
            len(expired_keys),
            min(evict_count, len(oldest)),
        )
