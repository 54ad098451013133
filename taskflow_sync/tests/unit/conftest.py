"""Shared fixtures for taskflow_sync unit tests.

Provides an in-process change feed, a cache that records every
invalidation it receives, and a router wired to both with near-zero
reconnect delays.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncGenerator, Callable

import pytest
import pytest_asyncio

from taskflow_sync.cache.keys import CacheKey
from taskflow_sync.cache.query_cache import QueryCache
from taskflow_sync.realtime.backoff import BackoffConfig
from taskflow_sync.realtime.feed import InMemoryChangeFeed
from taskflow_sync.realtime.router import ChangeFeedRouter

FAST_BACKOFF = BackoffConfig(base_delay=0.001, max_delay=0.005, jitter=False)


class RecordingCache(QueryCache):
    """QueryCache that keeps the order of every invalidation call."""

    def __init__(self) -> None:
        super().__init__()
        self.exact: list[str] = []
        self.prefixes: list[str] = []

    def invalidate(self, key: CacheKey) -> bool:
        self.exact.append(str(key))
        return super().invalidate(key)

    def invalidate_by_prefix(self, prefix: CacheKey | str) -> int:
        self.prefixes.append(str(prefix))
        return super().invalidate_by_prefix(prefix)

    def reset_log(self) -> None:
        self.exact.clear()
        self.prefixes.clear()


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll *predicate* until it holds or *timeout* elapses."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("Condition not met before timeout")
        await asyncio.sleep(0.002)


@pytest.fixture
def eventually() -> Callable[..., object]:
    return wait_until


@pytest.fixture
def cache() -> RecordingCache:
    return RecordingCache()


@pytest_asyncio.fixture
async def feed() -> AsyncGenerator[InMemoryChangeFeed, None]:
    feed = InMemoryChangeFeed()
    yield feed
    await feed.aclose()


@pytest_asyncio.fixture
async def router(feed: InMemoryChangeFeed, cache: RecordingCache) -> AsyncGenerator[ChangeFeedRouter, None]:
    router = ChangeFeedRouter(feed, cache, backoff=FAST_BACKOFF, connect_timeout=1.0)
    yield router
    await router.aclose()
