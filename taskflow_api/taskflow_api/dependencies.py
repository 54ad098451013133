"""FastAPI dependency injection for settings, database sessions and engines."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from typing import Annotated

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker
from taskflow_sync.cache.query_cache import QueryCache
from taskflow_sync.config import ChangeFeedBackend, SyncSettings, load_sync_settings
from taskflow_sync.realtime.backoff import BackoffConfig
from taskflow_sync.realtime.feed import ChangeFeed, InMemoryChangeFeed
from taskflow_sync.realtime.router import ChangeFeedRouter
from taskflow_sync.state.database import get_engine

from taskflow_api.config import APISettings, load_api_settings
from taskflow_api.services.billing_reconciler import BillingReconciler

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

_settings_cache: APISettings | None = None
_sync_settings_cache: SyncSettings | None = None


def get_settings() -> APISettings:
    """Return the cached :class:`APISettings` singleton."""
    global _settings_cache  # noqa: PLW0603
    if _settings_cache is None:
        _settings_cache = load_api_settings()
    return _settings_cache


def get_sync_settings() -> SyncSettings:
    """Return the cached :class:`SyncSettings` singleton."""
    global _sync_settings_cache  # noqa: PLW0603
    if _sync_settings_cache is None:
        _sync_settings_cache = load_sync_settings()
    return _sync_settings_cache


SettingsDep = Annotated[APISettings, Depends(get_settings)]

# ---------------------------------------------------------------------------
# Database session
# ---------------------------------------------------------------------------

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def init_engine(settings: APISettings) -> AsyncEngine:
    """Create and cache the global async engine."""
    global _engine, _session_factory  # noqa: PLW0603
    _engine = get_engine(settings.database_url)
    _session_factory = async_sessionmaker(_engine, expire_on_commit=False)
    return _engine


async def dispose_engine() -> None:
    """Dispose the global engine pool (call during shutdown)."""
    global _engine, _session_factory  # noqa: PLW0603
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the global async session factory.

    Used by components that manage their own transactions (the webhook
    reconciler) rather than taking a request-scoped session.
    """
    if _session_factory is None:
        raise RuntimeError(
            "Database engine has not been initialised. Ensure init_engine() is called during application startup."
        )
    return _session_factory


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield a request-scoped ``AsyncSession``, committed on success."""
    factory = get_session_factory()
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


SessionDep = Annotated[AsyncSession, Depends(get_db_session)]

# ---------------------------------------------------------------------------
# Query cache and change-feed router
# ---------------------------------------------------------------------------

_query_cache: QueryCache | None = None
_change_feed: ChangeFeed | None = None
_change_router: ChangeFeedRouter | None = None


def init_change_router(sync_settings: SyncSettings) -> ChangeFeedRouter:
    """Create the query cache, the change-feed transport and the router."""
    global _query_cache, _change_feed, _change_router  # noqa: PLW0603
    _query_cache = QueryCache(
        ttl_seconds=sync_settings.cache_ttl_seconds,
        max_entries=sync_settings.cache_max_entries,
        enabled=sync_settings.cache_enabled,
    )

    if sync_settings.change_feed_backend == ChangeFeedBackend.POSTGRES:
        from taskflow_sync.realtime.postgres_feed import PostgresChangeFeed

        _change_feed = PostgresChangeFeed(sync_settings.database_url, channel=sync_settings.notify_channel)
    else:
        _change_feed = InMemoryChangeFeed()

    _change_router = ChangeFeedRouter(
        _change_feed,
        _query_cache,
        backoff=BackoffConfig(
            base_delay=sync_settings.reconnect_base_delay,
            max_delay=sync_settings.reconnect_max_delay,
            jitter=sync_settings.reconnect_jitter,
        ),
        connect_timeout=sync_settings.subscribe_timeout,
    )
    return _change_router


async def dispose_change_router() -> None:
    """Close every channel and the transport (call during shutdown)."""
    global _query_cache, _change_feed, _change_router  # noqa: PLW0603
    if _change_router is not None:
        await _change_router.aclose()
    if _change_feed is not None:
        await _change_feed.aclose()
    _query_cache = None
    _change_feed = None
    _change_router = None


def get_change_router() -> ChangeFeedRouter:
    if _change_router is None:
        raise RuntimeError("Change-feed router has not been initialised. Call init_change_router() at startup.")
    return _change_router


def get_query_cache() -> QueryCache:
    if _query_cache is None:
        raise RuntimeError("Query cache has not been initialised. Call init_change_router() at startup.")
    return _query_cache


ChangeRouterDep = Annotated[ChangeFeedRouter, Depends(get_change_router)]
QueryCacheDep = Annotated[QueryCache, Depends(get_query_cache)]

# ---------------------------------------------------------------------------
# Billing reconciler
# ---------------------------------------------------------------------------

_reconciler: BillingReconciler | None = None


def init_reconciler(settings: APISettings) -> BillingReconciler:
    """Create the webhook reconciler on the global session factory."""
    global _reconciler  # noqa: PLW0603
    _reconciler = BillingReconciler(get_session_factory(), settings)
    return _reconciler


def dispose_reconciler() -> None:
    global _reconciler  # noqa: PLW0603
    _reconciler = None


def get_reconciler() -> BillingReconciler:
    if _reconciler is None:
        raise RuntimeError("Billing reconciler has not been initialised. Call init_reconciler() at startup.")
    return _reconciler


ReconcilerDep = Annotated[BillingReconciler, Depends(get_reconciler)]
