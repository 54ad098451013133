"""Shared fixtures for Taskflow API tests.

Provides Stripe-enabled settings, an in-memory billing store seeded with
the ``ws-1`` workspace, a webhook reconciler bound to it, an HTTP client
against the FastAPI app with its dependencies overridden, and factories for
signed Stripe payloads.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import time
from collections.abc import AsyncGenerator, Callable
from typing import Any

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from taskflow_sync.cache.query_cache import QueryCache
from taskflow_sync.realtime.feed import InMemoryChangeFeed
from taskflow_sync.realtime.router import ChangeFeedRouter
from taskflow_sync.state.database import create_tables, get_engine
from taskflow_sync.state.repository import WorkspaceRepository

from taskflow_api.config import APISettings
from taskflow_api.dependencies import (
    get_change_router,
    get_db_session,
    get_query_cache,
    get_reconciler,
    get_settings,
)
from taskflow_api.main import create_app
from taskflow_api.services.billing_reconciler import BillingReconciler

WEBHOOK_SECRET = "whsec_test_secret"
WORKSPACE_ID = "ws-1"
PERIOD_START = 1772323200  # 2026-03-01T00:00:00Z
PERIOD_END = 1775001600  # 2026-04-01T00:00:00Z


# ---------------------------------------------------------------------------
# Settings and store
# ---------------------------------------------------------------------------


@pytest.fixture
def settings() -> APISettings:
    return APISettings(
        _env_file=None,
        billing_enabled=True,
        stripe_secret_key="sk_test_123",
        stripe_webhook_secret=WEBHOOK_SECRET,
        stripe_price_id_pro="price_pro",
        stripe_price_id_business="price_business",
        app_url="https://app.taskflow.test",
    )


@pytest_asyncio.fixture
async def session_factory() -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    engine = get_engine("sqlite+aiosqlite://")
    await create_tables(engine)
    factory = async_sessionmaker(engine, expire_on_commit=False)
    async with factory() as session:
        await WorkspaceRepository(session).create("Acme", workspace_id=WORKSPACE_ID)
        await session.commit()
    yield factory
    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(session_factory: async_sessionmaker[AsyncSession]) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def reconciler(session_factory: async_sessionmaker[AsyncSession], settings: APISettings) -> BillingReconciler:
    return BillingReconciler(session_factory, settings)


# ---------------------------------------------------------------------------
# HTTP client
# ---------------------------------------------------------------------------


@pytest.fixture
def query_cache() -> QueryCache:
    return QueryCache()


@pytest_asyncio.fixture
async def change_router(query_cache: QueryCache) -> AsyncGenerator[ChangeFeedRouter, None]:
    feed = InMemoryChangeFeed()
    router = ChangeFeedRouter(feed, query_cache, connect_timeout=1.0)
    yield router
    await router.aclose()
    await feed.aclose()


@pytest.fixture
def app(
    settings: APISettings,
    session_factory: async_sessionmaker[AsyncSession],
    reconciler: BillingReconciler,
    change_router: ChangeFeedRouter,
    query_cache: QueryCache,
) -> Any:
    application = create_app()

    async def _session() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            yield session
            await session.commit()

    application.dependency_overrides[get_settings] = lambda: settings
    application.dependency_overrides[get_db_session] = _session
    application.dependency_overrides[get_reconciler] = lambda: reconciler
    application.dependency_overrides[get_change_router] = lambda: change_router
    application.dependency_overrides[get_query_cache] = lambda: query_cache
    return application


@pytest_asyncio.fixture
async def client(app: Any) -> AsyncGenerator[AsyncClient, None]:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


# ---------------------------------------------------------------------------
# Stripe payload factories
# ---------------------------------------------------------------------------


def _sign(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    """Build a ``Stripe-Signature`` header the way Stripe does."""
    ts = int(time.time()) if timestamp is None else timestamp
    signed = f"{ts}.{payload.decode('utf-8')}".encode()
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={ts},v1={signature}"


def _subscription_object(
    subscription_id: str = "sub_1",
    customer_id: str = "cus_1",
    *,
    status: str = "active",
    price_id: str | None = "price_pro",
    workspace_id: str | None = WORKSPACE_ID,
    cancel_at_period_end: bool = False,
) -> dict[str, Any]:
    items = []
    if price_id is not None:
        items.append(
            {
                "id": "si_1",
                "price": {"id": price_id},
                "current_period_start": PERIOD_START,
                "current_period_end": PERIOD_END,
            }
        )
    return {
        "id": subscription_id,
        "object": "subscription",
        "customer": customer_id,
        "status": status,
        "cancel_at_period_end": cancel_at_period_end,
        "items": {"object": "list", "data": items},
        "metadata": {"workspace_id": workspace_id} if workspace_id else {},
    }


def _event(event_type: str, data_object: dict[str, Any], event_id: str = "evt_1") -> dict[str, Any]:
    return {
        "id": event_id,
        "object": "event",
        "type": event_type,
        "created": PERIOD_START,
        "livemode": False,
        "data": {"object": data_object},
    }


@pytest.fixture
def sign() -> Callable[..., str]:
    return _sign


@pytest.fixture
def make_subscription() -> Callable[..., dict[str, Any]]:
    return _subscription_object


@pytest.fixture
def make_event() -> Callable[..., dict[str, Any]]:
    return _event


@pytest.fixture
def encode() -> Callable[[dict[str, Any]], bytes]:
    return lambda doc: json.dumps(doc).encode("utf-8")
