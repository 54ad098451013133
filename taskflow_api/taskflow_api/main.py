"""FastAPI application entry-point for the Taskflow API."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from taskflow_sync.state.database import create_tables

from taskflow_api import __version__
from taskflow_api.config import APISettings, PlatformEnv, load_api_settings
from taskflow_api.dependencies import (
    dispose_change_router,
    dispose_engine,
    dispose_reconciler,
    get_sync_settings,
    init_change_router,
    init_engine,
    init_reconciler,
)
from taskflow_api.middleware.logging import RequestLoggingMiddleware
from taskflow_api.routers import billing, health

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application startup / shutdown lifecycle.

    On startup:
    - Switch to JSON logging when ``API_STRUCTURED_LOGGING`` is set.
    - Initialise the async database engine; create tables in dev or
      local SQLite mode.
    - Build the query cache, change-feed transport and router.
    - Build the Stripe webhook reconciler.

    On shutdown everything is released in reverse order.
    """
    settings: APISettings = load_api_settings()

    if settings.structured_logging:
        from taskflow_api.middleware.json_formatter import configure_json_logging

        configure_json_logging()
        logger.info("Structured JSON logging enabled")

    if settings.billing_enabled and settings.platform_env != PlatformEnv.DEV:
        if not settings.stripe_webhook_secret.get_secret_value():
            raise RuntimeError(
                f"API_STRIPE_WEBHOOK_SECRET is required with billing enabled in "
                f"{settings.platform_env.value} mode. Refusing to start."
            )

    engine = init_engine(settings)
    is_local = settings.database_url.startswith("sqlite")
    logger.info("Database engine initialised (%s)", "local" if is_local else "postgres")

    # Auto-create tables in dev or local SQLite mode (idempotent).
    if settings.platform_env == PlatformEnv.DEV or is_local:
        await create_tables(engine)

    sync_settings = get_sync_settings()
    change_router = init_change_router(sync_settings)
    logger.info(
        "Change-feed router initialised (backend=%s, cache=%s)",
        sync_settings.change_feed_backend.value,
        "on" if sync_settings.cache_enabled else "off",
    )
    app.state.change_router = change_router

    init_reconciler(settings)
    logger.info("Billing reconciler initialised (billing %s)", "enabled" if settings.billing_enabled else "disabled")

    yield

    dispose_reconciler()
    await dispose_change_router()
    await dispose_engine()
    logger.info("Application shutdown complete")


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app() -> FastAPI:
    """Construct and configure the FastAPI application."""
    settings = load_api_settings()

    app = FastAPI(
        title="Taskflow API",
        description="Stripe billing reconciliation and live-update infrastructure for Taskflow.",
        version=__version__,
        lifespan=lifespan,
    )

    # -- Middleware (outermost first) ----------------------------------------

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "X-Correlation-ID", "Accept"],
    )
    app.add_middleware(RequestLoggingMiddleware)

    # -- Routers -------------------------------------------------------------

    app.include_router(health.router, prefix="/api/v1")
    app.include_router(billing.router, prefix="/api/v1")

    # -- Exception handlers --------------------------------------------------

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
        logger.warning("ValueError on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.exception_handler(SQLAlchemyError)
    async def sqlalchemy_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
        logger.error("Database error on %s: %s", request.url.path, exc, exc_info=True)
        return JSONResponse(status_code=503, content={"detail": "Database unavailable"})

    return app


# Module-level application instance used by ``uvicorn taskflow_api.main:app``.
app = create_app()
