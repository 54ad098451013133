"""Health-check endpoint.

Always answers 200 so load-balancers see the process as alive; the body
reports the database and change-feed state.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter
from sqlalchemy import text

from taskflow_api import __version__
from taskflow_api.dependencies import ChangeRouterDep, QueryCacheDep, SessionDep

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


@router.get("/health")
async def health(
    session: SessionDep,
    change_router: ChangeRouterDep,
    cache: QueryCacheDep,
) -> dict[str, Any]:
    """Return service health with dependency and change-feed details.

    ``status`` is ``degraded`` when the database is unreachable or any
    change-feed channel is currently disconnected (its cached queries may be
    stale until it reconnects).
    """
    result: dict[str, Any] = {
        "status": "healthy",
        "version": __version__,
        "db": "ok",
    }

    try:
        await session.execute(text("SELECT 1"))
    except Exception as exc:
        logger.warning("DB health check failed: %s", exc)
        result["db"] = "degraded"

    channels = change_router.channel_statuses()
    disconnected = sum(1 for c in channels if not c.connected)
    result["change_feed"] = {
        "channels": [c.model_dump() for c in channels],
        "disconnected": disconnected,
    }
    result["cache"] = cache.stats

    if result["db"] != "ok" or disconnected:
        result["status"] = "degraded"
    return result
