"""Customer→workspace lookup used to attribute a first billing record."""

from __future__ import annotations

import logging
from typing import Protocol

from sqlalchemy.ext.asyncio import AsyncSession
from taskflow_sync.state.repository import WorkspaceRepository

logger = logging.getLogger(__name__)


class WorkspaceResolver(Protocol):
    async def resolve(self, customer_id: str) -> str | None:
        """Return the workspace owning *customer_id*, or ``None`` if unknown."""
        ...


class DatabaseWorkspaceResolver:
    """Resolve through ``workspaces.stripe_customer_id`` in the caller's session."""

    def __init__(self, session: AsyncSession) -> None:
        self._repo = WorkspaceRepository(session)

    async def resolve(self, customer_id: str) -> str | None:
        if not customer_id:
            return None
        workspace = await self._repo.get_by_customer(customer_id)
        if workspace is None:
            logger.debug("No workspace mapped to Stripe customer %s", customer_id)
            return None
        return workspace.id
