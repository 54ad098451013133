"""Per-view subscription ownership and the stock live-update presets.

A view that needs live updates owns a :class:`SubscriptionScope`; leaving
the scope releases every handle it acquired::

    async with SubscriptionScope(router) as scope:
        await task_subscription(scope, project_id)
        ...  # render; cached task lists are invalidated on remote changes
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from types import TracebackType

from taskflow_sync.cache.keys import CacheKey, InvalidationTarget
from taskflow_sync.realtime.models import SubscriptionHandle
from taskflow_sync.realtime.router import ChangeFeedRouter

logger = logging.getLogger(__name__)


class SubscriptionScope:
    """Explicit owned collection of subscription handles for one consumer."""

    def __init__(self, router: ChangeFeedRouter) -> None:
        self._router = router
        self._handles: list[SubscriptionHandle] = []

    async def subscribe(
        self,
        entity_type: str,
        filter_expression: str | None,
        invalidation_targets: Iterable[str | InvalidationTarget | CacheKey],
    ) -> SubscriptionHandle:
        handle = await self._router.subscribe(entity_type, filter_expression, invalidation_targets)
        self._handles.append(handle)
        return handle

    async def release(self, handle: SubscriptionHandle) -> None:
        """Release one handle owned by this scope.  Unknown handles are ignored."""
        if handle in self._handles:
            self._handles.remove(handle)
        await self._router.unsubscribe(handle)

    async def close(self) -> None:
        handles, self._handles = self._handles, []
        for handle in reversed(handles):
            await self._router.unsubscribe(handle)
        if handles:
            logger.debug("Released %d subscription(s)", len(handles))

    @property
    def handles(self) -> tuple[SubscriptionHandle, ...]:
        return tuple(self._handles)

    async def __aenter__(self) -> SubscriptionScope:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()


# ---------------------------------------------------------------------------
# Presets
# ---------------------------------------------------------------------------


def task_targets(project_id: str) -> list[str]:
    """Cache keys that depend on the task list of *project_id*."""
    return [
        f"tasks:{project_id}",
        f"tasks:{project_id}:grouped",
        "tasks:upcoming*",
        f"projects:{project_id}:stats",
    ]


def task_comment_targets(task_id: str) -> list[str]:
    return [f"task-comments:{task_id}", f"task-comments:{task_id}:count"]


async def task_subscription(scope: SubscriptionScope, project_id: str) -> SubscriptionHandle:
    """Keep a project's task views live (lists, grouped board, upcoming, stats)."""
    return await scope.subscribe("tasks", f"project_id=eq.{project_id}", task_targets(project_id))


async def task_comment_subscription(scope: SubscriptionScope, task_id: str) -> SubscriptionHandle:
    """Keep a task's comment thread and comment count live."""
    return await scope.subscribe("task_comments", f"task_id=eq.{task_id}", task_comment_targets(task_id))
