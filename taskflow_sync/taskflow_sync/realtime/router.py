"""Change-feed subscription router.

Keeps cached query results consistent with the remote store by reacting to
row-change notifications instead of polling.  The router never patches
cached values from event payloads (a notification does not carry every
column a cached query needs); it only invalidates keys so that the next read
goes back to the source of truth.

Channels
    Subscriptions with the same ``(entity_type, filter_expression)`` share
    one reference-counted push channel.  Each channel runs in its own task
    and handles its events strictly in arrival order; different channels run
    concurrently.

Disconnects
    A dropped channel is reopened with exponential backoff.  Events missed
    while it was down cannot be recovered individually, so after every
    successful reconnect the router invalidates each target registered on
    the channel exactly once (the catch-up sweep).

Cancellation
    ``unsubscribe()`` flips the subscription inactive before anything else.
    Dispatch is synchronous and re-checks the flag before each invalidation,
    so no invalidation happens for a released handle.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from dataclasses import dataclass, field

from taskflow_sync.cache.keys import CacheKey, InvalidationTarget, UnresolvedPlaceholderError
from taskflow_sync.cache.query_cache import QueryCache
from taskflow_sync.realtime.backoff import BackoffConfig, compute_delay
from taskflow_sync.realtime.entities import entity_columns, is_known_entity
from taskflow_sync.realtime.feed import ChangeFeed, ChangeStream
from taskflow_sync.realtime.filters import InvalidFilterError, parse_filter
from taskflow_sync.realtime.models import (
    ChangeEvent,
    ChangeSubscription,
    ChannelKey,
    ChannelStatus,
    SubscriptionHandle,
)

logger = logging.getLogger(__name__)


class InvalidSubscriptionError(ValueError):
    """``subscribe()`` was called with an unknown entity, bad filter or bad targets."""


@dataclass(eq=False)
class _Channel:
    key: ChannelKey
    subscriptions: dict[str, ChangeSubscription] = field(default_factory=dict)
    connected: asyncio.Event = field(default_factory=asyncio.Event)
    task: asyncio.Task[None] | None = None
    ever_connected: bool = False
    reconnects: int = 0
    events_received: int = 0

    @property
    def entity_type(self) -> str:
        return self.key[0]

    @property
    def filter_expression(self) -> str | None:
        return self.key[1]

    def label(self) -> str:
        return f"{self.entity_type}[{self.filter_expression or '*'}]"


# A resolved invalidation: the key and whether it is a prefix.
_Resolved = tuple[CacheKey, bool]


class ChangeFeedRouter:
    """Routes change notifications to cache invalidations.

    Parameters
    ----------
    feed:
        Transport that opens push channels (see :mod:`taskflow_sync.realtime.feed`).
    cache:
        The cache whose keys are invalidated.
    backoff:
        Reconnect backoff parameters.
    connect_timeout:
        How long ``subscribe()`` waits for a new channel's first connection
        before returning anyway (the channel keeps retrying in the
        background).  ``0`` disables the wait.
    """

    def __init__(
        self,
        feed: ChangeFeed,
        cache: QueryCache,
        *,
        backoff: BackoffConfig | None = None,
        connect_timeout: float = 5.0,
    ) -> None:
        self._feed = feed
        self._cache = cache
        self._backoff = backoff or BackoffConfig()
        self._connect_timeout = connect_timeout
        self._channels: dict[ChannelKey, _Channel] = {}
        self._closed = False

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def subscribe(
        self,
        entity_type: str,
        filter_expression: str | None,
        invalidation_targets: Iterable[str | InvalidationTarget | CacheKey],
    ) -> SubscriptionHandle:
        """Register a live listen and return a handle for ``unsubscribe()``.

        Raises
        ------
        InvalidSubscriptionError
            If *entity_type* is unknown, the filter does not parse or names a
            column the entity lacks, or a target template references such a
            column.
        RuntimeError
            If the router has been closed.
        """
        if self._closed:
            raise RuntimeError("ChangeFeedRouter is closed")
        subscription = self._build_subscription(entity_type, filter_expression, invalidation_targets)

        channel = self._channels.get(subscription.channel_key)
        if channel is None:
            channel = _Channel(key=subscription.channel_key)
            self._channels[channel.key] = channel
            channel.task = asyncio.create_task(self._run_channel(channel), name=f"change-feed:{channel.label()}")
            logger.info("Opening change-feed channel %s", channel.label())
        channel.subscriptions[subscription.id] = subscription
        logger.debug(
            "Subscribed %s to %s (%d subscriber(s))",
            subscription.id[:8],
            channel.label(),
            len(channel.subscriptions),
        )

        if self._connect_timeout > 0 and not channel.connected.is_set():
            try:
                await asyncio.wait_for(channel.connected.wait(), self._connect_timeout)
            except TimeoutError:
                logger.warning(
                    "Channel %s not connected after %.1fs; continuing in background",
                    channel.label(),
                    self._connect_timeout,
                )

        return SubscriptionHandle(subscription_id=subscription.id, channel_key=channel.key)

    async def unsubscribe(self, handle: SubscriptionHandle) -> None:
        """Release *handle*.  Idempotent; unknown or released handles are ignored.

        The channel is closed when its last subscriber leaves.
        """
        channel = self._channels.get(handle.channel_key)
        if channel is None:
            return
        subscription = channel.subscriptions.pop(handle.subscription_id, None)
        if subscription is None:
            return
        subscription.active = False

        if channel.subscriptions:
            return
        if self._channels.get(channel.key) is channel:
            del self._channels[channel.key]
        await self._stop_channel(channel)
        logger.info("Closed change-feed channel %s (no subscribers left)", channel.label())

    async def aclose(self) -> None:
        """Release every subscription and close every channel."""
        self._closed = True
        channels = list(self._channels.values())
        self._channels.clear()
        for channel in channels:
            for subscription in channel.subscriptions.values():
                subscription.active = False
            channel.subscriptions.clear()
            await self._stop_channel(channel)
        if channels:
            logger.info("Change-feed router closed %d channel(s)", len(channels))

    def is_active(self, handle: SubscriptionHandle) -> bool:
        channel = self._channels.get(handle.channel_key)
        return channel is not None and handle.subscription_id in channel.subscriptions

    def channel_statuses(self) -> list[ChannelStatus]:
        return [
            ChannelStatus(
                entity_type=c.entity_type,
                filter_expression=c.filter_expression,
                subscribers=len(c.subscriptions),
                connected=c.connected.is_set(),
                reconnects=c.reconnects,
                events_received=c.events_received,
            )
            for c in self._channels.values()
        ]

    @property
    def channel_count(self) -> int:
        return len(self._channels)

    @property
    def subscription_count(self) -> int:
        return sum(len(c.subscriptions) for c in self._channels.values())

    # ------------------------------------------------------------------
    # Event handling
    # ------------------------------------------------------------------

    def dispatch(self, channel_key: ChannelKey, event: ChangeEvent) -> list[_Resolved]:
        """Apply *event* to every matching subscription on the channel.

        Returns the invalidations performed, each key at most once per event.
        """
        channel = self._channels.get(channel_key)
        if channel is None:
            return []
        return self._dispatch(channel, event)

    def _dispatch(self, channel: _Channel, event: ChangeEvent) -> list[_Resolved]:
        applied: list[_Resolved] = []
        seen: set[_Resolved] = set()
        event_context = event.context()

        for subscription in list(channel.subscriptions.values()):
            if not subscription.matches(event):
                continue
            context = {**subscription.filter_context(), **event_context}
            for target in subscription.invalidation_targets:
                if not subscription.active:
                    break
                resolved = _resolve_target(target, context)
                if resolved in seen:
                    continue
                seen.add(resolved)
                self._invalidate(resolved)
                applied.append(resolved)

        if applied:
            logger.debug(
                "%s %s on %s invalidated %d key(s)",
                event.entity_type,
                event.operation.value,
                channel.label(),
                len(applied),
            )
        return applied

    def _sweep(self, channel: _Channel) -> list[_Resolved]:
        """Invalidate every target registered on *channel* exactly once."""
        applied: list[_Resolved] = []
        seen: set[_Resolved] = set()
        for subscription in list(channel.subscriptions.values()):
            context = subscription.filter_context()
            for target in subscription.invalidation_targets:
                if not subscription.active:
                    break
                resolved = _resolve_target(target, context)
                if resolved in seen:
                    continue
                seen.add(resolved)
                self._invalidate(resolved)
                applied.append(resolved)
        logger.info("Catch-up sweep on %s invalidated %d key(s)", channel.label(), len(applied))
        return applied

    def _invalidate(self, resolved: _Resolved) -> None:
        key, prefix = resolved
        if prefix:
            self._cache.invalidate_by_prefix(key)
        else:
            self._cache.invalidate(key)

    # ------------------------------------------------------------------
    # Channel lifecycle
    # ------------------------------------------------------------------

    async def _run_channel(self, channel: _Channel) -> None:
        attempt = 0
        while True:
            try:
                stream: ChangeStream = await self._feed.open(channel.entity_type, channel.filter_expression)
            except Exception as exc:
                delay = compute_delay(attempt, self._backoff)
                attempt += 1
                logger.warning(
                    "Cannot open channel %s (attempt %d), retrying in %.2fs: %s",
                    channel.label(),
                    attempt,
                    delay,
                    exc,
                )
                await asyncio.sleep(delay)
                continue

            try:
                # Anything cached while the channel was down may be stale.
                if channel.ever_connected or attempt > 0:
                    channel.reconnects += 1
                    logger.info("Channel %s reconnected after %d attempt(s)", channel.label(), max(attempt, 1))
                    self._sweep(channel)
                channel.ever_connected = True
                channel.connected.set()
                attempt = 0

                async for event in stream:
                    channel.events_received += 1
                    try:
                        self._dispatch(channel, event)
                    except Exception:
                        logger.exception(
                            "Failed to apply %s event on %s",
                            event.operation.value,
                            channel.label(),
                        )
                logger.warning("Channel %s stream ended; reconnecting", channel.label())
            except Exception as exc:
                logger.warning("Channel %s disconnected: %s", channel.label(), exc)
            finally:
                channel.connected.clear()
                await stream.close()

            delay = compute_delay(attempt, self._backoff)
            attempt += 1
            await asyncio.sleep(delay)

    async def _stop_channel(self, channel: _Channel) -> None:
        task = channel.task
        channel.task = None
        channel.connected.clear()
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def _build_subscription(
        self,
        entity_type: str,
        filter_expression: str | None,
        invalidation_targets: Iterable[str | InvalidationTarget | CacheKey],
    ) -> ChangeSubscription:
        if not is_known_entity(entity_type):
            raise InvalidSubscriptionError(f"Unknown entity type {entity_type!r}")

        row_filter = None
        if filter_expression is not None and filter_expression.strip():
            try:
                row_filter = parse_filter(entity_type, filter_expression)
            except InvalidFilterError as exc:
                raise InvalidSubscriptionError(str(exc)) from exc

        targets: list[InvalidationTarget] = []
        for raw in invalidation_targets:
            try:
                target = _coerce_target(raw)
            except ValueError as exc:
                raise InvalidSubscriptionError(f"Invalid invalidation target {raw!r}: {exc}") from exc
            unknown = target.key.placeholders - entity_columns(entity_type)
            if unknown:
                raise InvalidSubscriptionError(
                    f"Target {target} references unknown {entity_type} column(s): {', '.join(sorted(unknown))}"
                )
            if target not in targets:
                targets.append(target)
        if not targets:
            raise InvalidSubscriptionError("At least one invalidation target is required")

        return ChangeSubscription(
            entity_type=entity_type,
            # Canonical spelling so equivalent filters share a channel.
            filter_expression=str(row_filter) if row_filter is not None else None,
            row_filter=row_filter,
            invalidation_targets=tuple(targets),
        )


def _coerce_target(raw: str | InvalidationTarget | CacheKey) -> InvalidationTarget:
    if isinstance(raw, InvalidationTarget):
        return raw
    if isinstance(raw, CacheKey):
        return InvalidationTarget(raw)
    return InvalidationTarget.parse(raw)


def _resolve_target(target: InvalidationTarget, context: dict[str, object]) -> _Resolved:
    """Resolve *target* against *context*.

    A template that cannot be filled falls back to invalidating its static
    prefix, which covers every key the template could have produced.
    """
    try:
        return target.key.resolve(context), target.prefix
    except UnresolvedPlaceholderError:
        return target.key.static_prefix(), True
