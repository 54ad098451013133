"""Change-feed subscriptions that keep cached query results fresh."""

from __future__ import annotations

from taskflow_sync.realtime.backoff import BackoffConfig, compute_delay
from taskflow_sync.realtime.feed import ChangeFeed, ChangeStream, ChannelDisconnected, InMemoryChangeFeed
from taskflow_sync.realtime.filters import FilterOperator, InvalidFilterError, RowFilter, parse_filter
from taskflow_sync.realtime.models import (
    ChangeEvent,
    ChangeOperation,
    ChangeSubscription,
    ChannelStatus,
    SubscriptionHandle,
)
from taskflow_sync.realtime.router import ChangeFeedRouter, InvalidSubscriptionError
from taskflow_sync.realtime.scope import SubscriptionScope, task_comment_subscription, task_subscription

__all__ = [
    "BackoffConfig",
    "ChangeEvent",
    "ChangeFeed",
    "ChangeFeedRouter",
    "ChangeOperation",
    "ChangeStream",
    "ChangeSubscription",
    "ChannelDisconnected",
    "ChannelStatus",
    "FilterOperator",
    "InMemoryChangeFeed",
    "InvalidFilterError",
    "InvalidSubscriptionError",
    "RowFilter",
    "SubscriptionHandle",
    "SubscriptionScope",
    "compute_delay",
    "parse_filter",
    "task_comment_subscription",
    "task_subscription",
]
