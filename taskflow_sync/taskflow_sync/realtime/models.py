"""Value types exchanged between change-feed transports and the router."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

from taskflow_sync.cache.keys import InvalidationTarget
from taskflow_sync.realtime.entities import EntityRow, is_known_entity, parse_row
from taskflow_sync.realtime.filters import RowFilter


class ChangeOperation(str, Enum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


class ChangeEvent(BaseModel):
    """One row-level change notification.

    ``row`` is the new row for inserts and updates and the old row (usually
    just the primary key) for deletes.  ``old_row`` is set when the feed
    reports the previous values of an update.
    """

    model_config = ConfigDict(frozen=True)

    entity_type: str
    operation: ChangeOperation
    row: EntityRow | None = None
    old_row: EntityRow | None = None

    @model_validator(mode="before")
    @classmethod
    def _type_rows(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        entity_type = data.get("entity_type")
        if not isinstance(entity_type, str) or not is_known_entity(entity_type):
            raise ValueError(f"Unknown entity type {entity_type!r}")
        data = dict(data)
        if isinstance(data.get("operation"), str):
            data["operation"] = data["operation"].lower()
        for name in ("row", "old_row"):
            raw = data.get(name)
            if isinstance(raw, dict):
                data[name] = parse_row(entity_type, raw)
        return data

    def context(self) -> dict[str, Any]:
        """Field values available to invalidation-target templates.

        Values from the new row win; the old row fills in columns the new
        row does not carry.
        """
        merged: dict[str, Any] = {}
        for row in (self.old_row, self.row):
            if row is not None:
                merged.update({k: v for k, v in row.model_dump().items() if v is not None})
        return merged


ChannelKey = tuple[str, str | None]


@dataclass(eq=False)
class ChangeSubscription:
    """An active listen owned by one consumer (typically one view)."""

    entity_type: str
    filter_expression: str | None
    row_filter: RowFilter | None
    invalidation_targets: tuple[InvalidationTarget, ...]
    active: bool = True
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    @property
    def channel_key(self) -> ChannelKey:
        return (self.entity_type, self.filter_expression)

    def matches(self, event: ChangeEvent) -> bool:
        """Return ``True`` if *event* is relevant to this subscription."""
        if not self.active or event.entity_type != self.entity_type:
            return False
        if self.row_filter is None:
            return True
        # A row moving out of the filtered set must still invalidate.
        old_row = event.old_row
        if old_row is not None and self.row_filter.column in old_row.model_fields_set:
            if self.row_filter.matches(old_row):
                return True
        return self.row_filter.matches(event.row)

    def filter_context(self) -> dict[str, str]:
        """Template context derived from an equality filter, if any."""
        if self.row_filter is None or self.row_filter.equality_value is None:
            return {}
        return {self.row_filter.column: self.row_filter.equality_value}


@dataclass(frozen=True, slots=True)
class SubscriptionHandle:
    """Opaque token returned by ``subscribe()`` and accepted by ``unsubscribe()``."""

    subscription_id: str
    channel_key: ChannelKey


class ChannelStatus(BaseModel):
    """Snapshot of one shared channel, for health reporting."""

    entity_type: str
    filter_expression: str | None = None
    subscribers: int = Field(ge=0)
    connected: bool
    reconnects: int = 0
    events_received: int = 0
