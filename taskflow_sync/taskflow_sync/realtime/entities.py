"""Typed row shapes for the logical entities carried by the change feed.

Change notifications only need the columns that identify a row and the
columns subscriptions filter on.  Each entity declares those as a pydantic
model; payload rows are validated into the model at the boundary and any
other column is dropped.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict


class EntityRow(BaseModel):
    """Identifying fields shared by every entity."""

    model_config = ConfigDict(extra="ignore", frozen=True, coerce_numbers_to_str=True)

    id: str | None = None
    workspace_id: str | None = None


class ClientRow(EntityRow):
    pass


class ProjectRow(EntityRow):
    client_id: str | None = None
    status: str | None = None


class TaskRow(EntityRow):
    project_id: str | None = None
    parent_task_id: str | None = None
    status: str | None = None
    assigned_to: str | None = None


class TaskCommentRow(EntityRow):
    task_id: str | None = None
    user_id: str | None = None


class TimeEntryRow(EntityRow):
    project_id: str | None = None
    task_id: str | None = None
    user_id: str | None = None


class NoteRow(EntityRow):
    project_id: str | None = None


class LeadRow(EntityRow):
    status: str | None = None


class InvoiceRow(EntityRow):
    client_id: str | None = None
    project_id: str | None = None
    status: str | None = None


class SubscriptionRow(EntityRow):
    status: str | None = None
    plan: str | None = None


ENTITY_MODELS: dict[str, type[EntityRow]] = {
    "clients": ClientRow,
    "projects": ProjectRow,
    "tasks": TaskRow,
    "task_comments": TaskCommentRow,
    "time_entries": TimeEntryRow,
    "notes": NoteRow,
    "leads": LeadRow,
    "invoices": InvoiceRow,
    "subscriptions": SubscriptionRow,
}


def is_known_entity(entity_type: str) -> bool:
    return entity_type in ENTITY_MODELS


def entity_columns(entity_type: str) -> frozenset[str]:
    """Return the column names a filter on *entity_type* may reference."""
    return frozenset(ENTITY_MODELS[entity_type].model_fields)


def parse_row(entity_type: str, raw: dict | None) -> EntityRow | None:
    """Validate a raw payload row into the entity's typed shape."""
    if raw is None:
        return None
    return ENTITY_MODELS[entity_type].model_validate(raw)
