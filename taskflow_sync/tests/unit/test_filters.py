"""Unit tests for subscription filters, entity rows and change events."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from taskflow_sync.realtime.entities import TaskRow, entity_columns, is_known_entity, parse_row
from taskflow_sync.realtime.filters import FilterOperator, InvalidFilterError, parse_filter
from taskflow_sync.realtime.models import ChangeEvent, ChangeOperation


# ---------------------------------------------------------------------------
# Entities
# ---------------------------------------------------------------------------


class TestEntities:
    def test_known_entities(self) -> None:
        assert is_known_entity("tasks")
        assert is_known_entity("task_comments")
        assert not is_known_entity("widgets")

    def test_columns_include_identity_fields(self) -> None:
        assert {"id", "workspace_id", "project_id", "status"} <= entity_columns("tasks")
        assert "project_id" not in entity_columns("clients")

    def test_parse_row_drops_unknown_columns(self) -> None:
        row = parse_row("tasks", {"id": "t-1", "project_id": "p-1", "title": "Write docs"})

        assert isinstance(row, TaskRow)
        assert row.model_fields_set == {"id", "project_id"}
        assert not hasattr(row, "title")

    def test_numeric_ids_become_strings(self) -> None:
        row = parse_row("invoices", {"id": 17, "client_id": 4})
        assert row is not None
        assert row.id == "17"

    def test_parse_row_none(self) -> None:
        assert parse_row("tasks", None) is None


# ---------------------------------------------------------------------------
# Filters
# ---------------------------------------------------------------------------


class TestParseFilter:
    def test_operator_form(self) -> None:
        row_filter = parse_filter("tasks", "project_id=eq.p-1")

        assert row_filter.column == "project_id"
        assert row_filter.operator is FilterOperator.EQ
        assert row_filter.values == ("p-1",)
        assert row_filter.equality_value == "p-1"

    def test_shorthand_is_equality(self) -> None:
        row_filter = parse_filter("tasks", " project_id = 'p-1' ")
        assert str(row_filter) == "project_id=eq.p-1"

    def test_in_list(self) -> None:
        row_filter = parse_filter("tasks", "status=in.(todo, in_progress)")

        assert row_filter.values == ("todo", "in_progress")
        assert row_filter.equality_value is None
        assert str(row_filter) == "status=in.(todo,in_progress)"

    @pytest.mark.parametrize(
        "expression",
        [
            "title=eq.x",
            "project_id=eq.",
            "status=in.()",
            "status=in.todo",
            "project_id",
        ],
    )
    def test_invalid_expressions(self, expression: str) -> None:
        with pytest.raises(InvalidFilterError):
            parse_filter("tasks", expression)

    def test_unknown_entity(self) -> None:
        with pytest.raises(InvalidFilterError):
            parse_filter("widgets", "id=eq.1")


class TestRowFilterMatches:
    def test_equality(self) -> None:
        row_filter = parse_filter("tasks", "project_id=eq.P")

        assert row_filter.matches(TaskRow(id="t", project_id="P"))
        assert not row_filter.matches(TaskRow(id="t", project_id="Q"))

    def test_missing_column_counts_as_match(self) -> None:
        row_filter = parse_filter("tasks", "project_id=eq.P")

        assert row_filter.matches(TaskRow(id="t"))
        assert row_filter.matches(None)

    def test_null_value_only_matches_neq(self) -> None:
        row = TaskRow(id="t", assigned_to=None)

        assert not parse_filter("tasks", "assigned_to=eq.u-1").matches(row)
        assert parse_filter("tasks", "assigned_to=neq.u-1").matches(row)

    def test_in_and_neq(self) -> None:
        row = TaskRow(id="t", status="done")

        assert parse_filter("tasks", "status=in.(todo,done)").matches(row)
        assert not parse_filter("tasks", "status=neq.done").matches(row)

    def test_numeric_comparison(self) -> None:
        row = parse_row("invoices", {"id": "i-1", "status": "10"})

        assert parse_filter("invoices", "status=gt.9").matches(row)
        assert parse_filter("invoices", "status=lte.10").matches(row)
        assert not parse_filter("invoices", "status=lt.2").matches(row)


# ---------------------------------------------------------------------------
# Change events
# ---------------------------------------------------------------------------


class TestChangeEvent:
    def test_rows_are_typed_by_entity(self) -> None:
        event = ChangeEvent(entity_type="tasks", operation="UPDATE", row={"id": "t-1", "project_id": "P"})

        assert event.operation is ChangeOperation.UPDATE
        assert isinstance(event.row, TaskRow)

    def test_unknown_entity_rejected(self) -> None:
        with pytest.raises(ValidationError):
            ChangeEvent(entity_type="widgets", operation="insert", row={"id": "w-1"})

    def test_context_prefers_new_row(self) -> None:
        event = ChangeEvent(
            entity_type="tasks",
            operation="update",
            row={"id": "t-1", "project_id": "Q"},
            old_row={"id": "t-1", "project_id": "P", "status": "todo"},
        )

        assert event.context() == {"id": "t-1", "project_id": "Q", "status": "todo"}
