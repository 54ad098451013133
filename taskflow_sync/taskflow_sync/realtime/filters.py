"""Column filters for change-feed subscriptions.

Two spellings are accepted::

    project_id=eq.8f14e45f          # operator form: eq, neq, lt, lte, gt, gte, in
    status=in.(todo,in_progress)
    project_id = 8f14e45f           # shorthand for eq

Filters are evaluated client-side against the identifying fields of a
:class:`ChangeEvent`.  When the event does not carry the filtered column
(deletes usually only ship the primary key) the row is treated as a match:
an extra invalidation is harmless, a missed one is not.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum

from taskflow_sync.realtime.entities import EntityRow, entity_columns, is_known_entity

_OPERATOR_RE = re.compile(r"^\s*([a-zA-Z_][a-zA-Z0-9_]*)\s*=\s*(eq|neq|lt|lte|gt|gte|in)\.(.*)$")
_SHORTHAND_RE = re.compile(r"^\s*([a-zA-Z_][a-zA-Z0-9_]*)\s*=\s*(.+?)\s*$")
_IN_LIST_RE = re.compile(r"^\((.*)\)$")


class FilterOperator(str, Enum):
    EQ = "eq"
    NEQ = "neq"
    LT = "lt"
    LTE = "lte"
    GT = "gt"
    GTE = "gte"
    IN = "in"


class InvalidFilterError(ValueError):
    """The filter expression is malformed or references an unknown column."""


@dataclass(frozen=True, slots=True)
class RowFilter:
    """A parsed single-column predicate."""

    column: str
    operator: FilterOperator
    values: tuple[str, ...]

    @property
    def equality_value(self) -> str | None:
        """The value a row must hold for an ``eq`` filter, else ``None``."""
        if self.operator is FilterOperator.EQ:
            return self.values[0]
        return None

    def matches(self, row: EntityRow | None) -> bool:
        """Return ``True`` if *row* satisfies the predicate or cannot be judged."""
        if row is None or self.column not in row.model_fields_set:
            return True
        actual = getattr(row, self.column)
        if actual is None:
            return self.operator is FilterOperator.NEQ
        actual = str(actual)

        if self.operator is FilterOperator.EQ:
            return actual == self.values[0]
        if self.operator is FilterOperator.NEQ:
            return actual != self.values[0]
        if self.operator is FilterOperator.IN:
            return actual in self.values
        return _compare(actual, self.values[0], self.operator)

    def __str__(self) -> str:
        if self.operator is FilterOperator.IN:
            return f"{self.column}=in.({','.join(self.values)})"
        return f"{self.column}={self.operator.value}.{self.values[0]}"


def _compare(actual: str, expected: str, operator: FilterOperator) -> bool:
    left: float | str
    right: float | str
    try:
        left, right = float(actual), float(expected)
    except ValueError:
        left, right = actual, expected

    if operator is FilterOperator.LT:
        return left < right
    if operator is FilterOperator.LTE:
        return left <= right
    if operator is FilterOperator.GT:
        return left > right
    return left >= right


def parse_filter(entity_type: str, expression: str) -> RowFilter:
    """Parse *expression* and check its column against *entity_type*.

    Raises
    ------
    InvalidFilterError
        On syntax errors, empty values or a column the entity does not have.
    """
    if not is_known_entity(entity_type):
        raise InvalidFilterError(f"Unknown entity type {entity_type!r}")

    match = _OPERATOR_RE.match(expression)
    if match is not None:
        column, op, raw_value = match.groups()
        operator = FilterOperator(op)
        if operator is FilterOperator.IN:
            list_match = _IN_LIST_RE.match(raw_value.strip())
            if list_match is None:
                raise InvalidFilterError(f"'in' filter needs a parenthesised list: {expression!r}")
            values = tuple(v.strip() for v in list_match.group(1).split(",") if v.strip())
        else:
            values = (raw_value.strip(),)
    else:
        match = _SHORTHAND_RE.match(expression)
        if match is None:
            raise InvalidFilterError(f"Cannot parse filter expression {expression!r}")
        column, raw_value = match.groups()
        operator = FilterOperator.EQ
        values = (raw_value.strip().strip("'\""),)

    if not values or any(not v for v in values):
        raise InvalidFilterError(f"Filter {expression!r} has an empty value")

    columns = entity_columns(entity_type)
    if column not in columns:
        raise InvalidFilterError(
            f"Column {column!r} is not filterable on {entity_type!r} (allowed: {', '.join(sorted(columns))})"
        )
    return RowFilter(column=column, operator=operator, values=values)
