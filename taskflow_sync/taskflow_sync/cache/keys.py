"""Cache keys for memoised query results.

A key is an ordered ``(namespace, params)`` tuple.  Its string form joins
the parts with ``:`` -- ``tasks:p-123:grouped`` is namespace ``tasks`` with
params ``("p-123", "grouped")``.

Params may be templates such as ``{project_id}`` that are filled in from a
context mapping (the triggering row, or a subscription's filter values).
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

_SEPARATOR = ":"
_PLACEHOLDER_RE = re.compile(r"\{([a-zA-Z_][a-zA-Z0-9_]*)\}")


class UnresolvedPlaceholderError(KeyError):
    """A template param references a name missing from the context."""


@dataclass(frozen=True, slots=True)
class CacheKey:
    """Identifies one cached query result.

    Two keys are equal iff the namespace and every param match.
    """

    namespace: str
    params: tuple[str, ...] = ()

    @classmethod
    def parse(cls, text: str) -> CacheKey:
        """Parse ``"namespace:param:param"`` into a key."""
        if not text or not text.strip():
            raise ValueError("Cache key must not be empty")
        namespace, *params = text.strip().split(_SEPARATOR)
        if not namespace:
            raise ValueError(f"Cache key {text!r} has an empty namespace")
        return cls(namespace, tuple(params))

    @classmethod
    def of(cls, namespace: str, *params: Any) -> CacheKey:
        """Build a key from arbitrary params, coerced to strings."""
        return cls(namespace, tuple(str(p) for p in params))

    @property
    def placeholders(self) -> frozenset[str]:
        """Names referenced by ``{name}`` templates in the params."""
        names: set[str] = set()
        for param in self.params:
            names.update(_PLACEHOLDER_RE.findall(param))
        return frozenset(names)

    @property
    def is_template(self) -> bool:
        return bool(self.placeholders)

    def resolve(self, context: Mapping[str, Any]) -> CacheKey:
        """Fill every ``{name}`` placeholder from *context*.

        Raises
        ------
        UnresolvedPlaceholderError
            If a placeholder is missing from *context* or maps to ``None``.
        """
        if not self.is_template:
            return self

        def _sub(match: re.Match[str]) -> str:
            name = match.group(1)
            value = context.get(name)
            if value is None:
                raise UnresolvedPlaceholderError(name)
            return str(value)

        return CacheKey(self.namespace, tuple(_PLACEHOLDER_RE.sub(_sub, p) for p in self.params))

    def static_prefix(self) -> CacheKey:
        """Return the longest leading part of the key free of placeholders."""
        fixed: list[str] = []
        for param in self.params:
            if _PLACEHOLDER_RE.search(param):
                break
            fixed.append(param)
        return CacheKey(self.namespace, tuple(fixed))

    def matches_prefix(self, prefix: CacheKey) -> bool:
        """Return ``True`` if *prefix* is this key or a leading part of it."""
        if self.namespace != prefix.namespace:
            return False
        return self.params[: len(prefix.params)] == prefix.params

    def __str__(self) -> str:
        return _SEPARATOR.join((self.namespace, *self.params))


@dataclass(frozen=True, slots=True)
class InvalidationTarget:
    """One entry of a subscription's invalidation list.

    A trailing ``*`` (``"tasks:upcoming*"`` or ``"tasks:*"``) invalidates
    every key under the prefix instead of the single exact key.
    """

    key: CacheKey
    prefix: bool = False

    @classmethod
    def parse(cls, text: str) -> InvalidationTarget:
        raw = text.strip()
        prefix = raw.endswith("*")
        if prefix:
            raw = raw[:-1].rstrip(_SEPARATOR)
        return cls(CacheKey.parse(raw), prefix=prefix)

    def __str__(self) -> str:
        return f"{self.key}*" if self.prefix else str(self.key)
