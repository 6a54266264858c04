"""Composite row keys.

Rows are identified by their path from the tree root: an ordered tuple of
``(dimension, value)`` pairs. Lookups between primary and override result
sets compare these tuples structurally; the ``::``-joined string form exists
only for the HTTP response and for keys sent back by clients.
"""

from __future__ import annotations

from typing import Any, Callable, Iterable, Mapping, Sequence

from reportops.util import title_case

KEY_SEPARATOR = "::"
UNKNOWN = "Unknown"

Normalizer = Callable[[str], str]


def identity(value: str) -> str:
    return value


def display_value(raw: Any, normalize: Normalizer | None = title_case) -> str:
    """Null/empty becomes ``Unknown``, anything else goes through ``normalize``."""
    if raw is None or raw == "":
        return UNKNOWN
    value = str(raw)
    return normalize(value) if normalize else value


class DimensionKey(tuple):
    """Immutable ``((dimension, value), ...)`` path."""

    __slots__ = ()

    def __new__(cls, parts: Iterable[tuple[str, str]] = ()) -> "DimensionKey":
        return super().__new__(cls, tuple((str(d), str(v)) for d, v in parts))

    @classmethod
    def from_parent_filters(
        cls, dimensions: Sequence[str], parent_filters: Mapping[str, str] | None
    ) -> "DimensionKey":
        # Dimension order, not the mapping's insertion order
        filters = parent_filters or {}
        return cls((d, filters[d]) for d in dimensions if d in filters)

    @classmethod
    def parse(cls, key: str, dimensions: Sequence[str]) -> "DimensionKey":
        segments = key.split(KEY_SEPARATOR)
        return cls(zip(dimensions, segments))

    @property
    def depth(self) -> int:
        return len(self) - 1

    @property
    def values(self) -> tuple[str, ...]:
        return tuple(v for _, v in self)

    @property
    def dimensions(self) -> tuple[str, ...]:
        return tuple(d for d, _ in self)

    @property
    def parent(self) -> "DimensionKey":
        return DimensionKey(self[:-1])

    def child(self, dimension: str, value: str) -> "DimensionKey":
        return DimensionKey((*self, (dimension, value)))

    def is_prefix_of(self, other: "DimensionKey") -> bool:
        return len(self) < len(other) and tuple(other[: len(self)]) == tuple(self)

    def as_filters(self) -> dict[str, str]:
        return dict(self)

    def serialize(self) -> str:
        return KEY_SEPARATOR.join(self.values)

    def __repr__(self) -> str:
        return f"DimensionKey({self.serialize()!r})"
