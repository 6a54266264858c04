from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import date
from typing import Any, Literal, Mapping

from reportops.errors import QueryBuildError
from reportops.keys import DimensionKey
from reportops.util import clamp_limit

SortDirection = Literal["ASC", "DESC"]

DEFAULT_QUERY_LIMIT = 1000


@dataclass(frozen=True)
class DateRange:
    start: date
    end: date

    def __post_init__(self) -> None:
        if self.start > self.end:
            raise QueryBuildError(f"Invalid date range: {self.start} is after {self.end}")


@dataclass(frozen=True)
class QueryOptions:
    date_range: DateRange
    dimensions: tuple[str, ...]
    depth: int = 0
    parent_filters: Mapping[str, str] = field(default_factory=dict)
    sort_by: str | None = None
    sort_direction: SortDirection = "DESC"
    limit: int = DEFAULT_QUERY_LIMIT

    def __post_init__(self) -> None:
        object.__setattr__(self, "dimensions", tuple(self.dimensions))
        object.__setattr__(self, "parent_filters", dict(self.parent_filters or {}))
        object.__setattr__(self, "limit", clamp_limit(self.limit))
        direction = str(self.sort_direction or "DESC").upper()
        if direction not in ("ASC", "DESC"):
            raise QueryBuildError(f"Invalid sort direction: {self.sort_direction}")
        object.__setattr__(self, "sort_direction", direction)

    @property
    def current_dimension(self) -> str:
        return self.dimensions[self.depth]

    @property
    def has_more_dimensions(self) -> bool:
        return self.depth < len(self.dimensions) - 1

    @property
    def parent_key(self) -> DimensionKey:
        return DimensionKey.from_parent_filters(self.dimensions[: self.depth], self.parent_filters)

    def validate_depth(self) -> None:
        if self.depth < 0 or self.depth >= len(self.dimensions):
            raise QueryBuildError(
                f"Invalid depth: {self.depth}. Must be 0 to {len(self.dimensions) - 1}."
            )

    def for_branch(self, key: DimensionKey) -> "QueryOptions":
        """Options for fetching the children of the row at ``key``."""
        return replace(self, depth=len(key), parent_filters=key.as_filters())


@dataclass(frozen=True)
class Row:
    key: DimensionKey
    attribute: str
    depth: int
    has_children: bool
    metrics: Mapping[str, Any]
    children: tuple["Row", ...] | None = None

    def with_children(self, children: tuple["Row", ...] | list["Row"]) -> "Row":
        return replace(self, children=tuple(children))

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "key": self.key.serialize(),
            "attribute": self.attribute,
            "depth": self.depth,
            "hasChildren": self.has_children,
            "metrics": dict(self.metrics),
        }
        if self.children is not None:
            out["children"] = [c.to_dict() for c in self.children]
        return out

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], dimensions: tuple[str, ...] | list[str]) -> "Row":
        children = data.get("children")
        return cls(
            key=DimensionKey.parse(str(data["key"]), dimensions),
            attribute=str(data.get("attribute", "")),
            depth=int(data["depth"]),
            has_children=bool(data.get("hasChildren", False)),
            metrics=dict(data.get("metrics") or {}),
            children=None if children is None else tuple(cls.from_dict(c, dimensions) for c in children),
        )
