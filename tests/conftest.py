from __future__ import annotations

from datetime import date
from typing import Any, Sequence

import pytest

from reportops.keys import DimensionKey
from reportops.models import DateRange, QueryOptions, Row


class FakeExecutor:
    """Records every statement; answers with the rows of the first matching needle."""

    def __init__(self, responses: Sequence[tuple[str, list[dict[str, Any]]]] = (), error: Exception | None = None):
        self.responses = list(responses)
        self.error = error
        self.calls: list[tuple[str, tuple[Any, ...]]] = []

    async def __call__(self, sql: str, params: Sequence[Any] = ()) -> list[dict[str, Any]]:
        self.calls.append((sql, tuple(params)))
        if self.error is not None:
            raise self.error
        for needle, rows in self.responses:
            if needle in sql:
                return [dict(r) for r in rows]
        return []


@pytest.fixture
def january() -> DateRange:
    return DateRange(date(2026, 1, 1), date(2026, 1, 31))


@pytest.fixture
def options(january):
    def make(dimensions, depth=0, parent_filters=None, **kwargs) -> QueryOptions:
        return QueryOptions(
            date_range=january,
            dimensions=tuple(dimensions),
            depth=depth,
            parent_filters=parent_filters or {},
            **kwargs,
        )

    return make


def make_row(key: str, dimensions: Sequence[str], *, has_children: bool = True, children=None, **metrics) -> Row:
    k = DimensionKey.parse(key, dimensions)
    return Row(k, k.values[-1], k.depth, has_children, metrics, children)
