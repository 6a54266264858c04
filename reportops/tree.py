"""Pure helpers for the hierarchical report tree.

Nothing here mutates its input: every update returns new lists and only the
rows on the path to a change are rebuilt, so untouched subtrees keep their
identity.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field, replace
from typing import Awaitable, Callable, Iterable, Sequence

from loguru import logger

from reportops.errors import AppError, normalize_error
from reportops.keys import KEY_SEPARATOR, DimensionKey
from reportops.models import Row

FetchChildren = Callable[[dict[str, str], int], Awaitable[Sequence[Row]]]


@dataclass(frozen=True)
class BranchResult:
    """Outcome of fetching one branch's children."""

    key: DimensionKey
    children: tuple[Row, ...] = ()
    error: AppError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, key: DimensionKey, children: Iterable[Row]) -> "BranchResult":
        return cls(key, tuple(children))

    @classmethod
    def failure(cls, key: DimensionKey, error: BaseException) -> "BranchResult":
        return cls(key, (), normalize_error(error))


@dataclass(frozen=True)
class RestoreResult:
    rows: list[Row]
    # Keys that were expanded successfully, in request order
    valid_keys: list[DimensionKey] = field(default_factory=list)
    failed: list[BranchResult] = field(default_factory=list)


def update_has_children(rows: Sequence[Row], dimension_count: int) -> list[Row]:
    out = []
    for row in rows:
        children = row.children
        if children:
            children = tuple(update_has_children(children, dimension_count))
        out.append(replace(row, has_children=row.depth < dimension_count - 1, children=children))
    return out


def update_tree_children(rows: Sequence[Row], parent_key: DimensionKey, children: Sequence[Row]) -> list[Row]:
    return _rebuild(rows, {parent_key: tuple(children)})


def update_tree_with_results(rows: Sequence[Row], results: Iterable[BranchResult]) -> list[Row]:
    """Attach children for every successful result; failed branches stay as they were."""
    updates = {r.key: r.children for r in results if r.ok}
    if not updates:
        return list(rows)
    return _rebuild(rows, updates)


def _rebuild(rows: Sequence[Row], updates: dict[DimensionKey, tuple[Row, ...]]) -> list[Row]:
    if not rows or not updates:
        return list(rows)
    # Bucket deeper updates under their ancestor at this level, once per level
    size = len(rows[0].key)
    below: dict[DimensionKey, dict[DimensionKey, tuple[Row, ...]]] = {}
    for key, children in updates.items():
        if len(key) > size:
            below.setdefault(DimensionKey(key[:size]), {})[key] = children

    out = []
    for row in rows:
        if row.key in updates:
            out.append(replace(row, children=updates[row.key]))
        elif row.children and row.key in below:
            out.append(replace(row, children=tuple(_rebuild(row.children, below[row.key]))))
        else:
            out.append(row)
    return out


def find_row(rows: Sequence[Row], key: DimensionKey) -> Row | None:
    for row in rows:
        if row.key == key:
            return row
        if row.children and row.key.is_prefix_of(key):
            return find_row(row.children, key)
    return None


def parse_key_to_parent_filters(key: str | DimensionKey, dimensions: Sequence[str]) -> dict[str, str]:
    """Map key segments to dimensions by position; extra segments are dropped."""
    if not isinstance(key, DimensionKey):
        key = DimensionKey.parse(key, dimensions)
    return key.as_filters()


def group_keys_by_depth(keys: Iterable[str | DimensionKey]) -> dict[int, list]:
    groups: dict[int, list] = {}
    for key in keys:
        if isinstance(key, DimensionKey):
            depth = key.depth
        else:
            depth = key.count(KEY_SEPARATOR)
        groups.setdefault(depth, []).append(key)
    return groups


async def fetch_branch(key: DimensionKey, fetch_children: FetchChildren) -> BranchResult:
    try:
        children = await fetch_children(key.as_filters(), len(key))
    except Exception as e:
        logger.warning("Failed to load children for {}: {}", key.serialize(), e)
        return BranchResult.failure(key, e)
    return BranchResult.success(key, children)


async def restore_expanded_rows(
    saved_keys: Iterable[str | DimensionKey],
    rows: Sequence[Row],
    dimensions: Sequence[str],
    fetch_children: FetchChildren,
    *,
    skip_if_children_exist: bool = False,
) -> RestoreResult:
    """Re-expand saved keys, shallowest depth first.

    A depth is fetched concurrently once the previous depth is attached, so a
    child key always finds its parent row. Keys whose row is gone (filters
    or dimensions changed) and keys whose fetch failed are left collapsed.
    """
    parsed = [k if isinstance(k, DimensionKey) else DimensionKey.parse(k, dimensions) for k in saved_keys]
    # Only keys that can still have children under the current dimensions
    parsed = [k for k in parsed if 0 < len(k) < len(dimensions)]

    tree = list(rows)
    restored: set[DimensionKey] = set()
    failed: list[BranchResult] = []

    for depth in sorted(group_keys_by_depth(parsed)):
        pending = []
        for key in group_keys_by_depth(parsed)[depth]:
            row = find_row(tree, key)
            if row is None or not row.has_children:
                continue
            if skip_if_children_exist and row.children:
                restored.add(key)
                continue
            pending.append(key)

        results = await asyncio.gather(*(fetch_branch(k, fetch_children) for k in pending))
        tree = update_tree_with_results(tree, results)
        for result in results:
            if result.ok:
                restored.add(result.key)
            else:
                failed.append(result)

    valid_keys = []
    for key in parsed:
        if key in restored and key not in valid_keys:
            valid_keys.append(key)
    return RestoreResult(tree, valid_keys, failed)
