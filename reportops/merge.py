"""Primary/override merge and the async report runner.

Some metrics cannot be trusted from the primary query's joins (OTS invoices,
CRM trial counts). They are computed by independent co-queries keyed by the
same dimension path, and their values *overwrite* the primary ones. Ratios
are derived afterwards from the merged counts.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field, replace
from typing import Any, Awaitable, Callable, Mapping, Sequence

from loguru import logger

from reportops.builder import BuiltQuery, DimensionColumn, QuerySpec, build_query, validate_options
from reportops.keys import DimensionKey, Normalizer, display_value, identity
from reportops.metrics import Ratio, derive_ratios, read_counters
from reportops.models import QueryOptions, Row
from reportops.util import to_number

Executor = Callable[[str, Sequence[Any]], Awaitable[list[dict[str, Any]]]]

CRM = "crm"
ANALYTICS = "analytics"


@dataclass(frozen=True)
class OverrideSource:
    name: str
    fields: Mapping[str, str]
    rows: Sequence[Mapping[str, Any]] = ()
    column: str = "dimension_value"
    normalize: Normalizer | None = None
    # Applied to both sides before lookup (e.g. "adwords" and "Google" -> "google")
    match: Normalizer = identity
    append_unmatched: bool = False


@dataclass(frozen=True)
class OverrideEntry:
    attribute: str
    metrics: dict[str, int | float]


@dataclass(frozen=True)
class ReportResult:
    rows: list[Row]
    truncated: bool = False

    def to_dicts(self) -> list[dict[str, Any]]:
        return [r.to_dict() for r in self.rows]


def lookup_key(key: DimensionKey, match: Normalizer) -> DimensionKey:
    dimension, value = key[-1]
    return key.parent.child(dimension, match(value))


def build_override_map(
    rows: Sequence[Mapping[str, Any]],
    column: str,
    parent_key: DimensionKey,
    dimension: str,
    fields: Mapping[str, str],
    normalize: Normalizer | None = None,
    match: Normalizer = identity,
) -> dict[DimensionKey, OverrideEntry]:
    """Override rows keyed exactly like the primary rows they correct.

    Raw values that normalize to the same display value are summed.
    """
    out: dict[DimensionKey, OverrideEntry] = {}
    for row in rows:
        attribute = display_value(row.get(column), normalize)
        key = parent_key.child(dimension, match(attribute))
        counts = read_counters(row, fields)
        entry = out.get(key)
        if entry is None:
            out[key] = OverrideEntry(attribute, counts)
        else:
            for name, value in counts.items():
                entry.metrics[name] = to_number(entry.metrics.get(name, 0) + value)
    return out


def rows_from_records(
    records: Sequence[Mapping[str, Any]],
    options: QueryOptions,
    column: DimensionColumn,
    counters: Mapping[str, str],
) -> list[Row]:
    """One Row per distinct display value, in first-seen (SQL) order."""
    parent = options.parent_key
    dimension = options.current_dimension
    has_children = options.has_more_dimensions and not column.leaf

    by_key: dict[DimensionKey, Row] = {}
    for record in records:
        label = display_value(record.get("dimension_value"), column.normalize)
        if label == "Unknown" and column.unknown != "Unknown":
            label = column.unknown
        if record.get("dimension_id") not in (None, ""):
            key_value = str(record["dimension_id"])
        else:
            key_value = label
        key = parent.child(dimension, key_value)
        attribute = column.attribute(record) if column.attribute else label
        metrics = read_counters(record, counters)

        existing = by_key.get(key)
        if existing is None:
            by_key[key] = Row(key, attribute, options.depth, has_children, metrics)
            continue
        # NULL and '' (or differently cased values) collapse into one bucket
        summed = {n: to_number(existing.metrics.get(n, 0) + v) for n, v in metrics.items()}
        by_key[key] = replace(existing, metrics=summed)
    return list(by_key.values())


def merge_results(
    primary: Sequence[Row],
    overrides: Sequence[OverrideSource],
    options: QueryOptions,
    ratios: Sequence[Ratio] = (),
) -> list[Row]:
    parent = options.parent_key
    dimension = options.current_dimension
    has_children = options.has_more_dimensions

    maps = [
        (
            source,
            build_override_map(
                source.rows, source.column, parent, dimension, source.fields, source.normalize, source.match
            ),
        )
        for source in overrides
    ]

    counter_names: set[str] = set()
    merged: list[Row] = []
    matched: list[set[DimensionKey]] = [set() for _ in maps]
    for row in primary:
        metrics = dict(row.metrics)
        counter_names.update(metrics)
        for i, (source, omap) in enumerate(maps):
            entry = omap.get(lookup_key(row.key, source.match))
            if entry is not None:
                matched[i].add(lookup_key(row.key, source.match))
            for name in source.fields:
                metrics[name] = entry.metrics.get(name, 0) if entry else 0
        merged.append(replace(row, metrics=derive_ratios(metrics, ratios)))

    for i, (source, omap) in enumerate(maps):
        if not source.append_unmatched:
            continue
        for key, entry in omap.items():
            if key in matched[i]:
                continue
            metrics: dict[str, Any] = {name: 0 for name in counter_names}
            for other in overrides:
                metrics.update({name: 0 for name in other.fields})
            metrics.update(entry.metrics)
            merged.append(
                Row(
                    parent.child(dimension, entry.attribute),
                    entry.attribute,
                    options.depth,
                    has_children,
                    derive_ratios(metrics, ratios),
                )
            )
    return merged


# ── report runner ───────────────────────────────────────────────

Records = Sequence[Mapping[str, Any]]
Plan = list[tuple[str, BuiltQuery | None]]


@dataclass(frozen=True)
class OverrideQuery:
    source: OverrideSource
    store: str
    # None when the current dimension has no equivalent in the override store
    build: Callable[[QueryOptions], BuiltQuery | None]

    def plan(self, options: QueryOptions) -> Plan:
        return [(self.store, self.build(options))]

    def rows(self, options: QueryOptions, records: Records, results: Sequence[Records]) -> Records:
        return results[0]


@dataclass(frozen=True)
class AttributedOverride:
    """Override rows computed in Python from several co-queries.

    ``combine`` sees the primary records and every co-query's rows (in
    ``queries`` order) and returns rows shaped for ``source``: a
    ``dimension_value`` plus the source's fields.
    """

    source: OverrideSource
    queries: tuple[tuple[str, Callable[[QueryOptions], BuiltQuery | None]], ...]
    combine: Callable[[QueryOptions, Records, Sequence[Records]], list[dict[str, Any]]]

    def plan(self, options: QueryOptions) -> Plan:
        return [(store, build(options)) for store, build in self.queries]

    def rows(self, options: QueryOptions, records: Records, results: Sequence[Records]) -> Records:
        return self.combine(options, records, results)


@dataclass(frozen=True)
class ReportDefinition:
    name: str
    store: str
    spec: QuerySpec
    counters: Mapping[str, str]
    ratios: tuple[Ratio, ...] = ()
    overrides: tuple[OverrideQuery | AttributedOverride, ...] = field(default_factory=tuple)

    def build(self, options: QueryOptions) -> BuiltQuery:
        return build_query(self.spec, options)


async def _no_rows() -> list[dict[str, Any]]:
    return []


async def run_report(
    report: ReportDefinition,
    options: QueryOptions,
    executors: Mapping[str, Executor],
) -> ReportResult:
    """Run the primary query and every co-query together; any failure fails the report."""
    column = validate_options(report.spec, options)
    primary = report.build(options)
    plans = [o.plan(options) for o in report.overrides]
    co_queries = [item for plan in plans for item in plan]

    logger.debug(
        "{} depth={} dims={} co-queries={}",
        report.name,
        options.depth,
        ",".join(options.dimensions),
        sum(1 for _, b in co_queries if b is not None),
    )

    results = await asyncio.gather(
        executors[report.store](primary.sql, primary.params),
        *[
            executors[store](built.sql, built.params) if built is not None else _no_rows()
            for store, built in co_queries
        ],
    )
    records, pending = results[0], list(results[1:])

    rows = rows_from_records(records, options, column, report.counters)
    sources = []
    for override, plan in zip(report.overrides, plans):
        chunk, pending = pending[: len(plan)], pending[len(plan):]
        sources.append(replace(override.source, rows=override.rows(options, records, chunk)))
    merged = merge_results(rows, sources, options, report.ratios)
    return ReportResult(merged, truncated=len(records) >= options.limit)
