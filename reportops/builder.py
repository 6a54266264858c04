"""Depth-based SQL builder shared by every report.

A report is described once as a :class:`QuerySpec` (dimension -> column map,
metric select list, sortable metrics, FROM/JOIN template, base filters) and
:func:`build_query` turns a :class:`~reportops.models.QueryOptions` into a
parameterized statement for the requested depth:

- only the current dimension is selected and grouped;
- ancestors become equality filters (``Unknown`` -> NULL or empty);
- ordering is ``<sort column> <direction>, <group column> ASC``;
- the row count is capped with ``LIMIT``.

MariaDB statements use ``%s`` (aiomysql), PostgreSQL ones ``$n`` (asyncpg).
Literal ``%`` in MariaDB fragments must be written ``%%``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Any, Callable, Mapping, Sequence

from reportops.errors import QueryBuildError
from reportops.keys import UNKNOWN, Normalizer
from reportops.models import DateRange, QueryOptions
from reportops.util import iso_date, mariadb_datetime, title_case


class Placeholder(str, Enum):
    QMARK = "qmark"
    NUMERIC = "numeric"

    def render(self, position: int) -> str:
        # position is 1-based
        return f"${position}" if self is Placeholder.NUMERIC else "%s"


@dataclass(frozen=True)
class DimensionColumn:
    expr: str
    # Display expression when it differs from the grouped column (enriched ids)
    label: str | None = None
    filter_expr: str | None = None
    null_check: str | None = None
    normalize: Normalizer | None = title_case
    unknown: str = UNKNOWN
    joins: tuple[str, ...] = ()
    extra_select: tuple[str, ...] = ()
    # Expands one filter value into the stored variants (e.g. google -> google, adwords)
    expand: Callable[[str], Sequence[str]] | None = None
    chronological: bool = False
    # Leaf-only dimensions (one row per record) with a composed label
    leaf: bool = False
    attribute: Callable[[Mapping[str, Any]], str] | None = None

    @property
    def enriched(self) -> bool:
        return self.label is not None

    @property
    def filter_column(self) -> str:
        return self.filter_expr or self.expr

    def unknown_condition(self, placeholder: Placeholder) -> str:
        # "Unknown" covers both NULL and '' at the parent level
        if self.null_check:
            return self.null_check
        col = self.filter_column
        text = f"{col}::text" if placeholder is Placeholder.NUMERIC else f"CAST({col} AS CHAR)"
        return f"({col} IS NULL OR {text} = '')"


@dataclass(frozen=True)
class BuiltQuery:
    sql: str
    params: tuple[Any, ...]

    def as_dict(self) -> dict[str, Any]:
        return {"sql": self.sql, "params": list(self.params)}


class FilterBuilder:
    """Parent-filter WHERE fragments for one dimension map."""

    def __init__(self, dimension_map: Mapping[str, DimensionColumn], placeholder: Placeholder) -> None:
        self.dimension_map = dimension_map
        self.placeholder = placeholder

    def build(
        self,
        dimensions: Sequence[str],
        parent_filters: Mapping[str, str] | None,
        offset: int = 0,
    ) -> tuple[list[str], list[Any]]:
        if not parent_filters:
            return [], []

        ordered = [d for d in dimensions if d in parent_filters]
        ordered += [d for d in parent_filters if d not in ordered]

        conditions: list[str] = []
        params: list[Any] = []
        for dim in ordered:
            column = self.dimension_map.get(dim)
            if column is None:
                raise QueryBuildError(f"Unknown dimension in parent filter: {dim}")
            value = parent_filters[dim]
            if value in (UNKNOWN, column.unknown, ""):
                conditions.append(column.unknown_condition(self.placeholder))
                continue

            values = list(column.expand(value)) if column.expand else [value]
            refs = []
            for v in values:
                params.append(v)
                refs.append(self.placeholder.render(offset + len(params)))
            if len(refs) == 1:
                conditions.append(f"{column.filter_column} = {refs[0]}")
            else:
                conditions.append(f"{column.filter_column} IN ({', '.join(refs)})")
        return conditions, params


def mariadb_date_params(date_range: DateRange) -> tuple[str, str]:
    return mariadb_datetime(date_range.start), mariadb_datetime(date_range.end, end_of_day=True)


def postgres_date_params(date_range: DateRange) -> tuple[date, date]:
    # asyncpg wants date objects for ::date parameters
    return date_range.start, date_range.end


def iso_date_params(date_range: DateRange) -> tuple[str, str]:
    return iso_date(date_range.start), iso_date(date_range.end)


@dataclass(frozen=True)
class QuerySpec:
    name: str
    dimensions: Mapping[str, DimensionColumn]
    metrics: Sequence[str]
    from_clause: str
    date_clause: str
    placeholder: Placeholder
    sortable: Mapping[str, str] = field(default_factory=dict)
    default_sort: str = ""
    where: Sequence[str] = ()
    # Alternatives: a group is kept when any one of them holds
    having: Sequence[str] = ()
    date_params: Callable[[DateRange], tuple[Any, ...]] = mariadb_date_params
    # Values for %s placeholders written inline in ``metrics`` / ``having`` (MariaDB only)
    select_params: tuple[Any, ...] = ()
    having_params: tuple[Any, ...] = ()
    ordered: bool = True
    # Grouped alongside the current dimension
    group_by: Sequence[str] = ()

    def column(self, dimension: str) -> DimensionColumn:
        column = self.dimensions.get(dimension)
        if column is None:
            raise QueryBuildError(f"Unknown dimension for {self.name}: {dimension}")
        return column

    def filter_builder(self) -> FilterBuilder:
        return FilterBuilder(self.dimensions, self.placeholder)


def validate_options(spec: QuerySpec, options: QueryOptions) -> DimensionColumn:
    options.validate_depth()
    for dim in options.dimensions[: options.depth + 1]:
        spec.column(dim)
    return spec.column(options.current_dimension)


def build_query(spec: QuerySpec, options: QueryOptions) -> BuiltQuery:
    column = validate_options(spec, options)

    # Positional order: SELECT params, date range, parent filters, HAVING params
    params: list[Any] = list(spec.select_params)
    date_values = spec.date_params(options.date_range)
    date_clause = spec.date_clause.format(
        start=spec.placeholder.render(len(params) + 1),
        end=spec.placeholder.render(len(params) + 2),
    )
    params.extend(date_values)

    filters, filter_params = spec.filter_builder().build(
        options.dimensions, options.parent_filters, offset=len(params)
    )
    params.extend(filter_params)
    params.extend(spec.having_params)

    if column.enriched:
        dimension_select = [f"{column.expr}::text AS dimension_id", f"{column.label} AS dimension_value"]
    else:
        dimension_select = [f"{column.expr} AS dimension_value"]

    where = [date_clause, *spec.where, *filters]
    lines = [
        "SELECT",
        "  " + ",\n  ".join([*dimension_select, *column.extra_select, *spec.metrics]),
        spec.from_clause.strip(),
        *column.joins,
        "WHERE " + "\n  AND ".join(where),
        "GROUP BY " + ", ".join([column.expr, *spec.group_by]),
    ]
    if spec.having:
        lines.append("HAVING " + " OR ".join(f"({h})" for h in spec.having))

    if spec.ordered:
        if column.chronological:
            lines.append(f"ORDER BY {column.expr} DESC")
        else:
            sort_column = spec.sortable.get(options.sort_by or "", spec.default_sort)
            if sort_column:
                lines.append(f"ORDER BY {sort_column} {options.sort_direction}, {column.expr} ASC")
            else:
                lines.append(f"ORDER BY {column.expr} ASC")
        lines.append(f"LIMIT {options.limit}")

    return BuiltQuery("\n".join(lines), tuple(params))
