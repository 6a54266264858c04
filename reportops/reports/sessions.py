"""Flat session query: one statement grouped by every requested dimension.

The tree is assembled afterwards by :func:`reportops.session_tree.build_session_tree`,
which is why only raw counters are selected here.
"""

from __future__ import annotations

from reportops.builder import BuiltQuery, DimensionColumn, FilterBuilder, Placeholder, postgres_date_params
from reportops.errors import QueryBuildError
from reportops.models import QueryOptions

SESSION_TABLE = "remote_session_tracker.session_entries"


def _col(column: str) -> DimensionColumn:
    expr = f"se.{column}"
    return DimensionColumn(expr, null_check=f"({expr} IS NULL OR {expr}::text = '')", normalize=None)


def _enriched(column: str, id_column: str, name_column: str) -> DimensionColumn:
    expr = f"se.{column}"
    name = (
        f"(SELECT MAX(m.{name_column}) FROM merged_ads_spending m"
        f" WHERE m.{id_column}::text = {expr}::text)"
    )
    return DimensionColumn(
        expr,
        label=f"COALESCE({name}, {expr}::text)",
        filter_expr=f"{expr}::text",
        null_check=f"({expr} IS NULL OR {expr}::text = '')",
        normalize=None,
    )


DIMENSIONS: dict[str, DimensionColumn] = {
    "entryUrlPath": _col("entry_url_path"),
    "entryPageType": _col("entry_page_type"),
    "entryUtmSource": _col("entry_utm_source"),
    "entryCampaign": _enriched("entry_utm_campaign", "campaign_id", "campaign_name"),
    "entryAdset": _enriched("entry_utm_content", "adset_id", "adset_name"),
    "entryAd": _enriched("entry_utm_medium", "ad_id", "ad_name"),
    "entryUtmTerm": _col("entry_utm_term"),
    "entryKeyword": _col("entry_keyword"),
    "entryPlacement": _col("entry_placement"),
    "entryReferrer": _col("entry_referrer"),
    "funnelId": _col("ff_funnel_id"),
    "entryCountryCode": _col("entry_country_code"),
    "entryDeviceType": _col("entry_device_type"),
    "entryOsName": _col("entry_os_name"),
    "entryBrowserName": _col("entry_browser_name"),
    "visitNumber": _col("visit_number"),
    "date": DimensionColumn(
        "se.session_start::date",
        filter_expr="se.session_start::date::text",
        normalize=None,
        chronological=True,
    ),
}

ACTIVE = "se.entry_active_time_s IS NOT NULL"

COUNTER_COLUMNS = (
    "COUNT(*) AS page_views",
    "COUNT(DISTINCT se.ff_visitor_id) AS unique_visitors",
    f"COUNT(*) FILTER (WHERE {ACTIVE} AND se.entry_active_time_s < 5) AS bounced_count",
    f"COUNT(*) FILTER (WHERE {ACTIVE}) AS active_time_count",
    "COALESCE(SUM(se.entry_active_time_s), 0) AS total_active_time",
    "COUNT(*) FILTER (WHERE se.entry_hero_scroll_passed = true) AS scroll_past_hero",
    "COUNT(*) FILTER (WHERE se.entry_form_view = true) AS form_views",
    "COUNT(*) FILTER (WHERE se.entry_form_started = true) AS form_starters",
)


def build_session_flat_query(options: QueryOptions) -> BuiltQuery:
    if not options.dimensions:
        raise QueryBuildError("dimensions array is required")

    selects: list[str] = []
    group_by: list[str] = []
    for dim in options.dimensions:
        column = DIMENSIONS.get(dim)
        if column is None:
            raise QueryBuildError(f"Unknown session dimension: {dim}")
        if column.enriched:
            selects.append(f'{column.label} AS "{dim}"')
            selects.append(f'{column.expr}::text AS "_{dim}_id"')
        else:
            selects.append(f'{column.expr} AS "{dim}"')
        group_by.append(column.expr)

    params: list = list(postgres_date_params(options.date_range))
    where = ["se.session_start >= $1::date AND se.session_start < ($2::date + interval '1 day')"]
    filters, filter_params = FilterBuilder(DIMENSIONS, Placeholder.NUMERIC).build(
        options.dimensions, options.parent_filters, offset=len(params)
    )
    where.extend(filters)
    params.extend(filter_params)

    sql = "\n".join(
        (
            "SELECT",
            "  " + ",\n  ".join([*selects, *COUNTER_COLUMNS]),
            f"FROM {SESSION_TABLE} se",
            "WHERE " + "\n  AND ".join(where),
            "GROUP BY " + ", ".join(group_by),
            "ORDER BY page_views DESC",
            f"LIMIT {options.limit}",
        )
    )
    return BuiltQuery(sql, tuple(params))
