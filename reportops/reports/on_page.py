"""On-page analysis: page views from the analytics store, trials from the CRM.

Ratios are derived in Python from raw counters, never from SQL ROUND/AVG.
For dimensions the CRM can also group by, trial and approval counts come
from a MariaDB co-query and replace whatever the analytics side says.
"""

from __future__ import annotations

from dataclasses import replace
from typing import Any, Mapping, Sequence

from reportops.builder import (
    BuiltQuery,
    DimensionColumn,
    Placeholder,
    QuerySpec,
    build_query,
    postgres_date_params,
)
from reportops.keys import UNKNOWN, identity
from reportops.metrics import Ratio
from reportops.merge import ANALYTICS, CRM, AttributedOverride, OverrideSource, ReportDefinition
from reportops.models import QueryOptions
from reportops.reports import crm
from reportops.reports.tracking import tracking_tuple
from reportops.util import to_float

PAGE_VIEW_TABLE = "remote_session_tracker.event_page_view_enriched_v2"

CAMPAIGN_NAMES_JOIN = (
    "LEFT JOIN (SELECT DISTINCT campaign_id, campaign_name FROM merged_ads_spending) mas"
    " ON pv.utm_campaign::text = mas.campaign_id::text"
)


def _enriched(column: str, name_expr: str, joins: tuple[str, ...] = ()) -> DimensionColumn:
    return DimensionColumn(
        f"pv.{column}",
        label=f"COALESCE({name_expr} || ' (' || pv.{column}::text || ')', pv.{column}::text)",
        filter_expr=f"pv.{column}::text",
        normalize=None,
        joins=joins,
    )


def _raw(column: str) -> DimensionColumn:
    return DimensionColumn(f"pv.{column}", normalize=None)


DIMENSIONS: dict[str, DimensionColumn] = {
    "urlPath": _raw("url_path"),
    "pageType": _raw("page_type"),
    "utmSource": _raw("utm_source"),
    "campaign": _enriched("utm_campaign", "MAX(mas.campaign_name)", (CAMPAIGN_NAMES_JOIN,)),
    "adset": _enriched("adset_id", "MAX(pv.adset_name)"),
    "ad": _enriched("ad_id", "MAX(pv.ad_name)"),
    "utmContent": _raw("utm_content"),
    "utmMedium": _raw("utm_medium"),
    "deviceType": _raw("device_type"),
    "osName": _raw("os_name"),
    "browserName": _raw("browser_name"),
    "countryCode": _raw("country_code"),
    "date": DimensionColumn(
        "pv.created_at::date",
        filter_expr="pv.created_at::date::text",
        normalize=None,
        chronological=True,
    ),
}

ACTIVE = "pv.active_time_s IS NOT NULL"
BOUNCED = "pv.active_time_s IS NOT NULL AND pv.active_time_s < 5"

SORTABLE = {
    "pageViews": "COUNT(*)",
    "uniqueVisitors": "COUNT(DISTINCT pv.ff_visitor_id)",
    "bounceRate": f"COUNT(*) FILTER (WHERE {BOUNCED})::numeric / NULLIF(COUNT(*) FILTER (WHERE {ACTIVE}), 0)",
    "avgActiveTime": "AVG(pv.active_time_s)",
    "scrollPastHero": "COUNT(*) FILTER (WHERE pv.hero_scroll_passed = true)",
    "scrollRate": "COUNT(*) FILTER (WHERE pv.hero_scroll_passed = true)::numeric / NULLIF(COUNT(*), 0)",
    "formViews": "COUNT(*) FILTER (WHERE pv.form_view = true)",
    "formStarters": "COUNT(*) FILTER (WHERE pv.form_started = true)",
}

COUNTERS = {
    "pageViews": "page_views",
    "uniqueVisitors": "unique_visitors",
    "activeTimeCount": "active_time_count",
    "bouncedCount": "bounced_count",
    "totalActiveTime": "total_active_time",
    "scrollPastHero": "scroll_past_hero",
    "formViews": "form_views",
    "formStarters": "form_starters",
}

RATIOS = (
    Ratio("bounceRate", ("bouncedCount",), ("activeTimeCount",), 4),
    Ratio("avgActiveTime", ("totalActiveTime",), ("activeTimeCount",), 2),
    Ratio("scrollRate", ("scrollPastHero",), ("pageViews",), 4),
    Ratio("formViewRate", ("formViews",), ("pageViews",), 4),
    Ratio("formStartRate", ("formStarters",), ("formViews",), 4),
    Ratio("approvalRate", ("approved",), ("trials",), 4),
)

SPEC = QuerySpec(
    name="on-page",
    dimensions=DIMENSIONS,
    metrics=(
        "COUNT(*) AS page_views",
        "COUNT(DISTINCT pv.ff_visitor_id) AS unique_visitors",
        f"COUNT(*) FILTER (WHERE {ACTIVE}) AS active_time_count",
        f"COUNT(*) FILTER (WHERE {BOUNCED}) AS bounced_count",
        "COALESCE(SUM(pv.active_time_s), 0) AS total_active_time",
        "COUNT(*) FILTER (WHERE pv.hero_scroll_passed = true) AS scroll_past_hero",
        "COUNT(*) FILTER (WHERE pv.form_view = true) AS form_views",
        "COUNT(*) FILTER (WHERE pv.form_started = true) AS form_starters",
    ),
    from_clause=f"FROM {PAGE_VIEW_TABLE} pv",
    date_clause="pv.created_at >= {start}::date AND pv.created_at < ({end}::date + interval '1 day')",
    placeholder=Placeholder.NUMERIC,
    sortable=SORTABLE,
    default_sort="COUNT(*)",
    date_params=postgres_date_params,
)


def build_on_page_query(options: QueryOptions) -> BuiltQuery:
    return build_query(SPEC, options)


# ── CRM trial co-query ──────────────────────────────────────────

CRM_DIMENSIONS: dict[str, DimensionColumn] = {
    "utmSource": DimensionColumn(
        "LOWER(COALESCE(sr.source, 'unknown'))",
        filter_expr="LOWER(sr.source)",
        null_check="(sr.source IS NULL OR sr.source = '')",
        normalize=None,
        expand=crm.source_variants,
    ),
    "campaign": DimensionColumn("s.tracking_id_4", normalize=None),
    "adset": DimensionColumn("s.tracking_id_2", normalize=None),
    "ad": DimensionColumn("s.tracking_id", normalize=None),
    "date": DimensionColumn(
        "DATE_FORMAT(s.date_create, '%%Y-%%m-%%d')",
        filter_expr="DATE(s.date_create)",
        normalize=None,
    ),
}

CRM_FIELDS = {"trials": "trials", "approved": "approved"}

CRM_SPEC = QuerySpec(
    name="on-page-crm",
    dimensions=CRM_DIMENSIONS,
    metrics=(
        "COUNT(DISTINCT s.id) AS trials",
        "COUNT(DISTINCT CASE WHEN i.is_marked = 1 AND i.deleted = 0 THEN s.id END) AS approved",
    ),
    from_clause="\n".join(("FROM subscription s", crm.JOIN_TRIAL_INVOICE_INNER, crm.JOIN_SOURCE_SUB)),
    date_clause=crm.SUBSCRIPTION_DATE,
    placeholder=Placeholder.QMARK,
    where=(crm.NOT_DELETED_SUBSCRIPTION, crm.UPSELL_EXCLUSION),
    ordered=False,
)


def build_crm_trial_query(options: QueryOptions) -> BuiltQuery | None:
    """Trial counts grouped like the on-page rows, or None for dimensions the CRM lacks.

    Ancestor filters without a CRM column are dropped.
    """
    if options.current_dimension not in CRM_DIMENSIONS:
        return None
    filters = {d: v for d, v in options.parent_filters.items() if d in CRM_DIMENSIONS}
    dimensions = tuple(d for d in options.dimensions if d in CRM_DIMENSIONS)
    crm_options = replace(
        options,
        dimensions=dimensions,
        depth=dimensions.index(options.current_dimension),
        parent_filters=filters,
    )
    return build_query(CRM_SPEC, crm_options)


CRM_TRACKING_SELECT = (
    "LOWER(COALESCE(sr.source, '')) AS source",
    "s.tracking_id_4 AS campaign_id",
    "s.tracking_id_2 AS adset_id",
    "s.tracking_id AS ad_id",
)


def _crm_filters(options: QueryOptions) -> dict[str, str]:
    return {d: v for d, v in options.parent_filters.items() if d in CRM_DIMENSIONS}


def build_crm_tracking_query(options: QueryOptions) -> BuiltQuery | None:
    """Trials per tracking tuple, for dimensions the CRM cannot group by."""
    if options.current_dimension in CRM_DIMENSIONS:
        return None
    params: list[Any] = list(CRM_SPEC.date_params(options.date_range))
    conditions, filter_params = CRM_SPEC.filter_builder().build(
        options.dimensions, _crm_filters(options), offset=len(params)
    )
    params.extend(filter_params)
    where = [CRM_SPEC.date_clause.format(start="%s", end="%s"), *CRM_SPEC.where, *conditions]
    sql = "\n".join(
        [
            "SELECT",
            "  " + ",\n  ".join([*CRM_TRACKING_SELECT, *CRM_SPEC.metrics]),
            CRM_SPEC.from_clause,
            "WHERE " + "\n  AND ".join(where),
            "GROUP BY 1, 2, 3, 4",
        ]
    )
    return BuiltQuery(sql, tuple(params))


TRACKING_GROUPS = (
    "LOWER(COALESCE(pv.utm_source, ''))",
    "COALESCE(pv.utm_campaign::text, '')",
    "COALESCE(pv.adset_id::text, '')",
    "COALESCE(pv.ad_id::text, '')",
)

TRACKING_SHARE_SPEC = replace(
    SPEC,
    name="on-page-tracking-share",
    metrics=(
        f"{TRACKING_GROUPS[0]} AS source",
        f"{TRACKING_GROUPS[1]} AS campaign_id",
        f"{TRACKING_GROUPS[2]} AS adset_id",
        f"{TRACKING_GROUPS[3]} AS ad_id",
        "COUNT(DISTINCT pv.ff_visitor_id) AS unique_visitors",
    ),
    group_by=TRACKING_GROUPS,
    ordered=False,
)


def build_tracking_share_query(options: QueryOptions) -> BuiltQuery | None:
    """Visitors per (dimension value, tracking tuple) on the page-view side."""
    if options.current_dimension in CRM_DIMENSIONS:
        return None
    return build_query(TRACKING_SHARE_SPEC, options)


def attribute_trials(
    options: QueryOptions,
    records: Sequence[Mapping[str, Any]],
    results: Sequence[Sequence[Mapping[str, Any]]],
) -> list[dict[str, Any]]:
    """CRM trials for the current dimension.

    Grouped CRM rows are used as they are. Otherwise each CRM tracking tuple
    is split across the dimension values that share it, in proportion to
    their unique visitors.
    """
    grouped, tracked, shares = results
    if options.current_dimension in CRM_DIMENSIONS:
        return [dict(r) for r in grouped]

    crm_totals: dict[tuple, dict[str, float]] = {}
    for row in tracked:
        entry = crm_totals.setdefault(tracking_tuple(row), {"trials": 0.0, "approved": 0.0})
        entry["trials"] += to_float(row.get("trials"))
        entry["approved"] += to_float(row.get("approved"))

    visitors: dict[tuple, float] = {}
    for row in shares:
        combo = tracking_tuple(row)
        visitors[combo] = visitors.get(combo, 0.0) + to_float(row.get("unique_visitors"))

    out: list[dict[str, Any]] = []
    for row in shares:
        combo = tracking_tuple(row)
        crm_row = crm_totals.get(combo)
        if crm_row is None or not visitors[combo]:
            continue
        share = to_float(row.get("unique_visitors")) / visitors[combo]
        out.append(
            {
                "dimension_value": row.get("dimension_value"),
                "trials": crm_row["trials"] * share,
                "approved": crm_row["approved"] * share,
            }
        )
    return out


def match_crm_value(value: str) -> str:
    if value == UNKNOWN:
        return "unknown"
    return crm.canonical_source(value)


REPORT = ReportDefinition(
    name="on-page",
    store=ANALYTICS,
    spec=SPEC,
    counters=COUNTERS,
    ratios=RATIOS,
    overrides=(
        AttributedOverride(
            source=OverrideSource("crm-trials", CRM_FIELDS, normalize=identity, match=match_crm_value),
            queries=(
                (CRM, build_crm_trial_query),
                (CRM, build_crm_tracking_query),
                (ANALYTICS, build_tracking_share_query),
            ),
            combine=attribute_trials,
        ),
    ),
)
