"""Marketing report: ad spend from the analytics store, outcomes from the CRM.

Spend rows are grouped by network/campaign/adset/ad/date and carry the
distinct platform ids behind each group. CRM subscriptions and OTS invoices
are fetched per ``(source, campaign, adset, ad, day)`` tuple and attributed
to spend rows in Python:

- ``network`` rows take every CRM row whose source belongs to the network;
- other rows take the CRM rows found by tiered tracking-id lookup whose
  source belongs to one of the row's networks;
- below ``date``, CRM rows are restricted to that day.

Where the current dimension is neither the network nor a tracking level,
what the lookup could not place is reported on an ``Unknown`` row.
"""

from __future__ import annotations

from datetime import date
from typing import Any, Mapping, Sequence

from reportops.builder import (
    BuiltQuery,
    DimensionColumn,
    Placeholder,
    QuerySpec,
    build_query,
    mariadb_date_params,
    postgres_date_params,
)
from reportops.keys import identity
from reportops.metrics import Ratio
from reportops.merge import ANALYTICS, CRM, AttributedOverride, OverrideSource, ReportDefinition
from reportops.models import QueryOptions
from reportops.reports import crm
from reportops.reports.tracking import (
    TieredIndex,
    build_tiered_index,
    network_matches_source,
    sources_for_networks,
    sum_fields,
)
from reportops.util import iso_date

TRACKING_DIMENSIONS = ("campaign", "adset", "ad")


def _raw(expr: str, **kwargs: Any) -> DimensionColumn:
    return DimensionColumn(expr, normalize=None, **kwargs)


DIMENSIONS: dict[str, DimensionColumn] = {
    "network": _raw("m.network"),
    "campaign": _raw("m.campaign_name"),
    "adset": _raw("m.adset_name"),
    "ad": _raw("m.ad_name"),
    "date": _raw("m.date::date", filter_expr="m.date::date::text", chronological=True),
}

SORTABLE = {
    "cost": "SUM(m.cost::numeric)",
    "clicks": "SUM(m.clicks::integer)",
    "impressions": "SUM(m.impressions::integer)",
    "conversions": "SUM(m.conversions::numeric)",
    "ctr": "SUM(m.clicks::integer)::numeric / NULLIF(SUM(m.impressions::integer), 0)",
    "cpc": "SUM(m.cost::numeric) / NULLIF(SUM(m.clicks::integer), 0)",
    "cpm": "SUM(m.cost::numeric) / NULLIF(SUM(m.impressions::integer), 0)",
}

COUNTERS = {
    "cost": "cost",
    "clicks": "clicks",
    "impressions": "impressions",
    "conversions": "conversions",
}

SPEC = QuerySpec(
    name="marketing",
    dimensions=DIMENSIONS,
    metrics=(
        "COALESCE(ROUND(SUM(m.cost::numeric), 2), 0) AS cost",
        "COALESCE(SUM(m.clicks::integer), 0) AS clicks",
        "COALESCE(SUM(m.impressions::integer), 0) AS impressions",
        "COALESCE(ROUND(SUM(m.conversions::numeric), 0), 0) AS conversions",
        "array_agg(DISTINCT m.campaign_id::text) AS campaign_ids",
        "array_agg(DISTINCT m.adset_id::text) AS adset_ids",
        "array_agg(DISTINCT m.ad_id::text) AS ad_ids",
        "array_agg(DISTINCT m.network) AS networks",
    ),
    from_clause="FROM merged_ads_spending m",
    date_clause="m.date::date BETWEEN {start}::date AND {end}::date",
    placeholder=Placeholder.NUMERIC,
    sortable=SORTABLE,
    default_sort="SUM(m.cost::numeric)",
    date_params=postgres_date_params,
)


def build_marketing_query(options: QueryOptions) -> BuiltQuery:
    return build_query(SPEC, options)


# ── CRM tracking co-queries ─────────────────────────────────────

SUBSCRIPTION_FIELDS = {
    "subscriptions": "subscription_count",
    "customers": "customer_count",
    "trials": "trial_count",
    "trialsApproved": "trials_approved_count",
    "upsells": "upsell_count",
    "upsellsApproved": "upsells_approved_count",
}

OTS_FIELDS = {"ots": "ots_count", "otsApproved": "ots_approved_count"}

CRM_FIELDS = {**SUBSCRIPTION_FIELDS, **OTS_FIELDS}

SUBSCRIPTION_TRACKING_SQL = f"""SELECT
  LOWER(COALESCE(sr.source, '')) AS source,
  s.tracking_id_4 AS campaign_id,
  s.tracking_id_2 AS adset_id,
  s.tracking_id AS ad_id,
  DATE_FORMAT(s.date_create, '%%Y-%%m-%%d') AS day,
  {crm.SUBSCRIPTION_COUNT} AS subscription_count,
  {crm.CUSTOMER_COUNT} AS customer_count,
  {crm.TRIAL_COUNT} AS trial_count,
  {crm.TRIALS_APPROVED_COUNT} AS trials_approved_count,
  {crm.UPSELL_COUNT} AS upsell_count,
  {crm.UPSELLS_APPROVED_COUNT} AS upsells_approved_count
FROM subscription s
{crm.JOIN_CUSTOMER}
{crm.JOIN_TRIAL_INVOICE}
{crm.JOIN_SOURCE_SUB}
{crm.JOIN_UPSELL}
WHERE {crm.SUBSCRIPTION_DATE.format(start="%s", end="%s")}
  AND {crm.NOT_DELETED_SUBSCRIPTION}
  AND {crm.UPSELL_EXCLUSION}
GROUP BY 1, 2, 3, 4, 5"""

OTS_TRACKING_SQL = f"""SELECT
  LOWER(COALESCE(sr.source, '')) AS source,
  i.tracking_id_4 AS campaign_id,
  i.tracking_id_2 AS adset_id,
  i.tracking_id AS ad_id,
  DATE_FORMAT(i.order_date, '%%Y-%%m-%%d') AS day,
  {crm.OTS_COUNT} AS ots_count,
  {crm.OTS_APPROVED_COUNT} AS ots_approved_count
FROM invoice i
{crm.OTS_JOIN_SOURCE}
WHERE {crm.OTS_BASE}
  AND {crm.OTS_DATE.format(start="%s", end="%s")}
GROUP BY 1, 2, 3, 4, 5"""


def build_subscription_tracking_query(options: QueryOptions) -> BuiltQuery:
    return BuiltQuery(SUBSCRIPTION_TRACKING_SQL, mariadb_date_params(options.date_range))


def build_ots_tracking_query(options: QueryOptions) -> BuiltQuery:
    return BuiltQuery(OTS_TRACKING_SQL, mariadb_date_params(options.date_range))


# ── attribution ─────────────────────────────────────────────────

def _day(value: Any) -> str | None:
    if value is None or value == "":
        return None
    if isinstance(value, date):
        return iso_date(value)
    return str(value)[:10]


def _in_day(row: Mapping[str, Any], day: str | None) -> bool:
    return day is None or _day(row.get("day")) == day


class _Attribution:
    """One CRM row set (subscriptions or OTS) and its tracking index."""

    def __init__(self, rows: Sequence[Mapping[str, Any]], fields: Mapping[str, str]) -> None:
        self.rows = rows
        self.columns = list(fields.values())
        self.index: TieredIndex = build_tiered_index(rows)

    def by_source(self, networks: Sequence[Any], day: str | None) -> list[Mapping[str, Any]]:
        sources = sources_for_networks(networks)
        return [r for r in self.rows if r.get("source") in sources and _in_day(r, day)]

    def by_tracking(self, record: Mapping[str, Any], day: str | None) -> list[Mapping[str, Any]]:
        networks = record.get("networks") or ()
        candidates = self.index.match(
            record.get("campaign_ids") or (), record.get("adset_ids") or (), record.get("ad_ids") or ()
        )
        return [
            r
            for r in candidates
            if _in_day(r, day) and any(network_matches_source(n, r.get("source")) for n in networks)
        ]


def attribute_crm(
    options: QueryOptions,
    records: Sequence[Mapping[str, Any]],
    results: Sequence[Sequence[Mapping[str, Any]]],
) -> list[dict[str, Any]]:
    subscriptions, ots = results
    kinds = (_Attribution(subscriptions, SUBSCRIPTION_FIELDS), _Attribution(ots, OTS_FIELDS))
    dimension = options.current_dimension
    parent_day = options.parent_filters.get("date")

    out: list[dict[str, Any]] = []
    matched: list[list[Mapping[str, Any]]] = [[] for _ in kinds]
    for record in records:
        day = _day(record.get("dimension_value")) if dimension == "date" else parent_day
        row: dict[str, Any] = {"dimension_value": record.get("dimension_value")}
        for i, kind in enumerate(kinds):
            if dimension == "network":
                found = kind.by_source(record.get("networks") or (), day)
            else:
                found = kind.by_tracking(record, day)
            matched[i].extend(found)
            row.update(sum_fields(found, kind.columns))
        out.append(row)

    if dimension == "network" or dimension in TRACKING_DIMENSIONS or not records:
        return out

    # Whatever the tracking lookup could not place goes to an Unknown row
    networks = {n for record in records for n in (record.get("networks") or ())}
    gap: dict[str, Any] = {"dimension_value": None}
    for kind, placed in zip(kinds, matched):
        if any(d in options.parent_filters for d in TRACKING_DIMENSIONS):
            pool = kind.index.match(
                [c for r in records for c in (r.get("campaign_ids") or ())],
                [a for r in records for a in (r.get("adset_ids") or ())],
                [d for r in records for d in (r.get("ad_ids") or ())],
            )
            pool = [r for r in pool if _in_day(r, parent_day)]
        else:
            pool = kind.by_source(list(networks), parent_day)
        totals = sum_fields(pool, kind.columns)
        used = sum_fields(placed, kind.columns)
        gap.update({c: max(0, totals[c] - used[c]) for c in kind.columns})
    if any(gap[c] for c in ("subscription_count", "customer_count", "trial_count", "ots_count")):
        out.append(gap)
    return out


RATIOS = (
    Ratio("ctr", ("clicks",), ("impressions",), 4),
    Ratio("cpc", ("cost",), ("clicks",), 2),
    Ratio("cpm", ("cost",), ("impressions",), 2, scale=1000),
    Ratio("conversionRate", ("conversions",), ("impressions",), 6),
    Ratio("approvalRate", ("trialsApproved",), ("subscriptions",), 4),
    Ratio("otsApprovalRate", ("otsApproved",), ("ots",), 4),
    Ratio("upsellApprovalRate", ("upsellsApproved",), ("upsells",), 4),
    Ratio("realCpa", ("cost",), ("trialsApproved",), 2),
)

REPORT = ReportDefinition(
    name="marketing",
    store=ANALYTICS,
    spec=SPEC,
    counters=COUNTERS,
    ratios=RATIOS,
    overrides=(
        AttributedOverride(
            source=OverrideSource("crm-tracking", CRM_FIELDS, normalize=None, match=identity, append_unmatched=True),
            queries=((CRM, build_subscription_tracking_query), (CRM, build_ots_tracking_query)),
            combine=attribute_crm,
        ),
    ),
)
