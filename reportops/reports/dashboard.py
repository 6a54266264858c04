from __future__ import annotations

from typing import Any, Mapping, Sequence

from reportops.builder import BuiltQuery, DimensionColumn, Placeholder, QuerySpec, build_query, mariadb_date_params
from reportops.metrics import Ratio
from reportops.merge import CRM, OverrideQuery, OverrideSource, ReportDefinition
from reportops.models import DateRange, QueryOptions
from reportops.reports import crm
from reportops.util import iso_date, title_case, to_number

COUNTRY_NULL = "(c.country IS NULL OR c.country = '')"

# Subscription path with invoice -> subscription fallbacks
DIMENSIONS: dict[str, DimensionColumn] = {
    "country": DimensionColumn("c.country", null_check=COUNTRY_NULL),
    "productName": DimensionColumn("COALESCE(pg.group_name, pg_sub.group_name)"),
    "product": DimensionColumn("COALESCE(p.product_name, p_sub.product_name)"),
    "source": DimensionColumn("COALESCE(sr.source, sr_sub.source)"),
}

# OTS invoices have no subscription, so only the invoice path exists
OTS_DIMENSIONS: dict[str, DimensionColumn] = {
    "country": DimensionColumn("c.country", null_check=COUNTRY_NULL),
    "productName": DimensionColumn("pg.group_name"),
    "product": DimensionColumn("p.product_name"),
    "source": DimensionColumn("sr.source"),
}

SORTABLE = {
    "customers": "customer_count",
    "subscriptions": "subscription_count",
    "trials": "trial_count",
    "trialsApproved": "trials_approved_count",
    "upsells": "upsell_count",
    "upsellsApproved": "upsells_approved_count",
}

COUNTERS = {
    "customers": "customer_count",
    "subscriptions": "subscription_count",
    "trials": "trial_count",
    "trialsApproved": "trials_approved_count",
    "upsells": "upsell_count",
    "upsellsApproved": "upsells_approved_count",
}

OTS_FIELDS = {"ots": "ots_count", "otsApproved": "ots_approved_count"}

RATIOS = (
    Ratio("approvalRate", ("trialsApproved", "otsApproved"), ("trials", "ots")),
    Ratio("otsApprovalRate", ("otsApproved",), ("ots",)),
    Ratio("upsellApprovalRate", ("upsellsApproved",), ("upsells",)),
)

SPEC = QuerySpec(
    name="dashboard",
    dimensions=DIMENSIONS,
    metrics=(
        f"{crm.CUSTOMER_COUNT} AS customer_count",
        f"{crm.SUBSCRIPTION_COUNT} AS subscription_count",
        f"{crm.TRIAL_COUNT} AS trial_count",
        f"{crm.TRIALS_APPROVED_COUNT} AS trials_approved_count",
        f"{crm.UPSELL_COUNT} AS upsell_count",
        f"{crm.UPSELLS_APPROVED_COUNT} AS upsells_approved_count",
    ),
    from_clause="\n".join(
        (
            "FROM subscription s",
            crm.JOIN_CUSTOMER,
            crm.JOIN_TRIAL_INVOICE,
            crm.JOIN_FIRST_PRODUCT,
            crm.JOIN_PRODUCT,
            crm.JOIN_PRODUCT_SUB,
            crm.JOIN_PRODUCT_GROUP,
            crm.JOIN_PRODUCT_GROUP_SUB,
            crm.JOIN_SOURCE_INVOICE,
            crm.JOIN_SOURCE_SUB_ALT,
            crm.JOIN_UPSELL,
        )
    ),
    date_clause=crm.SUBSCRIPTION_DATE,
    placeholder=Placeholder.QMARK,
    sortable=SORTABLE,
    default_sort="subscription_count",
    where=(crm.UPSELL_EXCLUSION,),
)

OTS_SPEC = QuerySpec(
    name="dashboard-ots",
    dimensions=OTS_DIMENSIONS,
    metrics=(
        f"{crm.OTS_COUNT} AS ots_count",
        f"{crm.OTS_APPROVED_COUNT} AS ots_approved_count",
    ),
    from_clause="\n".join(
        (
            "FROM invoice i",
            crm.OTS_JOIN_CUSTOMER,
            crm.JOIN_FIRST_PRODUCT,
            crm.JOIN_PRODUCT,
            crm.JOIN_PRODUCT_GROUP,
            crm.OTS_JOIN_SOURCE,
        )
    ),
    date_clause=crm.OTS_DATE,
    placeholder=Placeholder.QMARK,
    where=(crm.OTS_BASE,),
    ordered=False,
)


def build_dashboard_query(options: QueryOptions) -> BuiltQuery:
    return build_query(SPEC, options)


def build_ots_query(options: QueryOptions) -> BuiltQuery:
    return build_query(OTS_SPEC, options)


REPORT = ReportDefinition(
    name="dashboard",
    store=CRM,
    spec=SPEC,
    counters=COUNTERS,
    ratios=RATIOS,
    overrides=(
        OverrideQuery(
            source=OverrideSource("ots", OTS_FIELDS, normalize=title_case, append_unmatched=True),
            store=CRM,
            build=build_ots_query,
        ),
    ),
)


# ── daily chart ─────────────────────────────────────────────────

def build_timeseries_query(date_range: DateRange) -> BuiltQuery:
    sql = "\n".join(
        (
            "SELECT",
            "  DATE(s.date_create) AS date,",
            f"  {crm.CUSTOMER_COUNT} AS customers,",
            f"  {crm.SUBSCRIPTION_COUNT} AS subscriptions,",
            f"  {crm.TRIAL_COUNT} AS trials,",
            f"  {crm.TRIALS_APPROVED_COUNT} AS trialsApproved,",
            f"  {crm.UPSELL_COUNT} AS upsells,",
            f"  {crm.UPSELLS_APPROVED_COUNT} AS upsellsApproved",
            "FROM subscription s",
            crm.JOIN_CUSTOMER,
            crm.JOIN_TRIAL_INVOICE,
            crm.JOIN_UPSELL,
            "WHERE s.date_create BETWEEN %s AND %s",
            f"  AND {crm.UPSELL_EXCLUSION}",
            "GROUP BY DATE(s.date_create)",
            "ORDER BY date ASC",
        )
    )
    return BuiltQuery(sql, mariadb_date_params(date_range))


def build_ots_timeseries_query(date_range: DateRange) -> BuiltQuery:
    sql = "\n".join(
        (
            "SELECT",
            "  DATE(i.order_date) AS date,",
            f"  {crm.OTS_COUNT} AS ots,",
            f"  {crm.OTS_APPROVED_COUNT} AS otsApproved",
            "FROM invoice i",
            f"WHERE {crm.OTS_BASE}",
            "  AND i.order_date BETWEEN %s AND %s",
            "GROUP BY DATE(i.order_date)",
            "ORDER BY date ASC",
        )
    )
    return BuiltQuery(sql, mariadb_date_params(date_range))


TIMESERIES_FIELDS = ("customers", "subscriptions", "trials", "trialsApproved", "upsells", "upsellsApproved")


def merge_timeseries(
    rows: Sequence[Mapping[str, Any]], ots_rows: Sequence[Mapping[str, Any]]
) -> list[dict[str, Any]]:
    """One point per day; days with only OTS activity are kept."""
    points: dict[str, dict[str, Any]] = {}
    for row in rows:
        day = _day(row.get("date"))
        point = {"date": day, **{f: to_number(row.get(f)) for f in TIMESERIES_FIELDS}, "ots": 0, "otsApproved": 0}
        points[day] = point
    for row in ots_rows:
        day = _day(row.get("date"))
        point = points.setdefault(day, {"date": day, **{f: 0 for f in TIMESERIES_FIELDS}})
        point["ots"] = to_number(row.get("ots"))
        point["otsApproved"] = to_number(row.get("otsApproved"))

    out = []
    for day in sorted(points):
        point = points[day]
        denominator = point["trials"] + point["ots"]
        point["approvalRate"] = (point["trialsApproved"] + point["otsApproved"]) / denominator if denominator else 0.0
        out.append(point)
    return out


def _day(value: Any) -> str:
    if hasattr(value, "strftime"):
        return iso_date(value)
    return str(value)[:10]
