from __future__ import annotations

from typing import Any, Mapping

from reportops.builder import BuiltQuery, DimensionColumn, Placeholder, QuerySpec, build_query
from reportops.merge import CRM, ReportDefinition
from reportops.models import QueryOptions
from reportops.reports import crm

NOT_SET = "(not set)"


def order_label(row: Mapping[str, Any]) -> str:
    product = row.get("product_name") or "Unknown"
    source = row.get("source") or "Unknown"
    return f"ID: {row.get('dimension_value')} {product} - {source}"


DIMENSIONS: dict[str, DimensionColumn] = {
    "country": DimensionColumn(
        "c.country",
        null_check="(c.country IS NULL OR c.country = '')",
        normalize=None,
        unknown=NOT_SET,
    ),
    "product": DimensionColumn(
        "COALESCE(p.product_name, p_sub.product_name)",
        normalize=None,
        unknown=NOT_SET,
    ),
    "source": DimensionColumn("COALESCE(sr.source, sr_sub.source)", normalize=None, unknown=NOT_SET),
    # One row per subscription
    "order": DimensionColumn(
        "s.id",
        normalize=None,
        extra_select=(
            "MAX(COALESCE(p.product_name, p_sub.product_name)) AS product_name",
            "MAX(COALESCE(sr.source, sr_sub.source)) AS source",
        ),
        leaf=True,
        attribute=order_label,
    ),
}

JOIN_OTS = (
    "LEFT JOIN invoice ots ON ots.customer_id = s.customer_id AND ots.type = 3 AND ots.deleted = 0"
    " AND DATE(ots.order_date) = DATE(s.date_create)"
)

SORTABLE = {
    "subscriptions": "subscription_count",
    "ots": "ots_count",
    "trials": "trial_count",
    "customers": "customer_count",
}

COUNTERS = dict(SORTABLE)

SPEC = QuerySpec(
    name="new-orders",
    dimensions=DIMENSIONS,
    metrics=(
        f"{crm.SUBSCRIPTION_COUNT} AS subscription_count",
        "COUNT(DISTINCT ots.id) AS ots_count",
        f"{crm.TRIAL_COUNT} AS trial_count",
        "COUNT(DISTINCT s.customer_id) AS customer_count",
    ),
    from_clause="\n".join(
        (
            "FROM subscription s",
            crm.JOIN_CUSTOMER,
            crm.JOIN_TRIAL_INVOICE,
            crm.JOIN_FIRST_PRODUCT,
            crm.JOIN_PRODUCT,
            crm.JOIN_PRODUCT_SUB,
            crm.JOIN_SOURCE_INVOICE,
            crm.JOIN_SOURCE_SUB_ALT,
            JOIN_OTS,
        )
    ),
    date_clause=crm.SUBSCRIPTION_DATE,
    placeholder=Placeholder.QMARK,
    sortable=SORTABLE,
    default_sort="subscription_count",
    where=(crm.NOT_DELETED_SUBSCRIPTION, crm.UPSELL_EXCLUSION),
)


def build_new_orders_query(options: QueryOptions) -> BuiltQuery:
    return build_query(SPEC, options)


REPORT = ReportDefinition(name="new-orders", store=CRM, spec=SPEC, counters=COUNTERS)
