"""Shared CRM (MariaDB) SQL fragments.

Every CRM report counts subscriptions, trials and upsells the same way; the
expressions live here so a fix applies to all of them. ``%`` is doubled
because aiomysql formats the statement with the parameters.
"""

from __future__ import annotations

# ── metric expressions ──────────────────────────────────────────

CUSTOMER_COUNT = "COUNT(DISTINCT CASE WHEN DATE(c.date_registered) = DATE(s.date_create) THEN s.customer_id END)"
SUBSCRIPTION_COUNT = "COUNT(DISTINCT s.id)"
# Invoice is LEFT JOINed, so the type has to be re-checked per row
TRIAL_COUNT = "COUNT(DISTINCT CASE WHEN i.type = 1 THEN i.id END)"
TRIALS_APPROVED_COUNT = "COUNT(DISTINCT CASE WHEN i.type = 1 AND i.is_marked = 1 THEN i.id END)"
UPSELL_COUNT = "COUNT(DISTINCT uo.id)"
UPSELLS_APPROVED_COUNT = "COUNT(DISTINCT CASE WHEN uo.is_marked = 1 THEN uo.id END)"

OTS_COUNT = "COUNT(DISTINCT i.id)"
OTS_APPROVED_COUNT = "COUNT(DISTINCT CASE WHEN i.is_marked = 1 THEN i.id END)"

# ── joins ───────────────────────────────────────────────────────

JOIN_CUSTOMER = "LEFT JOIN customer c ON s.customer_id = c.id"
JOIN_TRIAL_INVOICE = "LEFT JOIN invoice i ON i.subscription_id = s.id AND i.type = 1 AND i.deleted = 0"
JOIN_TRIAL_INVOICE_INNER = "INNER JOIN invoice i ON i.subscription_id = s.id AND i.type = 1"
# Multi-product invoices count once, under their first product
JOIN_FIRST_PRODUCT = (
    "LEFT JOIN (SELECT invoice_id, MIN(product_id) AS product_id FROM invoice_product GROUP BY invoice_id) ip"
    " ON ip.invoice_id = i.id"
)
JOIN_PRODUCT = "LEFT JOIN product p ON p.id = ip.product_id"
JOIN_PRODUCT_SUB = "LEFT JOIN product p_sub ON p_sub.id = s.product_id"
JOIN_PRODUCT_GROUP = "LEFT JOIN product_group pg ON pg.id = p.product_group_id"
JOIN_PRODUCT_GROUP_SUB = "LEFT JOIN product_group pg_sub ON pg_sub.id = p_sub.product_group_id"
JOIN_SOURCE_INVOICE = "LEFT JOIN source sr ON sr.id = i.source_id"
JOIN_SOURCE_SUB = "LEFT JOIN source sr ON sr.id = s.source_id"
JOIN_SOURCE_SUB_ALT = "LEFT JOIN source sr_sub ON sr_sub.id = s.source_id"
JOIN_UPSELL = (
    "LEFT JOIN invoice uo ON uo.customer_id = s.customer_id"
    " AND uo.tag LIKE CONCAT('%%parent-sub-id=', s.id, '%%')"
)

OTS_JOIN_CUSTOMER = "LEFT JOIN customer c ON c.id = i.customer_id"
OTS_JOIN_SOURCE = "LEFT JOIN source sr ON sr.id = i.source_id"

# ── where fragments ─────────────────────────────────────────────

UPSELL_EXCLUSION = "(i.tag IS NULL OR i.tag NOT LIKE '%%parent-sub-id=%%')"
NOT_DELETED_SUBSCRIPTION = "s.deleted = 0"
OTS_BASE = "i.type = 3 AND i.deleted = 0"

SUBSCRIPTION_DATE = "s.date_create BETWEEN {start} AND {end}"
OTS_DATE = "i.order_date BETWEEN {start} AND {end}"

# ── source matching between the analytics and CRM stores ────────

SOURCE_VARIANTS: dict[str, tuple[str, ...]] = {
    "google": ("google", "adwords"),
    "facebook": ("facebook", "meta"),
}


def source_variants(value: str) -> tuple[str, ...]:
    return SOURCE_VARIANTS.get(value.lower(), (value.lower(),))


def canonical_source(value: str) -> str:
    lowered = value.lower()
    for canonical, variants in SOURCE_VARIANTS.items():
        if lowered in variants:
            return canonical
    return lowered
