"""Build the whole session report tree from one flat, fully grouped result.

Counters are summed per level and every ratio is derived from that level's
own sums, so a parent's bounce rate is never the mean of its children's.
"""

from __future__ import annotations

from typing import Any, Mapping, Sequence

from reportops.keys import UNKNOWN, DimensionKey
from reportops.metrics import Ratio, derive_ratios, sum_counters
from reportops.models import Row
from reportops.util import title_case, to_float

FlatRow = Mapping[str, Any]

# Enriched dimensions key on the tracking id and display the resolved name
ENRICHED_DIMS = frozenset({"entryCampaign", "entryAdset", "entryAd"})

# Never title-cased: URLs, domains, ids
RAW_VALUE_DIMS = frozenset(
    {"entryUrlPath", "urlPath", "funnelStep", "entryReferrer", "entryPlacement", "funnelId", "entryWebmasterId"}
)

DATE_DIMS = frozenset({"date"})

COUNTERS = {
    "pageViews": "page_views",
    "uniqueVisitors": "unique_visitors",
    "bouncedCount": "bounced_count",
    "activeTimeCount": "active_time_count",
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
)

# Internal denominators, not shown as columns
HIDDEN = ("bouncedCount", "activeTimeCount", "totalActiveTime")

DEFAULT_SORT = "pageViews"


def format_attribute(dimension: str, value: str) -> str:
    if value == UNKNOWN or dimension in DATE_DIMS or dimension in ENRICHED_DIMS or dimension in RAW_VALUE_DIMS:
        return value
    if dimension == "entryCountryCode":
        return value.upper()
    return title_case(value)


def _value(row: FlatRow, dimension: str) -> str:
    raw = row.get(dimension)
    if raw is None or raw == "":
        return UNKNOWN
    if hasattr(raw, "isoformat"):
        return raw.isoformat()
    return str(raw)


def build_session_tree(
    flat_rows: Sequence[FlatRow],
    dimensions: Sequence[str],
    sort_by: str | None = None,
    sort_direction: str | None = None,
) -> list[Row]:
    if not flat_rows or not dimensions:
        return []
    descending = (sort_direction or "DESC").upper() in ("DESC", "DESCEND")
    return _build_level(flat_rows, tuple(dimensions), 0, DimensionKey(), sort_by or DEFAULT_SORT, descending)


def _build_level(
    rows: Sequence[FlatRow],
    dimensions: tuple[str, ...],
    depth: int,
    parent: DimensionKey,
    sort_by: str,
    descending: bool,
) -> list[Row]:
    dimension = dimensions[depth]
    is_last = depth == len(dimensions) - 1
    enriched = dimension in ENRICHED_DIMS

    groups: dict[str, list[FlatRow]] = {}
    labels: dict[str, str] = {}
    for row in rows:
        value = _value(row, dimension)
        key_value = value
        if enriched:
            ident = row.get(f"_{dimension}_id")
            if ident not in (None, ""):
                key_value = str(ident)
        groups.setdefault(key_value, []).append(row)
        # First display name seen wins for an id
        labels.setdefault(key_value, value)

    level: list[Row] = []
    for key_value, members in groups.items():
        key = parent.child(dimension, key_value)

        metrics = derive_ratios(sum_counters(members, COUNTERS), RATIOS)
        for name in HIDDEN:
            metrics.pop(name, None)

        children = None
        if not is_last:
            children = tuple(_build_level(members, dimensions, depth + 1, key, sort_by, descending))

        level.append(Row(key, format_attribute(dimension, labels[key_value]), depth, not is_last, metrics, children))

    if dimension in DATE_DIMS:
        level.sort(key=lambda r: r.attribute, reverse=True)
    else:
        level.sort(key=lambda r: to_float(r.metrics.get(sort_by)), reverse=descending)
    return level
