"""Attribution of CRM rows to ad/page rows by tracking id.

CRM subscriptions carry the ad platform ids they came from (campaign in
``tracking_id_4``, adset in ``tracking_id_2``, ad in ``tracking_id``), often
incompletely. Rows are indexed into tiers by how many ids they have so that
each one is found by exactly one lookup:

- full: campaign, adset and ad;
- campaign + adset;
- campaign only;
- source only (no usable campaign id).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Sequence

from reportops.reports import crm
from reportops.util import to_number

# Ad network (as stored with the spend) -> CRM source values it produces
NETWORK_SOURCES: dict[str, tuple[str, ...]] = {
    "google ads": ("adwords", "google"),
    "facebook": ("facebook", "meta", "fb"),
}

MISSING_IDS = ("", "null", "undefined", "none")


def tracking_id(value: Any) -> str | None:
    if value is None:
        return None
    s = str(value).strip()
    return None if s.lower() in MISSING_IDS else s


def network_matches_source(network: Any, source: Any) -> bool:
    if not network or not source:
        return False
    return str(source).lower() in NETWORK_SOURCES.get(str(network).lower(), ())


def sources_for_networks(networks: Iterable[Any]) -> set[str]:
    out: set[str] = set()
    for network in networks:
        if network:
            out.update(NETWORK_SOURCES.get(str(network).lower(), ()))
    return out


@dataclass
class TieredIndex:
    full: dict[tuple[str, str, str], list[Mapping[str, Any]]] = field(default_factory=dict)
    campaign_adset: dict[tuple[str, str], list[Mapping[str, Any]]] = field(default_factory=dict)
    campaign: dict[str, list[Mapping[str, Any]]] = field(default_factory=dict)
    source_only: list[Mapping[str, Any]] = field(default_factory=list)

    def add(self, row: Mapping[str, Any]) -> None:
        c = tracking_id(row.get("campaign_id"))
        a = tracking_id(row.get("adset_id"))
        d = tracking_id(row.get("ad_id"))
        if c is None:
            self.source_only.append(row)
        elif a is None:
            self.campaign.setdefault(c, []).append(row)
        elif d is None:
            self.campaign_adset.setdefault((c, a), []).append(row)
        else:
            self.full.setdefault((c, a, d), []).append(row)

    def match(
        self,
        campaign_ids: Iterable[Any],
        adset_ids: Iterable[Any],
        ad_ids: Iterable[Any],
    ) -> list[Mapping[str, Any]]:
        """Rows whose ids are all within the given id sets. Source-only rows never match."""
        cs = _ids(campaign_ids)
        adsets = _ids(adset_ids)
        ads = _ids(ad_ids)
        out: list[Mapping[str, Any]] = []
        for c in cs:
            out.extend(self.campaign.get(c, ()))
            for a in adsets:
                out.extend(self.campaign_adset.get((c, a), ()))
                for d in ads:
                    out.extend(self.full.get((c, a, d), ()))
        return out


def _ids(values: Iterable[Any] | None) -> list[str]:
    seen: dict[str, None] = {}
    for v in values or ():
        t = tracking_id(v)
        if t is not None:
            seen[t] = None
    return list(seen)


def build_tiered_index(rows: Iterable[Mapping[str, Any]]) -> TieredIndex:
    index = TieredIndex()
    for row in rows:
        index.add(row)
    return index


def sum_fields(rows: Iterable[Mapping[str, Any]], fields: Sequence[str]) -> dict[str, int | float]:
    totals: dict[str, float] = {name: 0 for name in fields}
    for row in rows:
        for name in fields:
            totals[name] += to_number(row.get(name))
    return {name: to_number(v) for name, v in totals.items()}


def normalized_source(value: Any) -> str:
    """CRM/analytics source in comparable form (``adwords`` -> ``google``)."""
    if value is None or str(value).strip() == "":
        return ""
    return crm.canonical_source(str(value).strip())


def tracking_tuple(row: Mapping[str, Any]) -> tuple[str, str | None, str | None, str | None]:
    return (
        normalized_source(row.get("source")),
        tracking_id(row.get("campaign_id")),
        tracking_id(row.get("adset_id")),
        tracking_id(row.get("ad_id")),
    )

