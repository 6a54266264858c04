from __future__ import annotations

from reportops.reports.tracking import (
    build_tiered_index,
    network_matches_source,
    sources_for_networks,
    tracking_id,
    tracking_tuple,
)

ROWS = [
    {"source": "facebook", "campaign_id": "c1", "adset_id": "a1", "ad_id": "d1", "n": 1},
    {"source": "facebook", "campaign_id": "c1", "adset_id": "a1", "ad_id": "null", "n": 2},
    {"source": "facebook", "campaign_id": "c1", "adset_id": "", "ad_id": None, "n": 3},
    {"source": "facebook", "campaign_id": None, "adset_id": "a1", "ad_id": "d1", "n": 4},
    {"source": "facebook", "campaign_id": "c2", "adset_id": "a2", "ad_id": "d2", "n": 5},
]


def test_each_row_lands_in_one_tier():
    index = build_tiered_index(ROWS)

    assert [r["n"] for r in index.full[("c1", "a1", "d1")]] == [1]
    assert [r["n"] for r in index.campaign_adset[("c1", "a1")]] == [2]
    assert [r["n"] for r in index.campaign["c1"]] == [3]
    assert [r["n"] for r in index.source_only] == [4]


def test_match_walks_all_tiers_without_source_only_rows():
    index = build_tiered_index(ROWS)

    matched = index.match(["c1", "c1"], ["a1"], ["d1", None])

    assert sorted(r["n"] for r in matched) == [1, 2, 3]
    assert index.match([], ["a1"], ["d1"]) == []


def test_network_maps_onto_crm_sources():
    assert network_matches_source("Google Ads", "adwords")
    assert network_matches_source("facebook", "FB")
    assert not network_matches_source("Facebook", "google")
    assert not network_matches_source("TikTok", "tiktok")
    assert sources_for_networks(["Google Ads", None]) == {"adwords", "google"}


def test_tracking_tuple_normalizes_source_and_missing_ids():
    assert tracking_id(" undefined ") is None
    assert tracking_tuple({"source": "Adwords", "campaign_id": 12, "adset_id": "null", "ad_id": ""}) == (
        "google",
        "12",
        None,
        None,
    )
