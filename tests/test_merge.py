from __future__ import annotations

from reportops.builder import DimensionColumn
from reportops.keys import DimensionKey
from reportops.merge import OverrideSource, build_override_map, merge_results, rows_from_records
from reportops.metrics import Ratio, derive_ratios
from reportops.reports import dashboard

COUNTERS = {"trials": "trial_count", "trialsApproved": "trials_approved_count"}


def test_null_and_empty_collapse_into_one_unknown_row(options):
    opts = options(["country"])
    rows = rows_from_records(
        [
            {"dimension_value": None, "trial_count": 2, "trials_approved_count": 1},
            {"dimension_value": "", "trial_count": 3, "trials_approved_count": 1},
            {"dimension_value": "denmark", "trial_count": 5, "trials_approved_count": 4},
        ],
        opts,
        DimensionColumn("c.country"),
        COUNTERS,
    )

    assert [r.attribute for r in rows] == ["Unknown", "Denmark"]
    assert rows[0].metrics == {"trials": 5, "trialsApproved": 2}
    assert len({r.key for r in rows}) == len(rows)


def test_row_keys_extend_parent_key(options):
    opts = options(["country", "source"], depth=1, parent_filters={"country": "Denmark"})
    rows = rows_from_records(
        [{"dimension_value": "google", "trial_count": 1, "trials_approved_count": 0}],
        opts,
        DimensionColumn("sr.source"),
        COUNTERS,
    )

    assert rows[0].key == DimensionKey([("country", "Denmark"), ("source", "Google")])
    assert rows[0].key.serialize() == "Denmark::Google"
    assert rows[0].depth == 1
    assert rows[0].has_children is False


def test_enriched_rows_key_on_id(options):
    opts = options(["campaign", "ad"])
    rows = rows_from_records(
        [{"dimension_id": "123", "dimension_value": "Spring Sale (123)", "trial_count": 1, "trials_approved_count": 1}],
        opts,
        DimensionColumn("pv.utm_campaign", label="x", normalize=None),
        COUNTERS,
    )

    assert rows[0].key.serialize() == "123"
    assert rows[0].attribute == "Spring Sale (123)"
    assert rows[0].has_children is True


def test_enriched_rows_sharing_an_id_merge_under_first_name(options):
    opts = options(["campaign"])
    rows = rows_from_records(
        [
            {"dimension_id": "123", "dimension_value": "Spring Sale (123)", "trial_count": 2, "trials_approved_count": 1},
            {"dimension_id": "123", "dimension_value": "Spring Promo (123)", "trial_count": 3, "trials_approved_count": 0},
            {"dimension_id": "456", "dimension_value": "Spring Sale (456)", "trial_count": 1, "trials_approved_count": 1},
        ],
        opts,
        DimensionColumn("pv.utm_campaign", label="x", normalize=None),
        COUNTERS,
    )

    assert [(r.key.serialize(), r.attribute) for r in rows] == [
        ("123", "Spring Sale (123)"),
        ("456", "Spring Sale (456)"),
    ]
    assert rows[0].metrics == {"trials": 5, "trialsApproved": 1}


def test_ratio_scale_applies_before_rounding():
    cpm = Ratio("cpm", ("cost",), ("impressions",), 2, scale=1000)
    assert cpm.compute({"cost": 10, "impressions": 4000}) == 2.5
    assert cpm.compute({"cost": 10, "impressions": 0}) == 0


def test_override_map_sums_values_that_normalize_together():
    omap = build_override_map(
        [
            {"dimension_value": "GERMANY", "ots_count": 1, "ots_approved_count": 1},
            {"dimension_value": "germany", "ots_count": 2, "ots_approved_count": 0},
        ],
        "dimension_value",
        DimensionKey(),
        "country",
        dashboard.OTS_FIELDS,
        normalize=dashboard.title_case,
    )

    entry = omap[DimensionKey([("country", "Germany")])]
    assert entry.metrics == {"ots": 3, "otsApproved": 1}


def test_merge_overwrites_and_appends_override_only_rows(options):
    opts = options(["country", "source"])
    primary = rows_from_records(
        [
            {"dimension_value": "denmark", "trial_count": 10, "trials_approved_count": 5},
            {"dimension_value": "germany", "trial_count": 6, "trials_approved_count": 3},
        ],
        opts,
        dashboard.DIMENSIONS["country"],
        COUNTERS,
    )
    ots = OverrideSource(
        "ots",
        dashboard.OTS_FIELDS,
        rows=[
            {"dimension_value": "germany", "ots_count": 4, "ots_approved_count": 2},
            {"dimension_value": "france", "ots_count": 2, "ots_approved_count": 1},
        ],
        normalize=dashboard.title_case,
        append_unmatched=True,
    )

    merged = {r.attribute: r for r in merge_results(primary, [ots], opts, dashboard.RATIOS)}

    assert merged["Denmark"].metrics["ots"] == 0
    assert merged["Denmark"].metrics["approvalRate"] == 0.5
    assert merged["Germany"].metrics["ots"] == 4
    assert merged["Germany"].metrics["approvalRate"] == 0.5
    assert merged["France"].metrics["trials"] == 0
    assert merged["France"].metrics["otsApprovalRate"] == 0.5
    assert merged["France"].has_children is True
    assert merged["France"].key == DimensionKey([("country", "France")])


def test_override_replaces_primary_value(options):
    opts = options(["utmSource"])
    primary = rows_from_records(
        [{"dimension_value": "google", "trials": 99, "approved": 99}],
        opts,
        DimensionColumn("pv.utm_source", normalize=None),
        {"trials": "trials", "approved": "approved"},
    )
    source = OverrideSource(
        "crm",
        {"trials": "trials", "approved": "approved"},
        rows=[
            {"dimension_value": "google", "trials": 3, "approved": 1},
            {"dimension_value": "adwords", "trials": 1, "approved": 1},
        ],
        match=lambda v: "google" if v.lower() in ("google", "adwords") else v.lower(),
    )

    merged = merge_results(primary, [source], opts, (Ratio("approvalRate", ("approved",), ("trials",), 4),))

    assert merged[0].metrics["trials"] == 4
    assert merged[0].metrics["approved"] == 2
    assert merged[0].metrics["approvalRate"] == 0.5


def test_ratio_with_zero_denominator_is_zero():
    metrics = derive_ratios({"trials": 0, "trialsApproved": 0, "ots": 0, "otsApproved": 0}, dashboard.RATIOS)
    assert metrics["approvalRate"] == 0
    assert metrics["otsApprovalRate"] == 0


def test_ratios_use_summed_counts():
    metrics = derive_ratios({"trials": 6, "trialsApproved": 3, "ots": 4, "otsApproved": 2}, dashboard.RATIOS)
    assert metrics["approvalRate"] == (3 + 2) / (6 + 4)


def test_unknown_primary_row_takes_unknown_override(options):
    opts = options(["country", "source"])
    primary = rows_from_records(
        [
            {"dimension_value": None, "trial_count": 4, "trials_approved_count": 1},
            {"dimension_value": "denmark", "trial_count": 2, "trials_approved_count": 2},
        ],
        opts,
        dashboard.DIMENSIONS["country"],
        COUNTERS,
    )
    ots = OverrideSource(
        "ots",
        dashboard.OTS_FIELDS,
        rows=[
            {"dimension_value": None, "ots_count": 3, "ots_approved_count": 2},
            {"dimension_value": "", "ots_count": 1, "ots_approved_count": 0},
        ],
        normalize=dashboard.title_case,
        append_unmatched=True,
    )

    merged = merge_results(primary, [ots], opts, dashboard.RATIOS)

    assert [r.key.serialize() for r in merged] == ["Unknown", "Denmark"]
    unknown = merged[0]
    assert unknown.metrics["ots"] == 4
    assert unknown.metrics["otsApproved"] == 2
    assert unknown.metrics["approvalRate"] == (1 + 2) / (4 + 4)
