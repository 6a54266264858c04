from __future__ import annotations

from datetime import date

import pytest

from reportops.errors import AppError, DatabaseError, ErrorCode
from reportops.service import ReportService

from tests.conftest import FakeExecutor


class RecordingReporter:
    def __init__(self):
        self.reported = []

    def report(self, error, context):
        self.reported.append((error, context))


@pytest.mark.asyncio
async def test_dashboard_runs_primary_and_ots_together(options):
    crm = FakeExecutor(
        [
            ("FROM invoice i", [{"dimension_value": "france", "ots_count": 2, "ots_approved_count": 1}]),
            (
                "FROM subscription s",
                [
                    {
                        "dimension_value": "denmark",
                        "customer_count": 4,
                        "subscription_count": 5,
                        "trial_count": 5,
                        "trials_approved_count": 3,
                        "upsell_count": 0,
                        "upsells_approved_count": 0,
                    }
                ],
            ),
        ]
    )
    service = ReportService(crm, FakeExecutor())

    result = await service.dashboard(options(["country", "source"]))

    assert len(crm.calls) == 2
    data = {r["attribute"]: r for r in result.to_dicts()}
    assert data["Denmark"]["metrics"]["approvalRate"] == 0.6
    assert data["Denmark"]["metrics"]["ots"] == 0
    assert data["France"]["metrics"]["ots"] == 2
    assert data["France"]["key"] == "France"
    assert data["France"]["hasChildren"] is True
    assert result.truncated is False


@pytest.mark.asyncio
async def test_child_rows_reaggregate_to_parent(options):
    """Children of one parent add up to the parent, nothing lost or doubled."""
    top = [{"dimension_value": "denmark", "trial_count": 10, "trials_approved_count": 6}]
    children = [
        {"dimension_value": "google", "trial_count": 7, "trials_approved_count": 4},
        {"dimension_value": None, "trial_count": 2, "trials_approved_count": 1},
        {"dimension_value": "", "trial_count": 1, "trials_approved_count": 1},
    ]

    class ByDepth(FakeExecutor):
        async def __call__(self, sql, params=()):
            self.calls.append((sql, tuple(params)))
            if "FROM invoice i" in sql:
                return []
            return children if "c.country = %s" in sql else top

    crm = ByDepth()
    service = ReportService(crm, FakeExecutor())
    opts = options(["country", "source"])

    parent = (await service.dashboard(opts)).rows[0]
    kids = (await service.dashboard(opts.for_branch(parent.key))).rows

    assert sum(k.metrics["trials"] for k in kids) == parent.metrics["trials"]
    assert sum(k.metrics["trialsApproved"] for k in kids) == parent.metrics["trialsApproved"]
    assert [k.key.serialize() for k in kids] == ["Denmark::Google", "Denmark::Unknown"]
    assert all(parent.key.is_prefix_of(k.key) for k in kids)


@pytest.mark.asyncio
async def test_on_page_unmapped_dimension_without_tracking_matches_has_zero_trials(options):
    analytics = FakeExecutor([("FROM", [{"dimension_value": "/lp", "page_views": 10, "active_time_count": 4,
                                         "bounced_count": 1, "total_active_time": 40}])])
    crm = FakeExecutor()
    service = ReportService(crm, analytics)

    result = await service.on_page(options(["urlPath"]))

    assert len(crm.calls) == 1
    assert "s.tracking_id_4 AS campaign_id" in crm.calls[0][0]
    assert len(analytics.calls) == 2
    metrics = result.rows[0].metrics
    assert metrics["trials"] == 0 and metrics["approvalRate"] == 0
    assert metrics["bounceRate"] == 0.25
    assert metrics["avgActiveTime"] == 10.0


@pytest.mark.asyncio
async def test_on_page_merges_crm_trials_across_source_variants(options):
    analytics = FakeExecutor([("FROM", [{"dimension_value": "google", "page_views": 10}])])
    crm = FakeExecutor(
        [
            (
                "FROM subscription s",
                [
                    {"dimension_value": "google", "trials": 3, "approved": 2},
                    {"dimension_value": "adwords", "trials": 1, "approved": 0},
                ],
            )
        ]
    )
    service = ReportService(crm, analytics)

    result = await service.on_page(options(["utmSource"]))

    metrics = result.rows[0].metrics
    assert metrics["trials"] == 4
    assert metrics["approved"] == 2
    assert metrics["approvalRate"] == 0.5


@pytest.mark.asyncio
async def test_truncated_when_limit_reached(options):
    rows = [{"dimension_value": f"c{i}", "subscription_count": 1} for i in range(3)]
    service = ReportService(FakeExecutor([("FROM subscription s", rows)]), FakeExecutor())

    result = await service.new_orders(options(["country"], limit=3))

    assert result.truncated is True


@pytest.mark.asyncio
async def test_failure_in_co_query_fails_report_and_is_reported(options):
    reporter = RecordingReporter()
    crm = FakeExecutor(error=DatabaseError("Database query failed"))
    service = ReportService(crm, FakeExecutor(), reporter)

    with pytest.raises(DatabaseError):
        await service.dashboard(options(["country"]))

    assert reporter.reported[0][1] == "dashboard"


@pytest.mark.asyncio
async def test_unexpected_error_is_normalized(options):
    service = ReportService(FakeExecutor(error=KeyError("boom")), FakeExecutor(), RecordingReporter())
    with pytest.raises(AppError) as exc:
        await service.new_orders(options(["country"]))
    assert exc.value.code is ErrorCode.SERVER_ERROR


@pytest.mark.asyncio
async def test_validation_rate_returns_periods(options):
    crm = FakeExecutor(
        [("FROM subscription s", [{"dimension_value": "DK", "period_0_trials": 4, "period_0_approved": 1,
                                   "period_1_trials": 0, "period_1_approved": 0}])]
    )
    service = ReportService(crm, FakeExecutor())

    opts = options(["country"])
    result = await service.validation_rate("approval", "biweekly", opts)

    assert [p.key for p in result.periods] == ["period_0", "period_1"]
    assert result.rows[0].metrics["period_0_rate"] == 0.25
    assert result.rows[0].metrics["period_1_rate"] == 0
    assert result.rows[0].attribute == "DK"


@pytest.mark.asyncio
async def test_sessions_builds_tree_from_one_query(options):
    analytics = FakeExecutor(
        [("session_entries", [
            {"entryDeviceType": "mobile", "date": date(2026, 1, 2), "page_views": 3},
            {"entryDeviceType": "mobile", "date": date(2026, 1, 3), "page_views": 4},
        ])]
    )
    service = ReportService(FakeExecutor(), analytics)

    result = await service.sessions(options(["entryDeviceType", "date"]))

    assert len(analytics.calls) == 1
    assert "LIMIT 10000" in analytics.calls[0][0]
    mobile = result.rows[0]
    assert mobile.metrics["pageViews"] == 7
    assert [c.attribute for c in mobile.children] == ["2026-01-03", "2026-01-02"]


@pytest.mark.asyncio
async def test_unknown_parent_drills_into_null_and_empty_rows(options):
    stored = [
        {"utm_source": None, "device": "mobile", "page_views": 2},
        {"utm_source": "", "device": "desktop", "page_views": 5},
    ]

    class PageViews(FakeExecutor):
        async def __call__(self, sql, params=()):
            self.calls.append((sql, tuple(params)))
            if "GROUP BY pv.utm_source" in sql:
                return [{"dimension_value": r["utm_source"], "page_views": r["page_views"]} for r in stored]
            empty_too = "pv.utm_source::text = ''" in sql
            return [
                {"dimension_value": r["device"], "page_views": r["page_views"]}
                for r in stored
                if r["utm_source"] is None or (empty_too and r["utm_source"] == "")
            ]

    service = ReportService(FakeExecutor(), PageViews())
    opts = options(["utmSource", "deviceType"])

    parent = (await service.on_page(opts)).rows[0]
    kids = (await service.on_page(opts.for_branch(parent.key))).rows

    assert parent.attribute == "Unknown"
    assert parent.metrics["pageViews"] == 7
    assert sum(k.metrics["pageViews"] for k in kids) == 7
    assert sorted(k.key.serialize() for k in kids) == ["Unknown::desktop", "Unknown::mobile"]


@pytest.mark.asyncio
async def test_on_page_unknown_source_takes_crm_unknown_trials(options):
    analytics = FakeExecutor([("FROM", [{"dimension_value": None, "page_views": 4}])])
    crm = FakeExecutor(
        [
            (
                "FROM subscription s",
                [
                    {"dimension_value": "unknown", "trials": 2, "approved": 1},
                    {"dimension_value": "", "trials": 2, "approved": 1},
                ],
            )
        ]
    )
    service = ReportService(crm, analytics)

    result = await service.on_page(options(["utmSource"]))

    assert len(result.rows) == 1
    metrics = result.rows[0].metrics
    assert result.rows[0].attribute == "Unknown"
    assert metrics["trials"] == 4
    assert metrics["approvalRate"] == 0.5


@pytest.mark.asyncio
async def test_on_page_splits_tracking_trials_by_visitor_share(options):
    shares = [
        {"dimension_value": "mobile", "source": "google", "campaign_id": "c1", "adset_id": "a1", "ad_id": "d1",
         "unique_visitors": 3},
        {"dimension_value": "desktop", "source": "google", "campaign_id": "c1", "adset_id": "a1", "ad_id": "d1",
         "unique_visitors": 1},
        {"dimension_value": "desktop", "source": "facebook", "campaign_id": "c2", "adset_id": "", "ad_id": "",
         "unique_visitors": 2},
    ]
    analytics = FakeExecutor(
        [
            ("AS campaign_id", shares),
            ("FROM", [{"dimension_value": "mobile", "page_views": 10}, {"dimension_value": "desktop", "page_views": 5}]),
        ]
    )
    crm = FakeExecutor(
        [
            (
                "FROM subscription s",
                [
                    {"source": "adwords", "campaign_id": "c1", "adset_id": "a1", "ad_id": "d1", "trials": 4, "approved": 2},
                    {"source": "meta", "campaign_id": "c2", "adset_id": None, "ad_id": "null", "trials": 1, "approved": 1},
                    {"source": "google", "campaign_id": "c9", "adset_id": "a9", "ad_id": "d9", "trials": 5, "approved": 5},
                ],
            )
        ]
    )
    service = ReportService(crm, analytics)

    result = await service.on_page(options(["deviceType"]))

    mobile, desktop = (r.metrics for r in result.rows)
    assert mobile["trials"] == pytest.approx(3)
    assert mobile["approvalRate"] == 0.5
    assert desktop["trials"] == pytest.approx(2)
    assert desktop["approved"] == pytest.approx(1.5)
    assert len(result.rows) == 2


ADS_BY_DAY = [
    {"dimension_value": date(2026, 1, 2), "cost": 100, "clicks": 50, "impressions": 10000, "conversions": 5,
     "networks": ["Facebook"], "campaign_ids": ["c1"], "adset_ids": ["a1"], "ad_ids": ["d1"]},
    {"dimension_value": date(2026, 1, 1), "cost": 50, "clicks": 10, "impressions": 2000, "conversions": 1,
     "networks": ["Google Ads"], "campaign_ids": ["g1"], "adset_ids": ["ga"], "ad_ids": ["gd"]},
]

CRM_TRACKING = [
    {"source": "facebook", "campaign_id": "c1", "adset_id": "a1", "ad_id": "d1", "day": "2026-01-02",
     "subscription_count": 4, "trials_approved_count": 2},
    {"source": "meta", "campaign_id": "c1", "adset_id": "a1", "ad_id": None, "day": "2026-01-02",
     "subscription_count": 1, "trials_approved_count": 1},
    {"source": "facebook", "campaign_id": "c1", "adset_id": "a1", "ad_id": "d1", "day": "2026-01-01",
     "subscription_count": 2, "trials_approved_count": 0},
    {"source": "adwords", "campaign_id": None, "adset_id": None, "ad_id": None, "day": "2026-01-01",
     "subscription_count": 3, "trials_approved_count": 1},
    {"source": "tiktok", "campaign_id": "t1", "adset_id": "t2", "ad_id": "t3", "day": "2026-01-01",
     "subscription_count": 9, "trials_approved_count": 9},
]

OTS_TRACKING = [
    {"source": "facebook", "campaign_id": "c1", "adset_id": "a1", "ad_id": "d1", "day": "2026-01-02",
     "ots_count": 2, "ots_approved_count": 1},
]


def _marketing_service():
    analytics = FakeExecutor([("FROM merged_ads_spending", ADS_BY_DAY)])
    crm = FakeExecutor([("FROM invoice i", OTS_TRACKING), ("FROM subscription s", CRM_TRACKING)])
    return ReportService(crm, analytics), crm


@pytest.mark.asyncio
async def test_marketing_attributes_crm_by_day_and_reports_the_gap(options):
    service, crm = _marketing_service()

    result = await service.marketing(options(["date"]))

    assert [r.key.serialize() for r in result.rows] == ["2026-01-02", "2026-01-01", "Unknown"]
    jan2, jan1, unknown = (r.metrics for r in result.rows)
    assert jan2["subscriptions"] == 5
    assert jan2["trialsApproved"] == 3
    assert jan2["approvalRate"] == 0.6
    assert jan2["otsApprovalRate"] == 0.5
    assert jan2["cpm"] == 10.0
    assert jan2["realCpa"] == 33.33
    assert jan1["subscriptions"] == 0
    # 10 facebook/google subscriptions in range, 5 placed
    assert unknown["subscriptions"] == 5
    assert unknown["cost"] == 0
    assert len(crm.calls) == 2


@pytest.mark.asyncio
async def test_marketing_network_rows_match_by_source_only(options):
    service, _ = _marketing_service()
    service.executors["analytics"] = FakeExecutor(
        [("FROM merged_ads_spending", [{"dimension_value": "Facebook", "cost": 10, "networks": ["Facebook"],
                                        "campaign_ids": [], "adset_ids": [], "ad_ids": []}])]
    )

    result = await service.marketing(options(["network"]))

    assert [r.attribute for r in result.rows] == ["Facebook"]
    assert result.rows[0].metrics["subscriptions"] == 7
    assert result.rows[0].metrics["ots"] == 2
