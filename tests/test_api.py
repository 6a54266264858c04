from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from backend.main import create_app
from reportops.config import Settings
from reportops.errors import DatabaseError
from reportops.permissions import StaticPermissionStore, issue_token
from reportops.service import ReportService

from tests.conftest import FakeExecutor

BODY = {"dateRange": {"start": "2026-01-01", "end": "2026-01-31"}, "dimensions": ["country"], "depth": 0}

DASHBOARD_ROWS = [
    {"dimension_value": "denmark", "subscription_count": 2, "trial_count": 2, "trials_approved_count": 1},
]


def _client(crm=None, analytics=None) -> TestClient:
    service = ReportService(crm or FakeExecutor([("FROM subscription s", DASHBOARD_ROWS)]), analytics or FakeExecutor())
    return TestClient(create_app(Settings(), service))


def test_health():
    with _client() as client:
        assert client.get("/api/health").json()["status"] == "ok"


def test_dashboard_query():
    with _client() as client:
        resp = client.post("/api/dashboard/query", json=BODY)

    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    row = body["data"][0]
    assert row["key"] == "Denmark"
    assert row["depth"] == 0
    assert row["hasChildren"] is False
    assert row["metrics"]["approvalRate"] == 0.5
    assert "children" not in row


def test_accepts_iso_timestamps():
    body = {**BODY, "dateRange": {"start": "2026-01-01T00:00:00Z", "end": "2026-01-31T23:59:59.000Z"}}
    with _client() as client:
        assert client.post("/api/dashboard/query", json=body).status_code == 200


@pytest.mark.parametrize(
    "body",
    [
        {**BODY, "dimensions": []},
        {**BODY, "depth": -1},
        {**BODY, "dateRange": {"start": "2026-02-01", "end": "2026-01-01"}},
        {"dimensions": ["country"]},
    ],
)
def test_invalid_request_is_400(body):
    with _client() as client:
        resp = client.post("/api/dashboard/query", json=body)
    assert resp.status_code == 400
    assert resp.json() == {"success": False, "error": "Invalid request data"}


def test_query_build_error_message_is_passed_through():
    with _client() as client:
        resp = client.post("/api/dashboard/query", json={**BODY, "depth": 3})
    assert resp.status_code == 400
    assert resp.json()["error"] == "Invalid depth: 3. Must be 0 to 0."


def test_database_error_is_masked():
    crm = FakeExecutor(error=DatabaseError("Database table not found", {"query": "SELECT secret"}))
    with _client(crm=crm) as client:
        resp = client.post("/api/dashboard/query", json=BODY)

    assert resp.status_code == 500
    assert resp.json()["error"] == "An error occurred while processing your request"
    assert "secret" not in resp.text


def test_validation_rate_returns_period_columns():
    crm = FakeExecutor([("FROM subscription s", [{"dimension_value": "DK", "period_0_trials": 3, "period_0_approved": 3}])])
    body = {**BODY, "rateType": "approval", "timePeriod": "monthly"}
    with _client(crm=crm) as client:
        resp = client.post("/api/validation-rate/query", json=body)

    data = resp.json()
    assert resp.status_code == 200
    period = data["periodColumns"][0]
    assert (period["key"], period["startDate"], period["endDate"]) == ("period_0", "2026-01-01", "2026-01-31")
    assert period["label"].startswith("Jan")
    assert data["data"][0]["metrics"]["period_0_rate"] == 1.0


def test_sessions_returns_nested_children():
    analytics = FakeExecutor([("session_entries", [{"entryDeviceType": "mobile", "entryOsName": "ios", "page_views": 2}])])
    body = {"dateRange": BODY["dateRange"], "dimensions": ["entryDeviceType", "entryOsName"]}
    with _client(analytics=analytics) as client:
        resp = client.post("/api/sessions/query", json=body)

    row = resp.json()["data"][0]
    assert row["key"] == "mobile"
    assert row["children"][0]["key"] == "mobile::ios"
    assert row["children"][0]["attribute"] == "Ios"


def test_permissions_are_enforced():
    store = StaticPermissionStore(secret="s3cret", roles={"analyst": {"analytics.dashboard": ("can_view",)}})
    with _client() as client:
        client.app.state.permissions = store

        assert client.post("/api/dashboard/query", json=BODY).status_code == 401

        analyst = {"authorization": f"Bearer {issue_token('ana', 'analyst', 's3cret')}"}
        assert client.post("/api/dashboard/query", json=BODY, headers=analyst).status_code == 200

        resp = client.post("/api/on-page-analysis/query", json=BODY, headers=analyst)
        assert resp.status_code == 403
        assert resp.json()["error"] == "You do not have permission to perform this action"


def test_marketing_report_endpoint():
    analytics = FakeExecutor(
        [("FROM merged_ads_spending", [{"dimension_value": "Facebook", "cost": 20, "clicks": 4, "impressions": 1000,
                                        "networks": ["Facebook"], "campaign_ids": ["c1"], "adset_ids": [], "ad_ids": []}])]
    )
    crm = FakeExecutor([("FROM subscription s", [{"source": "meta", "campaign_id": "c1", "subscription_count": 2,
                                                  "trials_approved_count": 1}])])
    body = {**BODY, "dimensions": ["network", "campaign"]}
    with _client(crm=crm, analytics=analytics) as client:
        resp = client.post("/api/reports/query", json=body)

    row = resp.json()["data"][0]
    assert row["key"] == "Facebook"
    assert row["hasChildren"] is True
    assert row["metrics"]["subscriptions"] == 2
    assert row["metrics"]["cpc"] == 5.0
    assert row["metrics"]["realCpa"] == 20.0
