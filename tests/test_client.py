from __future__ import annotations

import json

import httpx
import pytest

from reportops.client import ReportClient
from reportops.errors import AuthError, NetworkError, RequestTimeoutError, ValidationError
from reportops.tree import restore_expanded_rows

from tests.conftest import make_row

DIMS = ["country", "source"]
BASE = {"dateRange": {"start": "2026-01-01", "end": "2026-01-31"}, "dimensions": DIMS}


def _row(key: str, depth: int, has_children: bool) -> dict:
    return {"key": key, "attribute": key.split("::")[-1], "depth": depth, "hasChildren": has_children, "metrics": {"trials": 1}}


def _client(handler) -> ReportClient:
    return ReportClient("http://reports.test", token="t0k", transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_query_parses_rows_into_typed_keys():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["auth"] = request.headers["authorization"]
        return httpx.Response(200, json={"success": True, "data": [_row("Denmark", 0, True)]})

    async with _client(handler) as client:
        rows = await client.query("dashboard", {**BASE, "depth": 0})

    assert seen == {"path": "/api/dashboard/query", "auth": "Bearer t0k"}
    assert rows[0].key.as_filters() == {"country": "Denmark"}
    assert rows[0].has_children is True


@pytest.mark.parametrize(
    "status, error",
    [(400, ValidationError), (401, AuthError), (408, RequestTimeoutError), (503, NetworkError)],
)
@pytest.mark.asyncio
async def test_error_statuses_map_to_app_errors(status, error):
    def handler(request):
        return httpx.Response(status, json={"success": False, "error": "nope"})

    async with _client(handler) as client:
        with pytest.raises(error) as exc:
            await client.query("dashboard", BASE)
    assert exc.value.message == "nope"


@pytest.mark.asyncio
async def test_timeout_and_transport_failures():
    def slow(request):
        raise httpx.ReadTimeout("slow", request=request)

    def down(request):
        raise httpx.ConnectError("refused", request=request)

    async with _client(slow) as client:
        with pytest.raises(RequestTimeoutError):
            await client.query("dashboard", BASE)
    async with _client(down) as client:
        with pytest.raises(NetworkError):
            await client.query("dashboard", BASE)


@pytest.mark.asyncio
async def test_children_fetcher_drives_restore():
    def handler(request):
        payload = json.loads(request.content)
        if payload["parentFilters"] == {"country": "Denmark"}:
            return httpx.Response(200, json={"success": True, "data": [_row("Denmark::Google", 1, False)]})
        return httpx.Response(500, json={"success": False, "error": "An internal error occurred"})

    tree = [make_row("Denmark", DIMS), make_row("Sweden", DIMS)]
    async with _client(handler) as client:
        result = await restore_expanded_rows(
            ["Denmark", "Sweden"], tree, DIMS, client.children_fetcher("dashboard", BASE)
        )

    assert [k.serialize() for k in result.valid_keys] == ["Denmark"]
    assert result.rows[0].children[0].key.serialize() == "Denmark::Google"
    assert result.rows[1].children is None
