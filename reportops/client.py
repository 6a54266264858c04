"""Async HTTP client for the report endpoints.

Mirrors what the table UI does: POST a query, read ``{success, data, error}``
and map failures onto the same error taxonomy the server uses.
"""

from __future__ import annotations

from typing import Any, Mapping

import httpx

from reportops.errors import (
    AppError,
    AuthError,
    NetworkError,
    NotFoundError,
    PermissionDeniedError,
    RequestTimeoutError,
    ValidationError,
)
from reportops.models import Row
from reportops.tree import FetchChildren

ENDPOINTS: dict[str, str] = {
    "dashboard": "/api/dashboard/query",
    "dashboard-timeseries": "/api/dashboard/timeseries",
    "on-page-analysis": "/api/on-page-analysis/query",
    "validation-rate": "/api/validation-rate/query",
    "new-orders": "/api/new-orders/query",
    "marketing": "/api/reports/query",
    "sessions": "/api/sessions/query",
}

STATUS_ERRORS: dict[int, type[AppError]] = {
    400: ValidationError,
    401: AuthError,
    403: PermissionDeniedError,
    404: NotFoundError,
    408: RequestTimeoutError,
}


class ReportClient:
    def __init__(
        self,
        base_url: str,
        *,
        token: str | None = None,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        headers = {"authorization": f"Bearer {token}"} if token else {}
        self._client = httpx.AsyncClient(base_url=base_url, headers=headers, timeout=timeout, transport=transport)

    async def __aenter__(self) -> "ReportClient":
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def post(self, report: str, payload: Mapping[str, Any]) -> dict[str, Any]:
        path = ENDPOINTS.get(report)
        if path is None:
            raise ValidationError(f"Unknown report: {report}")
        try:
            resp = await self._client.post(path, json=dict(payload))
        except httpx.TimeoutException as exc:
            raise RequestTimeoutError() from exc
        except httpx.TransportError as exc:
            raise NetworkError("Network error - please check your connection and try again", {"error": str(exc)}) from exc

        try:
            body = resp.json()
        except ValueError:
            body = {}
        if resp.status_code >= 400 or not body.get("success", False):
            message = str(body.get("error") or f"Request failed with status {resp.status_code}")
            factory = STATUS_ERRORS.get(resp.status_code)
            if factory is not None:
                raise factory(message)
            if resp.status_code == 503:
                raise NetworkError(message)
            raise AppError(message, status_code=resp.status_code if resp.status_code >= 400 else 500)
        return body

    async def query(self, report: str, payload: Mapping[str, Any]) -> list[Row]:
        body = await self.post(report, payload)
        dimensions = list(payload.get("dimensions") or [])
        return [Row.from_dict(r, dimensions) for r in body.get("data") or []]

    def children_fetcher(self, report: str, base_payload: Mapping[str, Any]) -> FetchChildren:
        """Adapt :meth:`query` to the ``(parent_filters, depth)`` callback used by tree restore."""

        async def fetch(parent_filters: dict[str, str], depth: int) -> list[Row]:
            return await self.query(report, {**base_payload, "depth": depth, "parentFilters": parent_filters})

        return fetch
