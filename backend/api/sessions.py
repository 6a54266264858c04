"""Session report: the whole tree in one response, no per-level fetches."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from backend.api.deps import get_service
from backend.api.schemas import QueryResponse, SessionQueryRequest
from reportops.permissions import with_permission
from reportops.service import ReportService

router = APIRouter(dependencies=[Depends(with_permission("analytics.on_page_analysis", "can_view"))])


@router.post("/query", response_model=QueryResponse, response_model_exclude_none=True)
async def sessions_query(body: SessionQueryRequest, service: ReportService = Depends(get_service)):
    result = await service.sessions(body.to_options())
    return {"success": True, "data": result.to_dicts(), "truncated": result.truncated}
