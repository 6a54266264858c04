from __future__ import annotations

from fastapi import APIRouter, Depends

from backend.api.deps import get_service
from backend.api.schemas import QueryRequest, QueryResponse
from reportops.permissions import with_permission
from reportops.service import ReportService

router = APIRouter(dependencies=[Depends(with_permission("analytics.on_page_analysis", "can_view"))])


@router.post("/query", response_model=QueryResponse, response_model_exclude_none=True)
async def on_page_query(body: QueryRequest, service: ReportService = Depends(get_service)):
    result = await service.on_page(body.to_options())
    return {"success": True, "data": result.to_dicts(), "truncated": result.truncated}
