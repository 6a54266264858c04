from __future__ import annotations

from fastapi import APIRouter, Depends

from backend.api.deps import get_service
from backend.api.schemas import QueryRequest, QueryResponse
from reportops.permissions import with_permission
from reportops.service import ReportService

router = APIRouter(dependencies=[Depends(with_permission("analytics.marketing_report", "can_view"))])


@router.post("/query", response_model=QueryResponse, response_model_exclude_none=True)
async def marketing_query(body: QueryRequest, service: ReportService = Depends(get_service)):
    result = await service.marketing(body.to_options())
    return {"success": True, "data": result.to_dicts(), "truncated": result.truncated}
