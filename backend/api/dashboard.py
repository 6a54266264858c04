from __future__ import annotations

from fastapi import APIRouter, Depends

from backend.api.deps import get_service
from backend.api.schemas import QueryRequest, QueryResponse, TimeseriesRequest
from reportops.permissions import with_permission
from reportops.service import ReportService

router = APIRouter(dependencies=[Depends(with_permission("analytics.dashboard", "can_view"))])


@router.post("/query", response_model=QueryResponse, response_model_exclude_none=True)
async def dashboard_query(body: QueryRequest, service: ReportService = Depends(get_service)):
    result = await service.dashboard(body.to_options())
    return {"success": True, "data": result.to_dicts(), "truncated": result.truncated}


@router.post("/timeseries", response_model=QueryResponse, response_model_exclude_none=True)
async def dashboard_timeseries(body: TimeseriesRequest, service: ReportService = Depends(get_service)):
    points = await service.dashboard_timeseries(body.date_range.to_range())
    return {"success": True, "data": points}
