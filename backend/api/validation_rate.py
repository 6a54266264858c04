from __future__ import annotations

from fastapi import APIRouter, Depends

from backend.api.deps import get_service
from backend.api.schemas import ValidationRateRequest, ValidationRateResponse
from reportops.permissions import with_permission
from reportops.service import ReportService

router = APIRouter(dependencies=[Depends(with_permission("analytics.validation_reports", "can_view"))])


@router.post("/query", response_model=ValidationRateResponse, response_model_exclude_none=True)
async def validation_rate_query(body: ValidationRateRequest, service: ReportService = Depends(get_service)):
    result = await service.validation_rate(body.rate_type, body.time_period, body.to_options())
    return {
        "success": True,
        "data": [r.to_dict() for r in result.rows],
        "periodColumns": [p.to_dict() for p in result.periods],
        "truncated": result.truncated,
    }
