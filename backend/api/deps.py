from __future__ import annotations

from fastapi import Request

from reportops.service import ReportService


def get_service(request: Request) -> ReportService:
    return request.app.state.service
