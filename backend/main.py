from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime, timezone

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from loguru import logger

from backend.api.dashboard import router as dashboard_router
from backend.api.marketing import router as marketing_router
from backend.api.new_orders import router as new_orders_router
from backend.api.on_page import router as on_page_router
from backend.api.sessions import router as sessions_router
from backend.api.validation_rate import router as validation_rate_router
from reportops.config import Settings
from reportops.db import MariaDBExecutor, PostgresExecutor
from reportops.errors import AppError, mask_error_for_client
from reportops.log import setup_logging
from reportops.permissions import StaticPermissionStore
from reportops.service import ReportService

load_dotenv()


def create_app(settings: Settings | None = None, service: ReportService | None = None) -> FastAPI:
    settings = settings or Settings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging(settings.log_level)
        executors: list = []
        if service is None:
            crm, analytics = MariaDBExecutor(settings), PostgresExecutor(settings)
            executors = [crm, analytics]
            app.state.service = ReportService(crm, analytics)
        else:
            app.state.service = service
        if settings.permissions_file:
            app.state.permissions = StaticPermissionStore.from_file(settings.permissions_file)
            logger.info("Permissions loaded from {}", settings.permissions_file)
        else:
            logger.warning("REPORTOPS_PERMISSIONS_FILE not set - report endpoints are open")
        yield
        for executor in executors:
            await executor.close()

    app = FastAPI(title="ReportOps", version="0.1.0", lifespan=lifespan)
    app.state.permissions = None

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(dashboard_router, prefix="/api/dashboard", tags=["dashboard"])
    app.include_router(on_page_router, prefix="/api/on-page-analysis", tags=["on-page-analysis"])
    app.include_router(validation_rate_router, prefix="/api/validation-rate", tags=["validation-rate"])
    app.include_router(new_orders_router, prefix="/api/new-orders", tags=["new-orders"])
    app.include_router(sessions_router, prefix="/api/sessions", tags=["sessions"])
    app.include_router(marketing_router, prefix="/api/reports", tags=["marketing"])

    # ── error handlers ─────────────────────────────────────────────

    @app.exception_handler(RequestValidationError)
    async def _invalid_request(request: Request, exc: RequestValidationError):
        logger.warning("Invalid request to {}: {}", request.url.path, exc.errors())
        return JSONResponse({"success": False, "error": "Invalid request data"}, status_code=400)

    @app.exception_handler(AppError)
    async def _app_error(request: Request, exc: AppError):
        message, code, status = mask_error_for_client(exc, request.url.path)
        return JSONResponse({"success": False, "error": message, "code": code.value}, status_code=status)

    @app.exception_handler(Exception)
    async def _unhandled(request: Request, exc: Exception):
        message, code, status = mask_error_for_client(exc, request.url.path)
        return JSONResponse({"success": False, "error": message, "code": code.value}, status_code=status)

    # ── REST endpoints ─────────────────────────────────────────────

    @app.get("/api/health")
    async def health():
        return {"status": "ok", "timestamp": datetime.now(timezone.utc).isoformat()}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("backend.main:app", host="0.0.0.0", port=8000, reload=True)
