"""Report dispatch: one entry point per report, executors injected."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, replace
from typing import Any, Protocol

from loguru import logger

from reportops.errors import AppError, normalize_error
from reportops.merge import ANALYTICS, CRM, Executor, ReportDefinition, ReportResult, run_report
from reportops.models import DateRange, QueryOptions, Row
from reportops.reports import dashboard, marketing, new_orders, on_page, sessions, validation_rate
from reportops.session_tree import build_session_tree

# The session tree is built in memory from one flat query
SESSION_QUERY_LIMIT = 10000


class ErrorReporter(Protocol):
    def report(self, error: AppError, context: str) -> None: ...


class LoggingErrorReporter:
    def report(self, error: AppError, context: str) -> None:
        logger.error("[{}] {} {}: {}", context, error.code.value, error.status_code, error.message)


@dataclass(frozen=True)
class ValidationRateResult:
    rows: list[Row]
    periods: list[validation_rate.Period]
    truncated: bool = False


REPORTS: dict[str, ReportDefinition] = {
    "dashboard": dashboard.REPORT,
    "on-page-analysis": on_page.REPORT,
    "new-orders": new_orders.REPORT,
    "marketing": marketing.REPORT,
}


class ReportService:
    def __init__(
        self,
        crm_executor: Executor,
        analytics_executor: Executor,
        reporter: ErrorReporter | None = None,
    ) -> None:
        self.executors: dict[str, Executor] = {CRM: crm_executor, ANALYTICS: analytics_executor}
        self.reporter = reporter or LoggingErrorReporter()

    async def _guard(self, context: str, coro):
        try:
            return await coro
        except Exception as e:
            error = normalize_error(e)
            self.reporter.report(error, context)
            raise error from e

    async def run(self, name: str, options: QueryOptions) -> ReportResult:
        report = REPORTS.get(name)
        if report is None:
            raise AppError(f"Unknown report: {name}")
        return await self._guard(name, run_report(report, options, self.executors))

    async def dashboard(self, options: QueryOptions) -> ReportResult:
        return await self.run("dashboard", options)

    async def on_page(self, options: QueryOptions) -> ReportResult:
        return await self.run("on-page-analysis", options)

    async def new_orders(self, options: QueryOptions) -> ReportResult:
        return await self.run("new-orders", options)

    async def marketing(self, options: QueryOptions) -> ReportResult:
        return await self.run("marketing", options)

    async def dashboard_timeseries(self, date_range: DateRange) -> list[dict[str, Any]]:
        async def _run() -> list[dict[str, Any]]:
            main = dashboard.build_timeseries_query(date_range)
            ots = dashboard.build_ots_timeseries_query(date_range)
            rows, ots_rows = await asyncio.gather(
                self.executors[CRM](main.sql, main.params),
                self.executors[CRM](ots.sql, ots.params),
            )
            return dashboard.merge_timeseries(rows, ots_rows)

        return await self._guard("dashboard-timeseries", _run())

    async def validation_rate(
        self, rate_type: str, time_period: str, options: QueryOptions
    ) -> ValidationRateResult:
        async def _run() -> ValidationRateResult:
            periods = validation_rate.generate_time_periods(
                options.date_range.start, options.date_range.end, time_period
            )
            report = validation_rate.validation_rate_report(rate_type, periods)
            scoped = replace(options, date_range=validation_rate.covering_range(periods))
            result = await run_report(report, scoped, self.executors)
            return ValidationRateResult(result.rows, periods, result.truncated)

        return await self._guard("validation-rate", _run())

    async def sessions(self, options: QueryOptions) -> ReportResult:
        async def _run() -> ReportResult:
            scoped = replace(options, depth=0, parent_filters={}, limit=SESSION_QUERY_LIMIT)
            built = sessions.build_session_flat_query(scoped)
            flat = await self.executors[ANALYTICS](built.sql, built.params)
            tree = build_session_tree(flat, options.dimensions, options.sort_by, options.sort_direction)
            return ReportResult(tree, truncated=len(flat) >= SESSION_QUERY_LIMIT)

        return await self._guard("sessions", _run())
