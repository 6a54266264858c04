from __future__ import annotations

import argparse
import asyncio
import json
import sys
from typing import Any

from reportops.builder import BuiltQuery
from reportops.config import Settings, load_env
from reportops.db import MariaDBExecutor, PostgresExecutor
from reportops.errors import AppError
from reportops.log import setup_logging
from reportops.models import DateRange, QueryOptions
from reportops.reports import dashboard, marketing, new_orders, on_page, sessions, validation_rate
from reportops.service import ReportService
from reportops.util import parse_iso_date

REPORTS = ("dashboard", "on-page-analysis", "marketing", "validation-rate", "new-orders", "sessions")


def _print(obj: object) -> None:
    print(json.dumps(obj, indent=2, sort_keys=True, default=str))


def _options(args: argparse.Namespace) -> QueryOptions:
    filters: dict[str, str] = {}
    for item in args.filter:
        dim, sep, value = item.partition("=")
        if not sep:
            raise SystemExit(f"--filter expects dim=value, got {item!r}")
        filters[dim] = value
    return QueryOptions(
        date_range=DateRange(parse_iso_date(args.start_date), parse_iso_date(args.end_date)),
        dimensions=tuple(d.strip() for d in args.dimensions.split(",") if d.strip()),
        depth=args.depth,
        parent_filters=filters,
        sort_by=args.sort_by or None,
        sort_direction=args.sort_direction,
        limit=args.limit,
    )


def build_sql(args: argparse.Namespace) -> list[dict[str, Any]]:
    options = _options(args)
    built: list[BuiltQuery | None]
    if args.report == "dashboard":
        built = [dashboard.build_dashboard_query(options), dashboard.build_ots_query(options)]
    elif args.report == "on-page-analysis":
        built = [
            on_page.build_on_page_query(options),
            on_page.build_crm_trial_query(options),
            on_page.build_crm_tracking_query(options),
            on_page.build_tracking_share_query(options),
        ]
    elif args.report == "marketing":
        built = [
            marketing.build_marketing_query(options),
            marketing.build_subscription_tracking_query(options),
            marketing.build_ots_tracking_query(options),
        ]
    elif args.report == "new-orders":
        built = [new_orders.build_new_orders_query(options)]
    elif args.report == "validation-rate":
        periods = validation_rate.generate_time_periods(
            options.date_range.start, options.date_range.end, args.time_period
        )
        built = [validation_rate.build_validation_rate_query(args.rate_type, options, periods)]
    else:
        built = [sessions.build_session_flat_query(options)]
    return [b.as_dict() for b in built if b is not None]


async def run_query(args: argparse.Namespace, settings: Settings) -> dict[str, Any]:
    options = _options(args)
    crm, analytics = MariaDBExecutor(settings), PostgresExecutor(settings)
    service = ReportService(crm, analytics)
    try:
        if args.report == "validation-rate":
            result = await service.validation_rate(args.rate_type, args.time_period, options)
            return {
                "data": [r.to_dict() for r in result.rows],
                "periodColumns": [p.to_dict() for p in result.periods],
                "truncated": result.truncated,
            }
        if args.report == "sessions":
            report = await service.sessions(options)
        else:
            report = await service.run(args.report, options)
        return {"data": report.to_dicts(), "truncated": report.truncated}
    finally:
        await crm.close()
        await analytics.close()


def main(argv: list[str]) -> int:
    parser = argparse.ArgumentParser(prog="reportops", description="Build or run hierarchical report queries.")
    parser.add_argument("--env-file", type=str, default="", help="Optional .env path (default: ./.env)")

    sub = parser.add_subparsers(dest="cmd", required=True)
    sql = sub.add_parser("sql", help="Print the SQL and params for one report level (no database).")
    query = sub.add_parser("query", help="Run one report level and print its rows as JSON.")
    for p in (sql, query):
        p.add_argument("report", type=str, choices=REPORTS)
        p.add_argument("--start-date", type=str, required=True)
        p.add_argument("--end-date", type=str, required=True)
        p.add_argument("--dimensions", type=str, required=True, help="Comma-separated, e.g. country,source")
        p.add_argument("--depth", type=int, default=0)
        p.add_argument("--filter", action="append", default=[], help="Parent filter dim=value (repeatable)")
        p.add_argument("--sort-by", type=str, default="")
        p.add_argument("--sort-direction", type=str, default="DESC", choices=["ASC", "DESC"])
        p.add_argument("--limit", type=int, default=1000)
        p.add_argument("--rate-type", type=str, default="approval", choices=list(validation_rate.RATE_TYPES))
        p.add_argument("--time-period", type=str, default="biweekly", choices=list(validation_rate.TIME_PERIODS))

    args = parser.parse_args(argv)
    load_env(args.env_file or None)
    settings = Settings.from_env()
    setup_logging(settings.log_level)

    try:
        if args.cmd == "sql":
            _print(build_sql(args))
            return 0
        if args.cmd == "query":
            _print(asyncio.run(run_query(args, settings)))
            return 0
    except AppError as e:
        _print({"success": False, "error": e.message, "code": e.code.value})
        return 1

    raise SystemExit(f"Unknown command: {args.cmd}")


def _entry() -> int:
    return main(sys.argv[1:])


if __name__ == "__main__":
    raise SystemExit(_entry())
