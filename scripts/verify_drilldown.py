#!/usr/bin/env python3
"""Check that a report's depth-1 rows add up to their depth-0 parent.

Runs the top level of a report, then the children of one parent (the
largest by default), and prints every counter whose child sum differs from
the parent value. Exits 1 when anything is lost or double counted.
"""

import argparse
import asyncio
import json
import sys

from reportops.config import Settings, load_env
from reportops.db import MariaDBExecutor, PostgresExecutor
from reportops.log import setup_logging
from reportops.models import DateRange, Row, QueryOptions
from reportops.service import REPORTS, ReportService
from reportops.util import parse_iso_date, to_float


def compare(parent: Row, children: list[Row], counters: list[str]) -> dict[str, dict[str, float]]:
    mismatches = {}
    for name in counters:
        expected = to_float(parent.metrics.get(name))
        actual = sum(to_float(c.metrics.get(name)) for c in children)
        if abs(expected - actual) > 1e-9:
            mismatches[name] = {"parent": expected, "children": actual}
    return mismatches


async def verify(args: argparse.Namespace) -> int:
    settings = Settings.from_env()
    crm, analytics = MariaDBExecutor(settings), PostgresExecutor(settings)
    service = ReportService(crm, analytics)
    report = REPORTS[args.report]
    counters = list(report.counters) + [f for o in report.overrides for f in o.source.fields]

    try:
        options = QueryOptions(
            date_range=DateRange(parse_iso_date(args.start_date), parse_iso_date(args.end_date)),
            dimensions=tuple(args.dimensions.split(",")),
            limit=10000,
        )
        top = (await service.run(args.report, options)).rows
        if not top:
            print("No rows at depth 0")
            return 0
        if args.parent:
            parent = next((r for r in top if r.key.serialize() == args.parent), None)
            if parent is None:
                print(f"Parent {args.parent!r} not found at depth 0")
                return 1
        else:
            parent = max(top, key=lambda r: to_float(r.metrics.get(counters[0])))

        children = (await service.run(args.report, options.for_branch(parent.key))).rows
        mismatches = compare(parent, children, counters)
    finally:
        await crm.close()
        await analytics.close()

    print(json.dumps({"parent": parent.key.serialize(), "children": len(children), "mismatches": mismatches}, indent=2))
    return 1 if mismatches else 0


if __name__ == "__main__":
    parser = argparse.ArgumentParser()
    parser.add_argument("report", choices=sorted(REPORTS))
    parser.add_argument("--start-date", required=True)
    parser.add_argument("--end-date", required=True)
    parser.add_argument("--dimensions", required=True, help="At least two, e.g. country,source")
    parser.add_argument("--parent", default="", help="Depth-0 key to drill into (default: largest row)")
    args = parser.parse_args()
    load_env()
    setup_logging(Settings.from_env().log_level)
    sys.exit(asyncio.run(verify(args)))
