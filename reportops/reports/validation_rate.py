"""Approval / pay / buy rates pivoted by time period.

Each row carries, per period, the trials started in that period and how many
of them were approved (or paid, or bought). Periods are generated backwards
from the end date so the most recent one is always complete.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, timedelta
from typing import Literal

from reportops.builder import BuiltQuery, DimensionColumn, Placeholder, QuerySpec, build_query, iso_date_params
from reportops.errors import QueryBuildError
from reportops.metrics import Ratio
from reportops.merge import CRM, ReportDefinition
from reportops.models import DateRange, QueryOptions
from reportops.reports import crm
from reportops.util import iso_date

RateType = Literal["approval", "pay", "buy"]
TimePeriod = Literal["weekly", "biweekly", "monthly"]

RATE_TYPES: tuple[str, ...] = ("approval", "pay", "buy")
TIME_PERIODS: tuple[str, ...] = ("weekly", "biweekly", "monthly")

MAX_PERIODS = 52
# A row is shown when at least one period has this many trials
MIN_TRIALS = 3

MONTHS = ("Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")


@dataclass(frozen=True)
class Period:
    key: str
    label: str
    start: date
    end: date

    def to_dict(self) -> dict[str, str]:
        return {"key": self.key, "label": self.label, "startDate": iso_date(self.start), "endDate": iso_date(self.end)}


def _label(start: date, end: date, period: str, today: date) -> str:
    if period == "monthly":
        name = MONTHS[start.month - 1]
        return name if start.year == today.year else f"{name} {start.year}"
    if start.month == end.month:
        return f"{MONTHS[start.month - 1]} {start.day}-{end.day}"
    return f"{MONTHS[start.month - 1]} {start.day} - {MONTHS[end.month - 1]} {end.day}"


def generate_time_periods(start: date, end: date, period: str, *, today: date | None = None) -> list[Period]:
    if period not in TIME_PERIODS:
        raise QueryBuildError(f"Invalid time period: {period}")
    today = today or date.today()

    spans: list[tuple[date, date]] = []
    current_end = end
    while current_end >= start and len(spans) < MAX_PERIODS:
        if period == "weekly":
            current_start = current_end - timedelta(days=6)
        elif period == "biweekly":
            day = 15 if current_end.day >= 15 else 1
            current_start = current_end.replace(day=day)
        else:
            current_start = current_end.replace(day=1)
        current_start = max(current_start, start)
        spans.append((current_start, current_end))

        if period == "biweekly" and current_start.day == 15:
            current_end = current_start.replace(day=14)
        else:
            current_end = current_start - timedelta(days=1)

    spans.reverse()
    return [
        Period(f"period_{i}", _label(s, e, period, today), s, e)
        for i, (s, e) in enumerate(spans)
    ]


# ── query ───────────────────────────────────────────────────────

def _nullable(column: str) -> DimensionColumn:
    return DimensionColumn(column, null_check=f"({column} IS NULL OR {column} = '')", normalize=None)


DIMENSIONS: dict[str, DimensionColumn] = {
    "country": _nullable("c.country"),
    "source": _nullable("sr.source"),
    "product": _nullable("p.product_name"),
    "campaign": _nullable("s.tracking_id_4"),
    "adset": _nullable("s.tracking_id_2"),
    "ad": _nullable("s.tracking_id"),
}

MATCHED_CONDITION: dict[str, str] = {
    "approval": "i.is_marked = 1",
    "pay": "ipr.date_paid IS NOT NULL",
    "buy": "ipr.date_bought IS NOT NULL",
}

PROCESSED_JOIN = "LEFT JOIN invoice_proccessed ipr ON ipr.invoice_id = i.id"

IN_PERIOD = "DATE(s.date_create) BETWEEN %s AND %s"


def _period_params(period: Period) -> tuple[str, str]:
    return iso_date(period.start), iso_date(period.end)


def validation_rate_report(rate_type: str, periods: list[Period]) -> ReportDefinition:
    if rate_type not in MATCHED_CONDITION:
        raise QueryBuildError(f"Invalid rate type: {rate_type}")
    if not periods:
        raise QueryBuildError("No time periods generated")

    matched = MATCHED_CONDITION[rate_type]
    metrics: list[str] = []
    select_params: list[str] = []
    having: list[str] = []
    having_params: list[str] = []
    counters: dict[str, str] = {}
    ratios: list[Ratio] = []
    for period in periods:
        metrics.append(f"COUNT(DISTINCT CASE WHEN {IN_PERIOD} THEN i.id END) AS {period.key}_trials")
        metrics.append(f"COUNT(DISTINCT CASE WHEN {IN_PERIOD} AND {matched} THEN i.id END) AS {period.key}_approved")
        select_params.extend(_period_params(period) * 2)
        having.append(f"COUNT(DISTINCT CASE WHEN {IN_PERIOD} THEN i.id END) >= {MIN_TRIALS}")
        having_params.extend(_period_params(period))
        counters[f"{period.key}_trials"] = f"{period.key}_trials"
        counters[f"{period.key}_approved"] = f"{period.key}_approved"
        ratios.append(Ratio(f"{period.key}_rate", (f"{period.key}_approved",), (f"{period.key}_trials",)))

    joins = [
        "FROM subscription s",
        crm.JOIN_CUSTOMER,
        crm.JOIN_TRIAL_INVOICE_INNER,
        "LEFT JOIN invoice_product ip ON ip.invoice_id = i.id",
        crm.JOIN_PRODUCT,
        crm.JOIN_SOURCE_SUB,
    ]
    if rate_type != "approval":
        joins.append(PROCESSED_JOIN)

    spec = QuerySpec(
        name=f"{rate_type}-rate",
        dimensions=DIMENSIONS,
        metrics=tuple(metrics),
        from_clause="\n".join(joins),
        date_clause="DATE(s.date_create) BETWEEN {start} AND {end}",
        placeholder=Placeholder.QMARK,
        having=tuple(having),
        date_params=iso_date_params,
        select_params=tuple(select_params),
        having_params=tuple(having_params),
    )
    return ReportDefinition(name=spec.name, store=CRM, spec=spec, counters=counters, ratios=tuple(ratios))


def build_validation_rate_query(
    rate_type: str, options: QueryOptions, periods: list[Period]
) -> BuiltQuery:
    return build_query(validation_rate_report(rate_type, periods).spec, options)


def covering_range(periods: list[Period]) -> DateRange:
    return DateRange(periods[0].start, periods[-1].end)
