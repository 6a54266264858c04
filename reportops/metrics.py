from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, Mapping

from reportops.util import safe_div, to_float, to_number


@dataclass(frozen=True)
class Ratio:
    """``sum(numerator fields) / sum(denominator fields)``, 0 when the denominator is 0."""

    name: str
    numerator: tuple[str, ...]
    denominator: tuple[str, ...]
    precision: int | None = None
    # Applied before rounding (cpm is per thousand impressions)
    scale: float = 1

    def compute(self, metrics: Mapping[str, Any]) -> float:
        num = sum(to_float(metrics.get(f)) for f in self.numerator)
        den = sum(to_float(metrics.get(f)) for f in self.denominator)
        value = safe_div(num, den) * self.scale
        if self.precision is not None:
            value = round(value, self.precision)
        return value


def derive_ratios(metrics: Mapping[str, Any], ratios: Iterable[Ratio]) -> dict[str, Any]:
    out = dict(metrics)
    for ratio in ratios:
        out[ratio.name] = ratio.compute(out)
    return out


def sum_counters(rows: Iterable[Mapping[str, Any]], fields: Mapping[str, str]) -> dict[str, int | float]:
    """Sum raw columns into metric names; ``fields`` maps metric name -> column."""
    totals: dict[str, float] = {name: 0.0 for name in fields}
    for row in rows:
        for name, column in fields.items():
            totals[name] += to_float(row.get(column))
    return {name: to_number(v) for name, v in totals.items()}


def read_counters(row: Mapping[str, Any], fields: Mapping[str, str]) -> dict[str, int | float]:
    return {name: to_number(row.get(column)) for name, column in fields.items()}
