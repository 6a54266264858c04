from __future__ import annotations

from datetime import date, datetime
from typing import Any


def parse_iso_date(value: str) -> date:
    # Accept plain dates and full timestamps (2026-01-23T02:41:28Z)
    value = str(value).strip()
    if len(value) > 10:
        if value.endswith("Z"):
            value = value[:-1] + "+00:00"
        return datetime.fromisoformat(value).date()
    return date.fromisoformat(value)


def iso_date(d: date) -> str:
    return d.strftime("%Y-%m-%d")


def mariadb_datetime(d: date, *, end_of_day: bool = False) -> str:
    return f"{iso_date(d)} {'23:59:59' if end_of_day else '00:00:00'}"


def to_int(value: Any, default: int = 0) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    s = str(value).strip()
    if s == "":
        return default
    try:
        return int(float(s))
    except ValueError:
        return default


def to_float(value: Any, default: float = 0.0) -> float:
    if value is None:
        return default
    if isinstance(value, (int, float)):
        return float(value)
    s = str(value).strip()
    if s == "":
        return default
    try:
        return float(s)
    except ValueError:
        return default


def to_number(value: Any) -> int | float:
    """Counts stay ints; DECIMAL/float sums stay floats."""
    f = to_float(value)
    return int(f) if f.is_integer() else f


def safe_div(n: float, d: float) -> float:
    if d == 0:
        return 0.0
    return n / d


def title_case(value: str) -> str:
    return " ".join(w[:1].upper() + w[1:].lower() for w in str(value).split(" "))


def clamp_limit(limit: int, *, lo: int = 1, hi: int = 10000) -> int:
    return max(lo, min(hi, int(limit)))
