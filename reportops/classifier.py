from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Sequence

from loguru import logger

from reportops.errors import (
    AppError,
    DatabaseError,
    NetworkError,
    RequestTimeoutError,
    normalize_error,
)

ErrorFactory = Callable[..., AppError]


def _conflict(message: str, details: dict[str, Any] | None = None) -> AppError:
    return DatabaseError(message, details, status_code=409)


@dataclass(frozen=True)
class CodeEntry:
    message: str
    factory: ErrorFactory = DatabaseError


@dataclass(frozen=True)
class FallbackPattern:
    pattern: re.Pattern[str]
    message: str
    factory: ErrorFactory = DatabaseError


@dataclass(frozen=True)
class ErrorClassifierConfig:
    db_label: str
    extract_code: Callable[[BaseException], str | int | None]
    code_map: Mapping[str | int, CodeEntry]
    fallback_patterns: Sequence[FallbackPattern] = field(default_factory=tuple)


# ── shared patterns ─────────────────────────────────────────────

NETWORK_PATTERNS: tuple[tuple[tuple[str, ...], str, ErrorFactory], ...] = (
    (
        ("etimedout", "timeout", "timed out"),
        "Database connection timeout - please check your connection and try again",
        RequestTimeoutError,
    ),
    (
        ("econnrefused", "connection refused"),
        "Unable to connect to database - please check your network connection",
        NetworkError,
    ),
    (
        ("enotfound", "getaddrinfo", "name or service not known"),
        "Database host not found - please check your network connection",
        NetworkError,
    ),
    (
        ("econnreset", "connection reset"),
        "Database connection was reset - please try again",
        NetworkError,
    ),
)

SYNTAX_FALLBACK = FallbackPattern(
    re.compile(r"syntax error|sql syntax"),
    "Database query error - please try again",
)

GENERIC_MESSAGE = "Database query failed"


def classify_database_error(
    error: BaseException,
    query: str,
    params: Sequence[Any] | None,
    config: ErrorClassifierConfig,
) -> AppError:
    """Map a raw driver error to an AppError.

    First match wins: network text patterns, then the vendor code table, then
    vendor fallback patterns plus the shared syntax pattern, then a generic
    database error. The driver text is kept in ``details`` only.
    """
    normalized = normalize_error(error)
    db_code = config.extract_code(error)
    error_message = normalized.message.lower()
    details = {"query": query[:200], "originalError": normalized.message}

    logger.error(
        "{} query error: {} (dbCode={}, paramCount={}) query={!r}",
        config.db_label,
        normalized.message,
        db_code,
        len(params or ()),
        query[:200],
    )

    for needles, message, factory in NETWORK_PATTERNS:
        if any(n in error_message for n in needles):
            return factory(message, details)

    if db_code is not None:
        entry = config.code_map.get(db_code)
        if entry is not None:
            return entry.factory(entry.message, details)

    for fallback in (*config.fallback_patterns, SYNTAX_FALLBACK):
        if fallback.pattern.search(error_message):
            return fallback.factory(fallback.message, details)

    return DatabaseError(GENERIC_MESSAGE, details)


# ── PostgreSQL (asyncpg) ────────────────────────────────────────

def _pg_code(error: BaseException) -> str | None:
    code = getattr(error, "sqlstate", None) or getattr(error, "code", None)
    return str(code) if code else None


PG_ERROR_CONFIG = ErrorClassifierConfig(
    db_label="PostgreSQL",
    extract_code=_pg_code,
    code_map={
        "28P01": CodeEntry("Database authentication failed"),
        "28000": CodeEntry("Database authentication failed"),
        "23505": CodeEntry("This record already exists", _conflict),
        "23503": CodeEntry("Cannot delete - this record is referenced by other data", _conflict),
        "23502": CodeEntry("Required field is missing"),
        "42P01": CodeEntry("Database table not found"),
        "42703": CodeEntry("Database column not found"),
        "40P01": CodeEntry("Database deadlock detected - please try again"),
        "53300": CodeEntry("Too many database connections - please try again shortly"),
        "57P03": CodeEntry("Database is currently unavailable - please try again shortly"),
    },
)


# ── MariaDB (aiomysql / PyMySQL) ────────────────────────────────

def _mariadb_code(error: BaseException) -> int | None:
    # PyMySQL errors carry (errno, message) in args
    if error.args and isinstance(error.args[0], int):
        return error.args[0]
    errno = getattr(error, "errno", None)
    return errno if isinstance(errno, int) else None


MARIADB_ERROR_CONFIG = ErrorClassifierConfig(
    db_label="MariaDB",
    extract_code=_mariadb_code,
    code_map={
        1045: CodeEntry("Database authentication failed"),
        1049: CodeEntry("Database not found"),
        1062: CodeEntry("This record already exists", _conflict),
        1452: CodeEntry("Cannot delete - this record is referenced by other data", _conflict),
        1451: CodeEntry("Cannot delete - this record is referenced by other data", _conflict),
        1048: CodeEntry("Required field is missing"),
        1364: CodeEntry("Required field is missing"),
        1146: CodeEntry("Database table not found"),
        1054: CodeEntry("Database column not found"),
        1213: CodeEntry("Database deadlock detected - please try again"),
        1205: CodeEntry("Database lock timeout - please try again", RequestTimeoutError),
        1203: CodeEntry("Too many database connections - please try again shortly"),
        1040: CodeEntry("Too many database connections - please try again shortly"),
    },
    fallback_patterns=(
        FallbackPattern(re.compile(r"access denied|authentication"), "Database authentication failed"),
    ),
)
