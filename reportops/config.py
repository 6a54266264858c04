from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

from reportops.models import DEFAULT_QUERY_LIMIT


def load_env(path: str | Path | None = None) -> None:
    load_dotenv(path or Path.cwd() / ".env")


def _int(name: str, default: int) -> int:
    raw = os.environ.get(name, "").strip()
    return int(raw) if raw else default


def _float(name: str, default: float) -> float:
    raw = os.environ.get(name, "").strip()
    return float(raw) if raw else default


@dataclass(frozen=True)
class Settings:
    mariadb_host: str = "localhost"
    mariadb_port: int = 3306
    mariadb_user: str = "root"
    mariadb_password: str = ""
    mariadb_database: str = ""
    database_url: str = ""
    query_limit: int = DEFAULT_QUERY_LIMIT
    connect_timeout: float = 30.0
    request_timeout: float = 30.0
    log_level: str = "INFO"
    permissions_file: str = ""
    cors_origins: tuple[str, ...] = ("*",)

    @classmethod
    def from_env(cls) -> "Settings":
        origins = os.environ.get("REPORTOPS_CORS_ORIGINS", "*")
        return cls(
            mariadb_host=os.environ.get("MARIADB_HOST", "localhost"),
            mariadb_port=_int("MARIADB_PORT", 3306),
            mariadb_user=os.environ.get("MARIADB_USER", "root"),
            mariadb_password=os.environ.get("MARIADB_PASSWORD", ""),
            mariadb_database=os.environ.get("MARIADB_DATABASE", ""),
            database_url=os.environ.get("DATABASE_URL", ""),
            query_limit=_int("REPORTOPS_QUERY_LIMIT", DEFAULT_QUERY_LIMIT),
            connect_timeout=_float("REPORTOPS_CONNECT_TIMEOUT", 30.0),
            request_timeout=_float("REPORTOPS_REQUEST_TIMEOUT", 30.0),
            log_level=os.environ.get("REPORTOPS_LOG_LEVEL", "INFO").upper(),
            permissions_file=os.environ.get("REPORTOPS_PERMISSIONS_FILE", ""),
            cors_origins=tuple(o.strip() for o in origins.split(",") if o.strip()),
        )
