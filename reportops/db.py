"""Pooled executors for the two stores.

Both executors are plain ``async (sql, params) -> list[dict]`` callables so
the report layer can be driven by fakes in tests. Pools are created lazily on
first use; every driver error is classified here and re-raised as an
:class:`~reportops.errors.AppError`.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Sequence

import aiomysql
import asyncpg
from loguru import logger

from reportops.classifier import MARIADB_ERROR_CONFIG, PG_ERROR_CONFIG, classify_database_error
from reportops.config import Settings
from reportops.errors import AppError


@dataclass(frozen=True)
class QueryResult:
    rows: list[dict[str, Any]]
    columns: list[str]
    row_count: int
    sql: str
    params: tuple[Any, ...]


class MariaDBExecutor:
    """CRM store (aiomysql, ``%s`` placeholders)."""

    def __init__(self, settings: Settings, pool: aiomysql.Pool | None = None) -> None:
        self.settings = settings
        self._pool = pool
        self._lock = asyncio.Lock()

    async def _get_pool(self) -> aiomysql.Pool:
        async with self._lock:
            if self._pool is None:
                s = self.settings
                self._pool = await aiomysql.create_pool(
                    host=s.mariadb_host,
                    port=s.mariadb_port,
                    user=s.mariadb_user,
                    password=s.mariadb_password,
                    db=s.mariadb_database,
                    charset="utf8mb4",
                    autocommit=True,
                    connect_timeout=s.connect_timeout,
                    minsize=1,
                    maxsize=10,
                )
                logger.info("MariaDB pool created for {}:{}", s.mariadb_host, s.mariadb_port)
        return self._pool

    async def query(self, sql: str, params: Sequence[Any] = ()) -> QueryResult:
        try:
            pool = await self._get_pool()
            async with pool.acquire() as conn:
                try:
                    async with conn.cursor(aiomysql.DictCursor) as cur:
                        await asyncio.wait_for(cur.execute(sql, tuple(params)), self.settings.request_timeout)
                        rows = [dict(r) for r in await cur.fetchall()]
                        columns = [d[0] for d in (cur.description or [])]
                except (asyncio.TimeoutError, asyncio.CancelledError):
                    # Unread packets may remain; the pool drops closed connections on release
                    conn.close()
                    raise
        except AppError:
            raise
        except Exception as e:
            raise classify_database_error(e, sql, params, MARIADB_ERROR_CONFIG) from e
        return QueryResult(rows, columns, len(rows), sql, tuple(params))

    async def __call__(self, sql: str, params: Sequence[Any] = ()) -> list[dict[str, Any]]:
        return (await self.query(sql, params)).rows

    async def ping(self) -> bool:
        await self("SELECT 1 AS ok")
        return True

    async def close(self) -> None:
        if self._pool is not None:
            self._pool.close()
            await self._pool.wait_closed()
            self._pool = None


class PostgresExecutor:
    """Analytics store (asyncpg, ``$n`` placeholders)."""

    def __init__(self, settings: Settings, pool: asyncpg.Pool | None = None) -> None:
        self.settings = settings
        self._pool = pool
        self._lock = asyncio.Lock()

    async def _get_pool(self) -> asyncpg.Pool:
        async with self._lock:
            if self._pool is None:
                if not self.settings.database_url:
                    raise AppError("DATABASE_URL is not configured")
                self._pool = await asyncpg.create_pool(
                    self.settings.database_url,
                    min_size=1,
                    max_size=8,
                    timeout=self.settings.connect_timeout,
                    command_timeout=self.settings.request_timeout,
                )
                logger.info("PostgreSQL pool created")
        return self._pool

    async def query(self, sql: str, params: Sequence[Any] = ()) -> QueryResult:
        try:
            pool = await self._get_pool()
            async with pool.acquire() as conn:
                records = await conn.fetch(sql, *params)
        except AppError:
            raise
        except Exception as e:
            raise classify_database_error(e, sql, params, PG_ERROR_CONFIG) from e
        rows = [dict(r) for r in records]
        columns = list(records[0].keys()) if records else []
        return QueryResult(rows, columns, len(rows), sql, tuple(params))

    async def __call__(self, sql: str, params: Sequence[Any] = ()) -> list[dict[str, Any]]:
        return (await self.query(sql, params)).rows

    async def ping(self) -> bool:
        await self("SELECT 1 AS ok")
        return True

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None


# ── module-level defaults ───────────────────────────────────────

_mariadb: MariaDBExecutor | None = None
_postgres: PostgresExecutor | None = None


def default_executors(settings: Settings | None = None) -> tuple[MariaDBExecutor, PostgresExecutor]:
    global _mariadb, _postgres
    if _mariadb is None or _postgres is None:
        settings = settings or Settings.from_env()
        _mariadb = MariaDBExecutor(settings)
        _postgres = PostgresExecutor(settings)
    return _mariadb, _postgres


async def execute_query(sql: str, params: Sequence[Any] = ()) -> list[dict[str, Any]]:
    """Run against the PostgreSQL analytics store."""
    return await default_executors()[1](sql, params)


async def execute_mariadb_query(sql: str, params: Sequence[Any] = ()) -> list[dict[str, Any]]:
    """Run against the MariaDB CRM store."""
    return await default_executors()[0](sql, params)


async def close_default_executors() -> None:
    global _mariadb, _postgres
    for executor in (_mariadb, _postgres):
        if executor is not None:
            await executor.close()
    _mariadb = _postgres = None
