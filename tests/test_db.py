from __future__ import annotations

import asyncio
from dataclasses import replace

import pytest

from reportops.config import Settings
from reportops.db import MariaDBExecutor
from reportops.errors import DatabaseError, RequestTimeoutError


class FakeCursor:
    def __init__(self, delay: float = 0.0, rows=(), error: Exception | None = None):
        self.delay = delay
        self.rows = list(rows)
        self.error = error
        self.description = [("ok",)]

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    async def execute(self, sql, params):
        await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error

    async def fetchall(self):
        return self.rows


class FakeConnection:
    def __init__(self, cursor: FakeCursor):
        self._cursor = cursor
        self.closed = False

    def cursor(self, cursor_class):
        return self._cursor

    def close(self):
        self.closed = True


class FakePool:
    """Mirrors aiomysql: closed connections are dropped on release."""

    def __init__(self, conn: FakeConnection):
        self.conn = conn
        self.free = []

    def acquire(self):
        pool = self

        class _Acquire:
            async def __aenter__(self):
                return pool.conn

            async def __aexit__(self, *exc):
                if not pool.conn.closed:
                    pool.free.append(pool.conn)
                return False

        return _Acquire()


def _executor(cursor: FakeCursor, timeout: float = 30.0) -> tuple[MariaDBExecutor, FakePool]:
    pool = FakePool(FakeConnection(cursor))
    return MariaDBExecutor(replace(Settings(), request_timeout=timeout), pool=pool), pool


@pytest.mark.asyncio
async def test_rows_come_back_and_connection_is_reused():
    executor, pool = _executor(FakeCursor(rows=[{"ok": 1}]))

    result = await executor.query("SELECT 1 AS ok")

    assert result.rows == [{"ok": 1}]
    assert result.columns == ["ok"]
    assert pool.free == [pool.conn]


@pytest.mark.asyncio
async def test_timed_out_connection_is_not_returned_to_pool():
    executor, pool = _executor(FakeCursor(delay=1.0), timeout=0.01)

    with pytest.raises(RequestTimeoutError):
        await executor("SELECT SLEEP(1)")

    assert pool.conn.closed is True
    assert pool.free == []


@pytest.mark.asyncio
async def test_driver_error_keeps_connection_and_is_classified():
    executor, pool = _executor(FakeCursor(error=RuntimeError("Table 'crm.nope' doesn't exist")))

    with pytest.raises(DatabaseError):
        await executor("SELECT * FROM nope")

    assert pool.conn.closed is False
    assert pool.free == [pool.conn]
