"""Postgres access for stored user preferences (psycopg2 pool, named queries, per-request stats)."""

from __future__ import annotations

import contextvars
import logging
import os
import time
from contextlib import contextmanager
from typing import Any, Iterable, Iterator

import psycopg2
import psycopg2.extras
from psycopg2.pool import SimpleConnectionPool


_logger = logging.getLogger("entkit.db")
_query_logger = logging.getLogger("entkit.db.query")

_POOL: SimpleConnectionPool | None = None
_STATS: contextvars.ContextVar[dict | None] = contextvars.ContextVar("entkit_db_stats", default=None)
SLOW_QUERY_MS = float(os.getenv("ENTKIT_QUERY_SLOW_MS", "200"))
LOG_EVERY_QUERY = os.getenv("ENTKIT_QUERY_LOG", "").strip() == "1"
_PARAM_PREVIEW = 80


def database_url() -> str:
    url = (os.getenv("DATABASE_URL") or "").strip()
    if not url:
        raise RuntimeError("DATABASE_URL is required when USE_DB=1")
    return url


def _pool_bounds() -> tuple[int, int]:
    low = int(os.getenv("ENTKIT_DB_POOL_MIN", "1"))
    high = int(os.getenv("ENTKIT_DB_POOL_MAX", "10"))
    return low, max(low, high)


def init_pool(minconn: int | None = None, maxconn: int | None = None) -> SimpleConnectionPool:
    global _POOL
    if _POOL is None:
        low, high = _pool_bounds()
        _POOL = SimpleConnectionPool(minconn or low, maxconn or high, dsn=database_url())
        _logger.info("db_pool_opened min=%s max=%s", minconn or low, maxconn or high)
    return _POOL


def close_pool() -> None:
    global _POOL
    if _POOL is None:
        return
    _POOL.closeall()
    _POOL = None
    _logger.info("db_pool_closed")


# -- per-request statistics ---------------------------------------------------


def reset_db_stats() -> None:
    _STATS.set({"queries": 0, "total_ms": 0.0})


def get_db_stats() -> dict:
    stats = _STATS.get()
    return stats if isinstance(stats, dict) else {"queries": 0, "total_ms": 0.0}


def _preview(params: Iterable[Any] | None) -> list | None:
    if params is None:
        return None
    shown = []
    for value in params:
        if isinstance(value, str) and len(value) > _PARAM_PREVIEW:
            value = f"{value[:40]}...({len(value)} chars)"
        shown.append(value)
    return shown


def _record(query_name: str | None, params: Iterable[Any] | None, elapsed_ms: float, rowcount: int) -> None:
    stats = dict(get_db_stats())
    stats["queries"] = stats.get("queries", 0) + 1
    stats["total_ms"] = stats.get("total_ms", 0.0) + elapsed_ms
    _STATS.set(stats)

    slow = elapsed_ms >= SLOW_QUERY_MS
    if not (slow or query_name or LOG_EVERY_QUERY):
        return
    line = "query=%s ms=%.2f rows=%s params=%s"
    args = (query_name or "unnamed", elapsed_ms, rowcount, _preview(params))
    if slow:
        _query_logger.warning("db_slow_" + line, *args)
    else:
        _query_logger.info("db_" + line, *args)


# -- connections and statements -----------------------------------------------


@contextmanager
def get_conn() -> Iterator[Any]:
    """Borrow a pooled connection; commit on success, roll back on error."""
    pool = init_pool()
    conn = pool.getconn()
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        pool.putconn(conn)


@contextmanager
def _timed_cursor(conn, sql: str, params: Iterable[Any] | None, query_name: str | None, *, dict_rows: bool = False):
    factory = psycopg2.extras.RealDictCursor if dict_rows else None
    start = time.perf_counter()
    with conn.cursor(cursor_factory=factory) as cur:
        cur.execute(sql, list(params or []))
        yield cur
        rowcount = cur.rowcount
    _record(query_name, params, (time.perf_counter() - start) * 1000, rowcount)


def fetch_one(conn, sql: str, params: Iterable[Any] | None = None, query_name: str | None = None) -> dict | None:
    with _timed_cursor(conn, sql, params, query_name, dict_rows=True) as cur:
        row = cur.fetchone()
    return dict(row) if row else None


def execute(conn, sql: str, params: Iterable[Any] | None = None, query_name: str | None = None) -> int:
    with _timed_cursor(conn, sql, params, query_name) as cur:
        rowcount = cur.rowcount
    return rowcount
