# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Ourochronos Contributors

"""Database connection management for airc.

Config via AIRC_DB_* environment variables. Connection and statement
timeouts come from AIRC_STORE_TIMEOUT_SECONDS so that no store access
blocks indefinitely; any driver-level failure surfaces as
StoreUnavailableError.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Generator
from contextlib import contextmanager
from typing import Any

import psycopg2
from psycopg2 import pool as psycopg2_pool
from psycopg2.extras import RealDictCursor
from psycopg2.pool import PoolError

from .config import get_config
from .exceptions import StoreUnavailableError

logger = logging.getLogger(__name__)

# Connection pool (lazy init, thread-safe)
_pool: psycopg2_pool.ThreadedConnectionPool | None = None
_pool_lock = threading.Lock()


def _get_pool() -> psycopg2_pool.ThreadedConnectionPool:
    """Get or create the connection pool."""
    global _pool
    if _pool is None:
        with _pool_lock:
            if _pool is None:
                config = get_config()
                try:
                    _pool = psycopg2_pool.ThreadedConnectionPool(
                        minconn=config.db_pool_min,
                        maxconn=config.db_pool_max,
                        **config.connection_params,
                    )
                except psycopg2.OperationalError as e:
                    raise StoreUnavailableError(f"Database connection failed: {e}", backend="postgres") from e
    return _pool


def _validate_connection(conn: Any) -> bool:
    """Check if a connection is valid and healthy."""
    if conn.closed:
        return False

    try:
        with conn.cursor() as cur:
            cur.execute("SELECT 1")
            cur.fetchone()
        return True
    except psycopg2.Error:
        return False


def _get_healthy_connection(pool: psycopg2_pool.ThreadedConnectionPool) -> Any:
    """Get a healthy connection from pool, discarding stale ones."""
    max_attempts = 3
    for _attempt in range(max_attempts):
        try:
            conn = pool.getconn()
        except PoolError as e:
            raise StoreUnavailableError(f"Connection pool exhausted: {e}", backend="postgres") from e
        if _validate_connection(conn):
            return conn
        pool.putconn(conn, close=True)

    raise StoreUnavailableError("Failed to get healthy connection after multiple attempts", backend="postgres")


@contextmanager
def get_cursor() -> Generator[Any, None, None]:
    """Get a database cursor with commit on success, rollback on error.

    Driver errors that indicate the database is unreachable or slow are
    re-raised as StoreUnavailableError; integrity errors propagate unchanged.

    Usage:
        with get_cursor() as cur:
            cur.execute("SELECT * FROM airc_identities")
            rows = cur.fetchall()
    """
    pool = _get_pool()
    conn = _get_healthy_connection(pool)
    try:
        with conn.cursor(cursor_factory=RealDictCursor) as cur:
            yield cur
        conn.commit()
    except psycopg2.OperationalError as e:
        conn.rollback()
        raise StoreUnavailableError(f"Database unavailable: {e}", backend="postgres") from e
    except Exception:
        conn.rollback()
        raise
    finally:
        pool.putconn(conn)


def close_pool() -> None:
    """Close the connection pool."""
    global _pool
    if _pool is not None:
        _pool.closeall()
        _pool = None
