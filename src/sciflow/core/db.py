# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Ourochronos Contributors

"""PostgreSQL connection management for the ledger store.

Config via SCIFLOW_DB_* environment variables (see core.config).
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

from .exceptions import DatabaseException

logger = logging.getLogger(__name__)

LEDGER_SCHEMA = """
CREATE TABLE IF NOT EXISTS ledger_records (
    kind        TEXT        NOT NULL,
    id          TEXT        NOT NULL,
    data        JSONB       NOT NULL,
    created_at  TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at  TIMESTAMPTZ NOT NULL DEFAULT now(),
    PRIMARY KEY (kind, id)
);
CREATE INDEX IF NOT EXISTS ledger_records_data_idx ON ledger_records USING GIN (data jsonb_path_ops);
"""

_pool: psycopg2_pool.ThreadedConnectionPool | None = None
_pool_lock = threading.Lock()


def _get_pool() -> psycopg2_pool.ThreadedConnectionPool:
    """Get or create the connection pool."""
    from .config import get_config

    global _pool
    if _pool is None:
        with _pool_lock:
            if _pool is None:
                config = get_config()
                try:
                    _pool = psycopg2_pool.ThreadedConnectionPool(
                        **config.pool_config,
                        **config.connection_params,
                    )
                except psycopg2.OperationalError as e:
                    raise DatabaseException(f"Failed to connect to database: {e}") from e
    return _pool


def _validate_connection(conn: Any) -> bool:
    """Check if a pooled connection is still usable."""
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
    for _ in range(max_attempts):
        try:
            conn = pool.getconn()
        except PoolError as e:
            raise DatabaseException(f"Connection pool exhausted: {e}") from e
        if _validate_connection(conn):
            return conn
        pool.putconn(conn, close=True)

    raise DatabaseException("Failed to get healthy connection after multiple attempts")


@contextmanager
def get_cursor() -> Generator[Any, None, None]:
    """Get a database cursor with commit on success, rollback on error.

    psycopg2 errors are re-raised as DatabaseException so callers can retry
    them without depending on the driver.

    Usage:
        with get_cursor() as cur:
            cur.execute("SELECT data FROM ledger_records WHERE kind = %s", ("bounty",))
            rows = cur.fetchall()
    """
    pool = _get_pool()
    conn = _get_healthy_connection(pool)
    try:
        with conn.cursor(cursor_factory=RealDictCursor) as cur:
            yield cur
        conn.commit()
    except psycopg2.Error as e:
        conn.rollback()
        raise DatabaseException(f"Database error: {e}") from e
    except BaseException:
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


def init_schema() -> None:
    """Create the ledger table if it does not exist."""
    with get_cursor() as cur:
        cur.execute(LEDGER_SCHEMA)
    logger.info("Ledger schema ready")


def check_connection() -> bool:
    """Check if database connection is working."""
    try:
        with get_cursor() as cur:
            cur.execute("SELECT 1")
        return True
    except DatabaseException:
        return False
