# bouncer/db/helpers.py
"""
Database helper functions for common patterns.
"""

from typing import Any

import psycopg

from bouncer.db.pool import DatabasePoolManager, db_pool
from bouncer.errors import BouncerError
from bouncer.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class DatabaseError(BouncerError):
    """
    A query failed. Connection-level failures are retryable, everything
    else (constraint violations, bad SQL) is not.
    """

    def __init__(self, message: str, operation: str = "unknown", retryable: bool = False):
        super().__init__(message, retryable=retryable, details={"operation": operation})
        self.operation = operation


def _wrap(e: psycopg.Error, operation: str, query: str) -> DatabaseError:
    logger.error(f"Database {operation} error", query=query[:100], error=str(e))
    return DatabaseError(
        f"Query failed: {e}",
        operation=operation,
        retryable=isinstance(e, psycopg.OperationalError),
    )


async def fetch_one(
    query: str, params: tuple = (), *, pool: DatabasePoolManager | None = None
) -> dict[str, Any] | None:
    """Execute query and return a single row as dict, or None."""
    try:
        async with (pool or db_pool).connection() as conn:
            async with conn.cursor() as cur:
                await cur.execute(query, params)
                row = await cur.fetchone()
                return row if row else None
    except psycopg.Error as e:
        raise _wrap(e, "fetch_one", query) from e


async def fetch_all(
    query: str, params: tuple = (), *, pool: DatabasePoolManager | None = None
) -> list[dict[str, Any]]:
    """Execute query and return all rows as dicts."""
    try:
        async with (pool or db_pool).connection() as conn:
            async with conn.cursor() as cur:
                await cur.execute(query, params)
                return await cur.fetchall()
    except psycopg.Error as e:
        raise _wrap(e, "fetch_all", query) from e


async def execute_query(
    query: str, params: tuple = (), *, pool: DatabasePoolManager | None = None
) -> int:
    """Execute query and return the number of affected rows."""
    try:
        async with (pool or db_pool).connection() as conn:
            cursor = await conn.execute(query, params)
            return cursor.rowcount
    except psycopg.Error as e:
        raise _wrap(e, "execute", query) from e
