# bouncer/db/pool.py
"""
PostgreSQL connection pool for detection event storage.

One ``AsyncConnectionPool`` per process, opened in the API lifespan or the
worker startup and closed on shutdown. Connections come back as dict rows in
autocommit mode; use ``transaction()`` for multi-statement writes.
"""

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import psycopg
from psycopg import sql
from psycopg.rows import dict_row
from psycopg_pool import AsyncConnectionPool

from bouncer.config import settings
from bouncer.errors import ConfigurationError
from bouncer.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

CLOSE_TIMEOUT_SECONDS = 30.0
SESSION_SETTINGS = ("SET timezone = 'UTC'", "SET statement_timeout = '60s'")


class DatabasePoolManager:
    """Open-once, close-once wrapper around the shared psycopg pool."""

    def __init__(self, conninfo: str | None = None):
        self.conninfo = conninfo
        self.pool: AsyncConnectionPool | None = None
        self._shut_down = False

    @property
    def initialized(self) -> bool:
        return self.pool is not None

    async def initialize(self) -> None:
        """
        Open the pool and run one check query.

        Raises:
            ConfigurationError: No DATABASE_URL
            RuntimeError: Already shut down, or Postgres is unreachable
        """
        if self._shut_down:
            raise RuntimeError("Database pool was shut down and cannot be reopened")
        if self.pool is not None:
            return

        conninfo = self.conninfo or settings.DATABASE_URL
        if not conninfo:
            raise ConfigurationError("DATABASE_URL is not configured")

        limits = settings.get_db_pool_config()
        pool = AsyncConnectionPool(
            conninfo=conninfo,
            open=False,
            check=AsyncConnectionPool.check_connection,
            configure=self._prepare_session,
            **limits,
        )
        try:
            await pool.open(wait=True)
            await self._check(pool)
        except (psycopg.Error, TimeoutError, RuntimeError) as e:
            await pool.close()
            logger.error("Postgres unreachable", error=str(e))
            raise RuntimeError(f"Database pool initialization failed: {e}") from e

        self.pool = pool
        logger.info("Postgres pool open", **limits)

    @staticmethod
    async def _prepare_session(conn: psycopg.AsyncConnection) -> None:
        conn.row_factory = dict_row
        await conn.set_autocommit(True)
        name = sql.Literal(f"bouncer-{settings.environment}")
        await conn.execute(sql.SQL("SET application_name = {}").format(name))
        for statement in SESSION_SETTINGS:
            await conn.execute(statement)

    @staticmethod
    async def _check(pool: AsyncConnectionPool) -> None:
        async with pool.connection() as conn:
            cursor = await conn.execute("SELECT 1 AS ok")
            row = await cursor.fetchone()
        if not row or row["ok"] != 1:
            raise RuntimeError("Check query returned an unexpected row")

    def _require_pool(self) -> AsyncConnectionPool:
        if self.pool is None:
            state = "shut down" if self._shut_down else "not initialized"
            raise RuntimeError(f"Database pool is {state}")
        return self.pool

    @asynccontextmanager
    async def connection(self) -> AsyncIterator[psycopg.AsyncConnection]:
        async with self._require_pool().connection() as conn:
            yield conn

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[psycopg.AsyncConnection]:
        """Commit on success, roll back on exception."""
        async with self.connection() as conn, conn.transaction():
            yield conn

    async def health_check(self) -> dict[str, Any]:
        report: dict[str, Any] = {"service": "database_pool", "healthy": False}
        if self.pool is None:
            report["error"] = "Pool not initialized"
            return report

        try:
            await self._check(self.pool)
        except (psycopg.Error, RuntimeError) as e:
            logger.warning("Postgres health check failed", error=str(e))
            report["error"] = str(e)
            return report

        stats = self.pool.get_stats()
        report.update(
            healthy=True,
            pool_size=stats.get("pool_size", 0),
            pool_available=stats.get("pool_available", 0),
            requests_waiting=stats.get("requests_waiting", 0),
        )
        return report

    async def close(self) -> None:
        pool, self.pool = self.pool, None
        if pool is None:
            return

        self._shut_down = True
        try:
            await asyncio.wait_for(pool.close(), timeout=CLOSE_TIMEOUT_SECONDS)
        except TimeoutError:
            logger.warning("Postgres pool close timed out", timeout_s=CLOSE_TIMEOUT_SECONDS)
        else:
            logger.info("Postgres pool closed")


db_pool = DatabasePoolManager()
