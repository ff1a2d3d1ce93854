# bouncer/services/infrastructure/redis_client.py
"""
Shared Redis access for the job store, rate windows, delivery records and
notification preferences.

The key/value helpers degrade instead of raising: a failed read is a miss and
a failed write reports False, so callers such as the rate limiter can apply
their own outage policy. ``run_script`` is the exception, job state
transitions must see their failures.
"""

from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import redis.asyncio as redis
from redis.asyncio.connection import ConnectionPool

from bouncer.config import settings
from bouncer.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

# Expiry is attached only when INCR created the key, so a window's TTL never moves.
INCR_WINDOW_LUA = """
local current = redis.call('INCR', KEYS[1])
if current == 1 then
    redis.call('EXPIRE', KEYS[1], tonumber(ARGV[1]))
end
return current
"""


class RedisClient:
    """One connection pool per process, opened lazily on first use."""

    def __init__(self, url: str | None = None, max_connections: int | None = None):
        self.url = url or settings.REDIS_URL
        self.max_connections = max_connections or settings.REDIS_MAX_CONNECTIONS
        self.pool: ConnectionPool | None = None
        self.client: redis.Redis | None = None
        self._scripts: dict[str, Any] = {}

    @property
    def connected(self) -> bool:
        return self.client is not None

    async def initialize(self) -> None:
        if self.connected:
            return

        pool = ConnectionPool.from_url(
            self.url,
            max_connections=self.max_connections,
            decode_responses=True,
            socket_connect_timeout=5,
            socket_timeout=5,
            retry_on_timeout=True,
            health_check_interval=30,
        )
        client = redis.Redis(connection_pool=pool)
        try:
            await client.ping()
        except redis.RedisError as e:
            await pool.disconnect()
            logger.error("Redis unreachable", url_preview=self.url[:30], error=str(e))
            raise RuntimeError("Redis initialization failed") from e

        self.pool, self.client = pool, client
        self._scripts.clear()
        logger.info("Redis client initialized", max_connections=self.max_connections)

    async def close(self) -> None:
        client, pool = self.client, self.pool
        self.client = self.pool = None
        if client is None:
            return
        try:
            await client.aclose()
            if pool is not None:
                await pool.disconnect()
        except redis.RedisError as e:
            logger.warning("Redis close raised", error=str(e))
        else:
            logger.info("Redis client closed")

    async def ensure_ready(self) -> redis.Redis:
        """Return the live client, connecting first if needed."""
        if not self.connected:
            logger.warning("Redis used before initialize, connecting now")
            await self.initialize()
        return self.client

    async def _degrade(
        self, op: str, key: str, fallback: T, call: Callable[[redis.Redis], Awaitable[T]]
    ) -> T:
        try:
            client = await self.ensure_ready()
            return await call(client)
        except (redis.RedisError, RuntimeError) as e:
            logger.error("Redis operation failed", op=op, key=key[:40], error=str(e))
            return fallback

    async def ping(self) -> bool:
        return bool(await self._degrade("PING", "", False, lambda c: c.ping()))

    async def get(self, key: str) -> str | None:
        value = await self._degrade("GET", key, None, lambda c: c.get(key))
        return value or None

    async def set_with_ttl(self, key: str, value: str, ttl_s: int | None = None) -> bool:
        """SET, with EX when a TTL is given."""
        result = await self._degrade("SET", key, False, lambda c: c.set(key, value, ex=ttl_s or None))
        return bool(result)

    async def set_if_absent(self, key: str, value: str, ttl_s: int | None = None) -> bool:
        """SET NX. True only when this call created the key."""
        result = await self._degrade(
            "SETNX", key, False, lambda c: c.set(key, value, nx=True, ex=ttl_s or None)
        )
        return bool(result)

    async def incr_window(self, key: str, ttl_s: int) -> int | None:
        """
        Count one hit in a fixed window.

        Returns None when Redis is unavailable; the caller decides between
        failing open or closed.
        """
        try:
            result = await self.run_script(INCR_WINDOW_LUA, keys=[key], args=[ttl_s])
        except (redis.RedisError, RuntimeError) as e:
            logger.error("Redis window count failed", key=key[:40], error=str(e))
            return None
        return int(result)

    async def run_script(self, source: str, keys: list[str], args: list) -> Any:
        """EVALSHA a Lua script, registering it on first use. Errors propagate."""
        client = await self.ensure_ready()
        script = self._scripts.get(source)
        if script is None:
            script = self._scripts[source] = client.register_script(source)
        return await script(keys=keys, args=args)


redis_client = RedisClient()
