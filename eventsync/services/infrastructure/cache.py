# eventsync/services/infrastructure/cache.py
"""
Result cache used for snapshot reads and the sync guard counter.

Two implementations share one async interface: RedisResultCache for
deployments and MemoryResultCache for the dev server and tests. Counters
never go below zero.
"""

import asyncio
import random
import time
import zlib

import redis.asyncio as redis
from redis.asyncio.connection import ConnectionPool

from eventsync.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

_UINT64 = 2**64

# Missing key starts at ARGV[2]; TTL applies only when the key is created.
_INCREMENT_SCRIPT = """
local cur = redis.call('GET', KEYS[1])
local created = false
if not cur then
    cur = ARGV[2]
    created = true
end
local n = tonumber(cur) + tonumber(ARGV[1])
if n < 0 then n = 0 end
if created and tonumber(ARGV[3]) > 0 then
    redis.call('SET', KEYS[1], n, 'EX', ARGV[3])
else
    redis.call('SET', KEYS[1], n, 'KEEPTTL')
end
return n
"""


class CacheError(Exception):
    """Custom exception for result cache operations."""

    def __init__(self, message: str, operation: str = "unknown", recoverable: bool = True):
        super().__init__(message)
        self.operation = operation
        self.recoverable = recoverable


class RedisResultCache:
    """Result cache on a redis.asyncio connection pool."""

    def __init__(self, redis_url: str, max_connections: int = 20):
        self.redis_url = redis_url
        self.max_connections = max_connections
        self.pool: ConnectionPool | None = None
        self.client: redis.Redis | None = None
        self._increment = None
        self._initialized = False

    async def initialize(self) -> None:
        """Initialize connection pool on startup"""
        if self._initialized:
            return

        try:
            self.pool = ConnectionPool.from_url(
                self.redis_url,
                max_connections=self.max_connections,
                retry_on_timeout=True,
                socket_connect_timeout=10,
                socket_timeout=10,
                health_check_interval=30,
                decode_responses=True,
            )
            self.client = redis.Redis(connection_pool=self.pool)
            self._increment = self.client.register_script(_INCREMENT_SCRIPT)

            await self.client.ping()
            self._initialized = True
            logger.info("Redis result cache initialized", max_connections=self.max_connections)

        except Exception as e:
            logger.error("Failed to initialize Redis result cache", error=str(e))
            self._initialized = False
            raise RuntimeError("Redis initialization failed") from e

    async def close(self) -> None:
        try:
            if self.client:
                await self.client.aclose()
            if self.pool:
                await self.pool.disconnect()
            self._initialized = False
            logger.info("Redis result cache closed")
        except Exception as e:
            logger.error("Error closing Redis client", error=str(e))

    async def _ensure_initialized(self) -> None:
        if not self._initialized:
            logger.warning("Redis not initialized, attempting to initialize")
            await self.initialize()

    async def ping(self) -> bool:
        try:
            await self._ensure_initialized()
            return bool(await self.client.ping())
        except Exception as e:
            logger.error("Redis ping failed", error=str(e))
            return False

    async def get(self, key: str) -> str | None:
        try:
            await self._ensure_initialized()
            return await self.client.get(key)
        except Exception as e:
            logger.error("Redis GET failed", key=key[:30], error=str(e))
            raise CacheError(f"GET failed: {e}", operation="get") from e

    async def set(self, key: str, value: str, ttl_s: int | None = None) -> None:
        try:
            await self._ensure_initialized()
            if ttl_s:
                await self.client.setex(key, ttl_s, value)
            else:
                await self.client.set(key, value)
        except Exception as e:
            logger.error("Redis SET failed", key=key[:30], error=str(e))
            raise CacheError(f"SET failed: {e}", operation="set") from e

    async def increment(
        self, key: str, delta: int, initial: int = 0, ttl_s: int | None = None
    ) -> int:
        """Add delta to the counter at key, creating it at initial when missing."""
        try:
            await self._ensure_initialized()
            result = await self._increment(keys=[key], args=[delta, initial, ttl_s or 0])
            return int(result)
        except Exception as e:
            logger.error("Redis INCR failed", key=key[:30], error=str(e))
            raise CacheError(f"INCR failed: {e}", operation="increment") from e

    async def delete_multi(self, keys: list[str]) -> None:
        if not keys:
            return
        try:
            await self._ensure_initialized()
            await self.client.delete(*keys)
        except Exception as e:
            logger.error("Redis DELETE failed", keys=len(keys), error=str(e))
            raise CacheError(f"DELETE failed: {e}", operation="delete_multi") from e

    async def flush(self) -> None:
        try:
            await self._ensure_initialized()
            await self.client.flushdb()
        except Exception as e:
            logger.error("Redis FLUSHDB failed", error=str(e))
            raise CacheError(f"FLUSH failed: {e}", operation="flush") from e


class MemoryResultCache:
    """In-process cache. Counters are unsigned 64-bit and wrap on overflow."""

    def __init__(self):
        self._items: dict[str, tuple[str, float | None]] = {}
        self._lock = asyncio.Lock()

    def _live(self, key: str) -> str | None:
        item = self._items.get(key)
        if item is None:
            return None
        value, expires_at = item
        if expires_at is not None and expires_at <= time.monotonic():
            del self._items[key]
            return None
        return value

    async def ping(self) -> bool:
        return True

    async def get(self, key: str) -> str | None:
        return self._live(key)

    async def set(self, key: str, value: str, ttl_s: int | None = None) -> None:
        expires_at = time.monotonic() + ttl_s if ttl_s else None
        self._items[key] = (value, expires_at)

    async def increment(
        self, key: str, delta: int, initial: int = 0, ttl_s: int | None = None
    ) -> int:
        async with self._lock:
            cur = self._live(key)
            if cur is None:
                n = initial + delta
                expires_at = time.monotonic() + ttl_s if ttl_s else None
            else:
                n = int(cur) + delta
                expires_at = self._items[key][1]
            n = 0 if n < 0 else n % _UINT64
            self._items[key] = (str(n), expires_at)
            return n

    async def delete_multi(self, keys: list[str]) -> None:
        for key in keys:
            self._items.pop(key, None)

    async def flush(self) -> None:
        self._items.clear()

    async def close(self) -> None:
        self._items.clear()


class SnapshotCacheShards:
    """
    Spreads latest-snapshot reads over a pool of cache keys.

    A request id picks its shard by CRC32; without one, the shard chosen
    when this instance was created is used. Writes invalidate every key.
    """

    def __init__(self, pool_size: int = 4, prefix: str = "EventData"):
        if pool_size < 1:
            raise ValueError("pool_size must be positive")
        self.pool_size = pool_size
        self.prefix = prefix
        self._default = random.randrange(pool_size)

    def key_for(self, request_id: str | None = None) -> str:
        if request_id:
            shard = zlib.crc32(request_id.encode()) % self.pool_size
        else:
            shard = self._default
        return f"{self.prefix}-{shard}"

    def all_keys(self) -> list[str]:
        return [f"{self.prefix}-{i}" for i in range(self.pool_size)]
