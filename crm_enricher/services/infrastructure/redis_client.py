# crm_enricher/services/infrastructure/redis_client.py
import redis.asyncio as redis
from redis.asyncio.connection import ConnectionPool

from crm_enricher.config import settings
from crm_enricher.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class RedisClientError(Exception):
    """Raised when a Redis operation the engine depends on fails."""

    def __init__(self, message: str, operation: str = "unknown", recoverable: bool = True):
        super().__init__(message)
        self.operation = operation
        self.recoverable = recoverable


class FastRedisClient:
    """Pooled Redis client exposing the atomic primitives the job store is built on."""

    # Replace KEYS[1] only if it still holds the value the caller read.
    # ARGV: expect_missing ('1'/'0'), expected value, new value, ttl seconds (0 = none)
    COMPARE_AND_SET_LUA = """
    local current = redis.call('GET', KEYS[1])
    if ARGV[1] == '1' then
        if current then return 0 end
    elseif current ~= ARGV[2] then
        return 0
    end
    local ttl = tonumber(ARGV[4])
    if ttl > 0 then
        redis.call('SET', KEYS[1], ARGV[3], 'EX', ttl)
    else
        redis.call('SET', KEYS[1], ARGV[3])
    end
    return 1
    """

    COMPARE_AND_EXPIRE_LUA = """
    if redis.call('GET', KEYS[1]) == ARGV[1] then
        return redis.call('EXPIRE', KEYS[1], tonumber(ARGV[2]))
    end
    return 0
    """

    COMPARE_AND_DELETE_LUA = """
    if redis.call('GET', KEYS[1]) == ARGV[1] then
        return redis.call('DEL', KEYS[1])
    end
    return 0
    """

    # Increment every counter only if none has reached its limit.
    # ARGV[1..n]: limits (-1 = unlimited), ARGV[n+1..2n]: ttl seconds for new keys
    # Returns: {blocked_index (1-based, 0 = reserved), count_1, ..., count_n}
    INCR_IF_BELOW_LUA = """
    local n = #KEYS
    local counts = {}
    for i = 1, n do
        counts[i] = tonumber(redis.call('GET', KEYS[i]) or '0')
    end
    for i = 1, n do
        local limit = tonumber(ARGV[i])
        if limit >= 0 and counts[i] >= limit then
            local result = {i}
            for j = 1, n do result[j + 1] = counts[j] end
            return result
        end
    end
    local result = {0}
    for i = 1, n do
        local value = redis.call('INCR', KEYS[i])
        local ttl = tonumber(ARGV[n + i])
        if value == 1 and ttl > 0 then
            redis.call('EXPIRE', KEYS[i], ttl)
        end
        result[i + 1] = value
    end
    return result
    """

    def __init__(self):
        self.pool = None
        self.client = None
        self._initialized = False

    async def initialize(self):
        """Initialize connection pool on startup"""
        if self._initialized:
            return

        try:
            redis_url = settings.REDIS_URL
            logger.info("Attempting Redis connection", url_preview=redis_url[:20] + "...")

            self.pool = ConnectionPool.from_url(
                redis_url,
                max_connections=settings.REDIS_MAX_CONNECTIONS,
                retry_on_timeout=True,
                retry_on_error=[redis.ConnectionError, redis.TimeoutError],
                socket_connect_timeout=10,
                socket_timeout=10,
                health_check_interval=30,
                decode_responses=True,
            )

            self.client = redis.Redis(connection_pool=self.pool)

            result = await self.client.ping()
            logger.info("Redis ping successful", result=result)

            self._initialized = True
            logger.info(
                "Fast Redis client initialized successfully",
                max_connections=settings.REDIS_MAX_CONNECTIONS,
            )

        except Exception as e:
            logger.error("Failed to initialize fast Redis client", error=str(e))
            self._initialized = False
            raise RuntimeError("Redis initialization failed") from e

    async def close(self):
        """Clean shutdown"""
        try:
            if self.client:
                await self.client.aclose()
            if self.pool:
                await self.pool.disconnect()
            self._initialized = False
            logger.info("Fast Redis client closed")
        except Exception as e:
            logger.error("Error closing Redis client", error=str(e))

    async def _ensure_initialized(self):
        """Ensure Redis is initialized before any command"""
        if not self._initialized:
            logger.warning("Redis not initialized, attempting to initialize")
            await self.initialize()
            if not self._initialized:
                raise RedisClientError("Redis client not available", operation="initialize")

    def _fail(self, operation: str, key: str, error: Exception) -> RedisClientError:
        logger.error(f"Redis {operation} failed", key=key[:40], error=str(error))
        return RedisClientError(f"Redis {operation} failed: {error}", operation=operation)

    async def ping(self) -> bool:
        """Test Redis connection"""
        try:
            await self._ensure_initialized()
            result = await self.client.ping()
            return bool(result)
        except Exception as e:
            logger.error("Redis ping failed", error=str(e))
            return False

    async def get(self, key: str) -> str | None:
        try:
            await self._ensure_initialized()
            result = await self.client.get(key)
            return result if result else None
        except Exception as e:
            raise self._fail("GET", key, e) from e

    async def get_many(self, keys: list[str]) -> list[str | None]:
        if not keys:
            return []
        try:
            await self._ensure_initialized()
            return list(await self.client.mget(keys))
        except Exception as e:
            raise self._fail("MGET", keys[0], e) from e

    async def set_with_ttl(self, key: str, value: str, ttl_s: int | None = None) -> bool:
        try:
            await self._ensure_initialized()
            if ttl_s:
                result = await self.client.setex(key, ttl_s, value)
            else:
                result = await self.client.set(key, value)
            return bool(result)
        except Exception as e:
            raise self._fail("SET", key, e) from e

    async def set_if_absent(self, key: str, value: str, ttl_s: int | None = None) -> bool:
        """SET NX with optional expiry. True if this call created the key."""
        try:
            await self._ensure_initialized()
            result = await self.client.set(key, value, nx=True, ex=ttl_s or None)
            return bool(result)
        except Exception as e:
            raise self._fail("SETNX", key, e) from e

    async def delete(self, key: str) -> bool:
        try:
            await self._ensure_initialized()
            result = await self.client.delete(key)
            return result > 0
        except Exception as e:
            raise self._fail("DELETE", key, e) from e

    async def exists(self, key: str) -> bool:
        try:
            await self._ensure_initialized()
            result = await self.client.exists(key)
            return result > 0
        except Exception as e:
            raise self._fail("EXISTS", key, e) from e

    async def compare_and_set(
        self, key: str, expected: str | None, value: str, ttl_s: int | None = None
    ) -> bool:
        """
        Atomically replace a value only if it still equals `expected`.

        Args:
            key: Redis key
            expected: Value previously read, or None to require the key to be absent
            value: New value
            ttl_s: Optional expiry for the new value

        Returns:
            True if the swap happened
        """
        try:
            await self._ensure_initialized()
            result = await self.client.eval(
                self.COMPARE_AND_SET_LUA,
                1,
                key,
                "1" if expected is None else "0",
                expected or "",
                value,
                ttl_s or 0,
            )
            return bool(result)
        except Exception as e:
            raise self._fail("CAS", key, e) from e

    async def compare_and_expire(self, key: str, expected: str, ttl_s: int) -> bool:
        """Refresh a key's TTL only if it still holds `expected`."""
        try:
            await self._ensure_initialized()
            result = await self.client.eval(self.COMPARE_AND_EXPIRE_LUA, 1, key, expected, ttl_s)
            return bool(result)
        except Exception as e:
            raise self._fail("CAS-EXPIRE", key, e) from e

    async def compare_and_delete(self, key: str, expected: str) -> bool:
        """Delete a key only if it still holds `expected`."""
        try:
            await self._ensure_initialized()
            result = await self.client.eval(self.COMPARE_AND_DELETE_LUA, 1, key, expected)
            return bool(result)
        except Exception as e:
            raise self._fail("CAS-DELETE", key, e) from e

    async def incr_if_below(
        self, keys: list[str], limits: list[int | None], ttls_s: list[int]
    ) -> tuple[int | None, list[int]]:
        """
        Reserve one unit on every counter, or on none of them.

        Args:
            keys: Counter keys, checked in order
            limits: Limit per key (None = unlimited)
            ttls_s: Expiry applied when a counter is first created

        Returns:
            Tuple of (index of the first counter at its limit or None, counts)
            Counts are post-increment when reserved, current values otherwise.
        """
        try:
            await self._ensure_initialized()
            args = [-1 if limit is None else limit for limit in limits] + list(ttls_s)
            result = await self.client.eval(self.INCR_IF_BELOW_LUA, len(keys), *keys, *args)
            blocked = int(result[0])
            counts = [int(value) for value in result[1:]]
            return (blocked - 1 if blocked else None), counts
        except Exception as e:
            raise self._fail("RESERVE", keys[0] if keys else "", e) from e

    async def set_add(self, key: str, member: str) -> bool:
        try:
            await self._ensure_initialized()
            return bool(await self.client.sadd(key, member))
        except Exception as e:
            raise self._fail("SADD", key, e) from e

    async def set_remove(self, key: str, member: str) -> bool:
        try:
            await self._ensure_initialized()
            return bool(await self.client.srem(key, member))
        except Exception as e:
            raise self._fail("SREM", key, e) from e

    async def set_members(self, key: str) -> set[str]:
        try:
            await self._ensure_initialized()
            return set(await self.client.smembers(key))
        except Exception as e:
            raise self._fail("SMEMBERS", key, e) from e


# Global instance
fast_redis = FastRedisClient()
