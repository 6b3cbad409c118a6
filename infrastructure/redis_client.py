"""
Redis Client for the Result Cache
=================================

Async Redis access with:
- Transparent JSON serialization
- Cursor-based key scanning (no blocking KEYS on large keyspaces)
- Memory statistics for cache administration
- Circuit breaker so a dead Redis fails fast instead of stalling requests

The same connection is shared with the rate limiter, which is why bulk
operations take their key filter from the caller.
"""

import asyncio
import json
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Dict, Iterable, List, Optional

import redis.asyncio as aioredis
from loguru import logger
from redis.asyncio import Redis
from redis.exceptions import ConnectionError, RedisError, TimeoutError

from config.settings import RedisSettings
from core.exceptions import CacheError, InfrastructureError


class RedisClient:
    """
    High-level Redis client.

    Construct with settings for production, or pass an already-built
    `client` (any object exposing the redis.asyncio command API) in tests.
    """

    FAILURE_THRESHOLD = 3
    BASE_BACKOFF_SECONDS = 5.0
    MAX_BACKOFF_SECONDS = 300.0

    def __init__(
        self,
        settings: Optional[RedisSettings] = None,
        client: Optional[Redis] = None,
    ):
        self._settings = settings or RedisSettings()
        self._client: Optional[Redis] = client
        self._default_ttl = self._settings.cache_ttl

        self._failure_count = 0
        self._backoff_multiplier = 1
        self._circuit_open_until: Optional[float] = None

    async def initialize(self) -> None:
        """Create the connection pool and verify connectivity."""
        if self._client is None:
            self._client = aioredis.from_url(
                self._settings.url,
                encoding="utf-8",
                decode_responses=True,
                max_connections=self._settings.max_connections,
                socket_timeout=self._settings.socket_timeout,
                socket_connect_timeout=self._settings.socket_connect_timeout,
                socket_keepalive=True,
                health_check_interval=30,
            )
        try:
            await self._client.ping()
        except RedisError as e:
            logger.error(f"Failed to initialize Redis connection: {e}")
            raise InfrastructureError(f"Redis initialization failed: {e}", cause=e) from e

        logger.info("Redis connection initialized successfully")

    @property
    def client(self) -> Redis:
        if self._client is None:
            raise InfrastructureError("Redis client not initialized")
        return self._client

    # =========================================================================
    # CIRCUIT BREAKER
    # =========================================================================

    @asynccontextmanager
    async def _connection(self) -> AsyncGenerator[Redis, None]:
        """
        Yield the client unless the breaker is open.

        Raises:
            CacheError: When the breaker is open or the command fails on the wire
        """
        if self._client is None:
            raise CacheError("Redis client not initialized")

        loop = asyncio.get_running_loop()

        if self._circuit_open_until is not None:
            remaining = self._circuit_open_until - loop.time()
            if remaining > 0:
                raise CacheError(
                    f"Circuit breaker open: Redis unavailable. Retry in {remaining:.1f}s"
                )
            logger.info("Attempting to close Redis circuit breaker")
            self._circuit_open_until = None
            self._failure_count = 0

        try:
            yield self.client
            self._failure_count = 0
            self._backoff_multiplier = 1

        except (ConnectionError, TimeoutError) as e:
            self._failure_count += 1
            if self._failure_count >= self.FAILURE_THRESHOLD:
                backoff = min(
                    self.BASE_BACKOFF_SECONDS * self._backoff_multiplier,
                    self.MAX_BACKOFF_SECONDS,
                )
                self._circuit_open_until = loop.time() + backoff
                self._backoff_multiplier = min(self._backoff_multiplier * 2, 16)
                logger.error(
                    f"Circuit breaker opened after {self._failure_count} failures "
                    f"(backoff {backoff:.0f}s)"
                )
            raise CacheError(f"Redis connection error: {e}", cause=e) from e

        except RedisError as e:
            raise CacheError(f"Redis command failed: {e}", cause=e) from e

    @property
    def circuit_open(self) -> bool:
        return self._circuit_open_until is not None

    # =========================================================================
    # KEY-VALUE OPERATIONS
    # =========================================================================

    async def get(self, key: str) -> Optional[Any]:
        """
        Retrieve and deserialize a JSON value.

        Returns:
            Deserialized object, or None if the key is absent

        Raises:
            CacheError: On connection failure or a corrupt entry
        """
        async with self._connection() as conn:
            data = await conn.get(key)

        if data is None:
            return None

        try:
            return json.loads(data)
        except (TypeError, ValueError) as e:
            raise CacheError(f"Corrupt cache entry: {e}", cache_key=key, cause=e) from e

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        """
        Serialize and store a value with expiration.

        Args:
            key: Storage key
            value: JSON-serializable object
            ttl: Time-to-live in seconds (default from settings)
        """
        try:
            serialized = json.dumps(value)
        except (TypeError, ValueError) as e:
            raise CacheError(f"Value not serializable: {e}", cache_key=key, cause=e) from e

        async with self._connection() as conn:
            await conn.set(key, serialized, ex=ttl or self._default_ttl)
        return True

    async def delete(self, *keys: str) -> int:
        """Delete keys, returning how many existed."""
        if not keys:
            return 0
        async with self._connection() as conn:
            return int(await conn.delete(*keys))

    async def exists(self, key: str) -> bool:
        async with self._connection() as conn:
            return bool(await conn.exists(key))

    async def ttl(self, key: str) -> int:
        async with self._connection() as conn:
            return int(await conn.ttl(key))

    async def scan_keys(self, pattern: str = "*", count: int = 500) -> List[str]:
        """Collect keys matching `pattern` with SCAN."""
        async with self._connection() as conn:
            return [key async for key in conn.scan_iter(match=pattern, count=count)]

    async def delete_keys(self, keys: Iterable[str], chunk_size: int = 500) -> int:
        """Delete keys in chunks, returning the number removed."""
        keys = list(keys)
        deleted = 0
        for start in range(0, len(keys), chunk_size):
            deleted += await self.delete(*keys[start : start + chunk_size])
        return deleted

    # =========================================================================
    # UTILITY & MONITORING
    # =========================================================================

    async def get_memory_stats(self) -> Dict[str, Any]:
        """Memory section of INFO, as reported by the server."""
        async with self._connection() as conn:
            memory = await conn.info("memory")

        return {
            "used_memory_human": memory.get("used_memory_human", "Unknown"),
            "used_memory_peak_human": memory.get("used_memory_peak_human", "Unknown"),
            "mem_fragmentation_ratio": memory.get("mem_fragmentation_ratio", "Unknown"),
        }

    async def ping(self) -> bool:
        """Ping Redis to verify connectivity."""
        try:
            async with self._connection() as conn:
                await conn.ping()
            return True
        except (CacheError, RedisError) as e:
            logger.error(f"Redis ping failed: {e}")
            return False

    async def close(self) -> None:
        """Close the connection pool."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            logger.info("Redis connection closed")


__all__ = ["RedisClient"]
