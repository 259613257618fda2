"""
Redis client with connection pooling and async support.

Backs the gateway settings cache and the inventory counters. Provides the
pooled async client wrapper plus cache key helpers so every key the
application writes shares one namespace.
"""

import json
from typing import Any, Optional, Union

from redis.asyncio import ConnectionPool, Redis
from redis.asyncio.retry import Retry
from redis.backoff import ExponentialBackoff
from redis.exceptions import (
    ConnectionError,
    RedisError,
    TimeoutError,
)

from src.core.config import get_settings
from src.core.logging import get_logger

logger = get_logger(__name__)


class RedisClient:
    """
    Async Redis client with connection pooling and retry logic.

    Provides high-level interface for Redis operations with automatic
    connection management and error logging.
    """

    def __init__(
        self,
        url: Optional[str] = None,
        max_connections: Optional[int] = None,
        socket_timeout: float = 5.0,
        socket_connect_timeout: float = 5.0,
        health_check_interval: int = 30,
    ):
        """
        Initialize Redis client configuration.

        Args:
            url: Redis connection URL (defaults to settings.redis_url)
            max_connections: Maximum pool connections (defaults to settings)
            socket_timeout: Socket operation timeout in seconds
            socket_connect_timeout: Socket connection timeout in seconds
            health_check_interval: Health check interval in seconds
        """
        settings = get_settings()
        self._url = url or settings.redis_url
        self._max_connections = max_connections or settings.redis_max_connections
        self._socket_timeout = socket_timeout
        self._socket_connect_timeout = socket_connect_timeout
        self._health_check_interval = health_check_interval

        self._pool: Optional[ConnectionPool] = None
        self._client: Optional[Redis] = None
        self._is_connected = False

    @staticmethod
    def _sanitize_url(url: str) -> str:
        """Strip credentials from a Redis URL for logging."""
        if "@" in url:
            protocol, rest = url.split("://", 1)
            if "@" in rest:
                _, host_part = rest.split("@", 1)
                return f"{protocol}://***@{host_part}"
        return url

    @property
    def is_connected(self) -> bool:
        return self._is_connected

    async def connect(self) -> None:
        """
        Establish Redis connection.

        Raises:
            ConnectionError: If connection cannot be established
        """
        if self._is_connected:
            return

        try:
            self._pool = ConnectionPool.from_url(
                self._url,
                max_connections=self._max_connections,
                socket_timeout=self._socket_timeout,
                socket_connect_timeout=self._socket_connect_timeout,
                health_check_interval=self._health_check_interval,
                retry=Retry(ExponentialBackoff(base=0.1, cap=2.0), retries=3),
                decode_responses=True,
            )
            self._client = Redis(connection_pool=self._pool)

            await self._client.ping()
            self._is_connected = True

            logger.info(
                "Redis connection established",
                url=self._sanitize_url(self._url),
                pool_size=self._max_connections,
            )

        except (ConnectionError, TimeoutError) as e:
            logger.error(
                "Failed to connect to Redis",
                error=str(e),
                url=self._sanitize_url(self._url),
            )
            await self.disconnect()
            raise ConnectionError(f"Redis connection failed: {e}") from e

    async def disconnect(self) -> None:
        """Close the client and its pool."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

        if self._pool is not None:
            await self._pool.aclose()
            self._pool = None

        if self._is_connected:
            self._is_connected = False
            logger.info("Redis connection closed")

    async def health_check(self) -> bool:
        if not self._is_connected or not self._client:
            return False

        try:
            await self._client.ping()
            return True
        except RedisError as e:
            logger.error("Redis health check failed", error=str(e))
            return False

    def _ensure_connected(self) -> None:
        if not self._is_connected or not self._client:
            raise ConnectionError("Redis client is not connected")

    async def get(self, key: str) -> Optional[str]:
        """
        Get value from Redis by key.

        Raises:
            ConnectionError: If Redis is not connected
            RedisError: If Redis operation fails
        """
        self._ensure_connected()

        try:
            value = await self._client.get(key)
            logger.debug("Redis GET operation", key=key, found=value is not None)
            return value

        except RedisError as e:
            logger.error("Redis GET operation failed", key=key, error=str(e))
            raise

    async def set(
        self,
        key: str,
        value: Union[str, bytes, int, float],
        ex: Optional[int] = None,
        nx: bool = False,
    ) -> bool:
        """
        Set value in Redis with optional expiration.

        Args:
            key: Cache key
            value: Value to store
            ex: Expiration time in seconds
            nx: Only set if key doesn't exist

        Returns:
            True if the key was written
        """
        self._ensure_connected()

        try:
            result = await self._client.set(key, value, ex=ex, nx=nx)
            logger.debug("Redis SET operation", key=key, ex=ex, nx=nx, success=bool(result))
            return bool(result)

        except RedisError as e:
            logger.error("Redis SET operation failed", key=key, error=str(e))
            raise

    async def delete(self, *keys: str) -> int:
        """Delete keys, returning how many existed."""
        self._ensure_connected()

        try:
            count = await self._client.delete(*keys)
            logger.debug("Redis DELETE operation", keys=keys, count=count)
            return count

        except RedisError as e:
            logger.error("Redis DELETE operation failed", keys=keys, error=str(e))
            raise

    async def incr(self, key: str, amount: int = 1) -> int:
        self._ensure_connected()

        try:
            return await self._client.incrby(key, amount)
        except RedisError as e:
            logger.error("Redis INCR operation failed", key=key, error=str(e))
            raise

    async def decr(self, key: str, amount: int = 1) -> int:
        self._ensure_connected()

        try:
            return await self._client.decrby(key, amount)
        except RedisError as e:
            logger.error("Redis DECR operation failed", key=key, error=str(e))
            raise

    async def get_json(self, key: str) -> Optional[dict[str, Any]]:
        """
        Get JSON value from Redis by key.

        Raises:
            json.JSONDecodeError: If value is not valid JSON
        """
        value = await self.get(key)
        if value is None:
            return None

        try:
            return json.loads(value)
        except json.JSONDecodeError as e:
            logger.error("Failed to decode JSON from cache", key=key, error=str(e))
            raise

    async def set_json(
        self,
        key: str,
        value: dict[str, Any],
        ex: Optional[int] = None,
    ) -> bool:
        """
        Store a dictionary as JSON with optional expiration.

        Raises:
            TypeError: If value is not JSON serializable
        """
        try:
            json_value = json.dumps(value)
        except (TypeError, ValueError) as e:
            logger.error("Failed to serialize value to JSON", key=key, error=str(e))
            raise
        return await self.set(key, json_value, ex=ex)


class CacheKeyManager:
    """
    Builds namespaced cache keys.

    Example:
        >>> manager = CacheKeyManager("storefront")
        >>> manager.gateway_settings_key("stripe")
        'storefront:gw:stripe'
    """

    def __init__(self, namespace: Optional[str] = None):
        self.namespace = namespace or get_settings().cache_namespace

    def make_key(self, *parts: Union[str, int]) -> str:
        key_parts = [str(part) for part in parts if part != "" and part is not None]
        return ":".join([self.namespace] + key_parts)

    def gateway_settings_key(self, name: str) -> str:
        return self.make_key("gw", name)

    def inventory_key(self, pool: str, variant_id: str, counter: str) -> str:
        return self.make_key("inventory", pool, variant_id, counter)

    def inventory_order_marker(self, order_id: str, action: str) -> str:
        return self.make_key("inventory", "order", order_id, action)


_redis_client: Optional[RedisClient] = None
_cache_key_manager: Optional[CacheKeyManager] = None


async def get_redis_client() -> RedisClient:
    """
    Get or create the global Redis client instance.

    Raises:
        ConnectionError: If Redis connection fails
    """
    global _redis_client

    if _redis_client is None:
        client = RedisClient()
        await client.connect()
        _redis_client = client

    return _redis_client


def get_cache_key_manager() -> CacheKeyManager:
    global _cache_key_manager

    if _cache_key_manager is None:
        _cache_key_manager = CacheKeyManager()

    return _cache_key_manager


async def close_redis_client() -> None:
    global _redis_client

    if _redis_client is not None:
        await _redis_client.disconnect()
        _redis_client = None
