"""
Async Redis client with connection pooling.

Used for caching resolved postal-code coordinates. The cache is an
optimisation only, so callers treat every Redis error as a miss.
"""

import json
from typing import Any, Optional, Union

from redis.asyncio import ConnectionPool, Redis
from redis.asyncio.retry import Retry
from redis.backoff import ExponentialBackoff
from redis.exceptions import ConnectionError, TimeoutError

from payship.core.config import get_settings
from payship.core.logging import get_logger

logger = get_logger(__name__)


class RedisClient:
    """Pooled async Redis connection holding JSON values under namespaced keys."""

    def __init__(
        self,
        url: Optional[str] = None,
        max_connections: Optional[int] = None,
        socket_timeout: float = 2.0,
        socket_connect_timeout: float = 2.0,
    ):
        settings = get_settings()
        self._url = url or settings.redis_url
        self._max_connections = max_connections or settings.redis_max_connections
        self._socket_timeout = socket_timeout
        self._socket_connect_timeout = socket_connect_timeout

        self._pool: Optional[ConnectionPool] = None
        self._client: Optional[Redis] = None
        self._is_connected = False

    @staticmethod
    def _sanitize_url(url: str) -> str:
        """Strip credentials from a Redis URL for logging."""
        if "@" in url:
            protocol, rest = url.split("://", 1)
            _, host_part = rest.split("@", 1)
            return f"{protocol}://***@{host_part}"
        return url

    async def connect(self) -> None:
        """
        Create the connection pool and verify connectivity with a ping.

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
                retry_on_timeout=True,
                retry=Retry(ExponentialBackoff(base=0.1, cap=1.0), retries=2),
                decode_responses=True,
            )
            self._client = Redis(connection_pool=self._pool)
            await self._client.ping()
            self._is_connected = True
            logger.info("Redis connection established", url=self._sanitize_url(self._url))
        except (ConnectionError, TimeoutError) as e:
            logger.error(
                "Failed to connect to Redis",
                error=str(e),
                url=self._sanitize_url(self._url),
            )
            await self.disconnect()
            raise ConnectionError(f"Redis connection failed: {e}") from e

    async def disconnect(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
        if self._pool is not None:
            await self._pool.aclose()
            self._pool = None
        if self._is_connected:
            logger.info("Redis connection closed")
        self._is_connected = False

    def _ensure_connected(self) -> Redis:
        if not self._is_connected or self._client is None:
            raise ConnectionError("Redis client is not connected")
        return self._client

    async def get(self, key: str) -> Optional[str]:
        """Raises ConnectionError before ``connect()`` has succeeded."""
        client = self._ensure_connected()
        return await client.get(key)

    async def set(
        self,
        key: str,
        value: Union[str, bytes, int, float],
        ex: Optional[int] = None,
    ) -> bool:
        client = self._ensure_connected()
        return bool(await client.set(key, value, ex=ex))

    async def get_json(self, key: str) -> Optional[Any]:
        value = await self.get(key)
        if value is None:
            return None
        return json.loads(value)

    async def set_json(self, key: str, value: Any, ex: Optional[int] = None) -> bool:
        return await self.set(key, json.dumps(value), ex=ex)


def make_cache_key(*parts: Union[str, int], namespace: str = "payship") -> str:
    """
    Build a namespaced cache key.

    Example:
        >>> make_cache_key("geocode", "273001")
        'payship:geocode:273001'
    """
    return ":".join([namespace] + [str(part) for part in parts if part != ""])


_redis_client: Optional[RedisClient] = None


async def get_redis_client() -> RedisClient:
    """Shared client for the process; connects on first call."""
    global _redis_client

    if _redis_client is None:
        client = RedisClient()
        await client.connect()
        _redis_client = client

    return _redis_client


async def close_redis_client() -> None:
    global _redis_client

    if _redis_client is not None:
        await _redis_client.disconnect()
        _redis_client = None
