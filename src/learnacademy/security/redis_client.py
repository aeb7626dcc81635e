"""
Redis client management for the distributed store.

Redis is optional: when it is disabled or unreachable every component keeps
working on its in-process fallback, with weakened cross-instance guarantees.
"""

from typing import Any

import structlog
from redis.asyncio import ConnectionPool, Redis
from redis.exceptions import RedisError

from learnacademy.security.settings import get_settings

logger = structlog.get_logger(__name__)

type RedisClientType = Redis
type RedisPoolType = ConnectionPool


class RedisClientManager:
    """
    Singleton Redis client manager with connection pooling.

    Features:
    - Connection pooling for performance
    - Health checking
    - Graceful shutdown
    """

    _instance: "RedisClientManager | None" = None
    _pool: RedisPoolType | None = None
    _client: RedisClientType | None = None

    def __new__(cls) -> "RedisClientManager":
        """Ensure singleton instance."""
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    @property
    def client(self) -> RedisClientType | None:
        """The connected client, or None when running without Redis."""
        return self._client

    async def initialize(self, url: str | None = None, **kwargs: Any) -> RedisClientType:
        """
        Initialize Redis connection pool.

        Args:
            url: Redis URL (defaults to settings.redis.redis_url)
            **kwargs: Additional connection pool parameters

        Raises:
            RedisError: If the server cannot be reached
        """
        if self._client is not None:
            logger.warning("redis.already_initialized")
            return self._client

        redis_settings = get_settings().redis
        url = url or redis_settings.redis_url

        try:
            self._pool = ConnectionPool.from_url(
                url,
                decode_responses=True,
                max_connections=redis_settings.max_connections,
                socket_timeout=5,
                socket_connect_timeout=5,
                **kwargs,
            )
            client = Redis(connection_pool=self._pool)
            await client.ping()
            self._client = client

            logger.info(
                "redis.initialized",
                host=redis_settings.host,
                port=redis_settings.port,
                db=redis_settings.db,
            )
            return client

        except RedisError as e:
            logger.error("redis.initialization_failed", error=str(e))
            if self._pool is not None:
                await self._pool.disconnect()
                self._pool = None
            raise

    def use_client(self, client: RedisClientType | None) -> None:
        """Inject an existing client (tests, embedding applications)."""
        self._client = client

    async def close(self) -> None:
        """Close Redis connection pool."""
        if self._client:
            await self._client.aclose()
            self._client = None

        if self._pool:
            await self._pool.disconnect()
            self._pool = None

        logger.info("redis.closed")

    async def health_check(self) -> dict[str, Any]:
        """
        Perform Redis health check.

        Returns:
            Health status dictionary
        """
        if self._client is None:
            return {
                "status": "disabled",
                "message": "Redis not configured, using in-memory fallbacks",
            }

        try:
            await self._client.ping()
            return {"status": "healthy"}
        except RedisError as e:
            logger.error("redis.health_check_failed", error=str(e))
            return {
                "status": "unhealthy",
                "error": str(e),
            }


# Global Redis client manager instance
redis_manager = RedisClientManager()


async def init_redis() -> RedisClientType | None:
    """
    Initialize Redis client on application startup.

    Returns None when Redis is disabled or unreachable.
    """
    if not get_settings().redis.enabled:
        logger.info("redis.disabled")
        return None

    try:
        client = await redis_manager.initialize()
        logger.info("redis.startup_complete")
        return client
    except RedisError as e:
        logger.warning("redis.startup_failed_using_memory", error=str(e))
        return None


async def shutdown_redis() -> None:
    """Close Redis connections on application shutdown."""
    try:
        await redis_manager.close()
        logger.info("redis.shutdown_complete")
    except RedisError as e:
        logger.error("redis.shutdown_failed", error=str(e))
