"""
Shared Redis connection.

The TTL store and the ``GET /health`` connection check use the same
client, created lazily from ``REDIS_URL``.
"""

import logging
from typing import Optional

import redis.asyncio as redis

from src.config import get_settings

logger = logging.getLogger(__name__)


class RedisClient:
    """
    Async Redis client with lazy connection and health checking.
    """

    def __init__(self, redis_url: Optional[str] = None) -> None:
        self.redis_url = redis_url
        self._client: Optional[redis.Redis] = None

    def _configured_url(self) -> Optional[str]:
        if self.redis_url:
            return self.redis_url
        return get_settings().redis.redis_url

    @property
    def is_configured(self) -> bool:
        return bool(self._configured_url())

    def connection(self) -> redis.Redis:
        """
        Get or create the client. Connecting happens on first command.

        Raises:
            RuntimeError: REDIS_URL is not set
        """
        if self._client is None:
            url = self._configured_url()
            if not url:
                raise RuntimeError("Redis is not configured")
            self._client = redis.from_url(
                url,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=5.0,
                socket_timeout=5.0,
            )
        return self._client

    async def close(self) -> None:
        """Close the Redis connection."""
        if self._client:
            try:
                await self._client.aclose()
                logger.info("Redis connection closed")
            finally:
                self._client = None

    async def health_check(self) -> dict:
        """
        Check Redis connection health.

        Returns:
            Dictionary with health status information.
        """
        if not self.is_configured:
            return {
                "status": "not_configured",
                "connected": False,
                "url_configured": False,
            }

        try:
            client = self.connection()
            await client.ping()
            info = await client.info("server")
        except (redis.ConnectionError, redis.TimeoutError) as e:
            logger.warning(f"Redis health check failed: {e}")
            return {
                "status": "unhealthy",
                "connected": False,
                "error": f"Connection error: {str(e)}",
                "url_configured": True,
            }

        return {
            "status": "healthy",
            "connected": True,
            "redis_version": info.get("redis_version", "unknown"),
            "uptime_seconds": info.get("uptime_in_seconds", 0),
            "url_configured": True,
        }


# Singleton instance
redis_client = RedisClient()
