"""
Redis client for StockFlow

Carries the notification channel (pub/sub). Notifications are a side channel:
when REDIS_URL is not configured or the server is down, callers get None and
degrade to drop-and-count instead of failing.
"""
import logging
from typing import Optional
import redis.asyncio as redis
from stockflow.core.config import settings

logger = logging.getLogger(__name__)

# Global Redis client (initialized lazily)
_redis_client: Optional[redis.Redis] = None


async def get_redis() -> Optional[redis.Redis]:
    """Get Redis client, initializing if needed.

    Returns None if REDIS_URL not configured (graceful degradation).
    """
    global _redis_client

    if not settings.REDIS_URL:
        return None

    if _redis_client is None:
        try:
            _redis_client = redis.from_url(
                settings.REDIS_URL,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=settings.NOTIFICATION_TIMEOUT_SECONDS,
                socket_timeout=settings.NOTIFICATION_TIMEOUT_SECONDS,
            )
            await _redis_client.ping()
            logger.info("Redis connection established")
        except Exception as e:
            logger.warning(f"Redis connection failed: {e}. Notifications will be dropped.")
            _redis_client = None

    return _redis_client


async def close_redis():
    """Close Redis connection on shutdown."""
    global _redis_client
    if _redis_client:
        await _redis_client.aclose()
        _redis_client = None
