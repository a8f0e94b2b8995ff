"""
Optional Redis client used for cross-instance job leases.

When REDIS_URL is not configured every caller gets None and scheduled jobs
fall back to the in-process lock only (single-instance deployment).
"""
import logging
from typing import Optional

import redis.asyncio as redis

import config

logger = logging.getLogger(__name__)

_redis_client: Optional[redis.Redis] = None
REDIS_READY: bool = False


async def get_redis_client() -> Optional[redis.Redis]:
    """Return the shared client, or None when Redis is not configured or unusable"""
    global _redis_client, REDIS_READY

    if not config.REDIS_URL:
        return None
    if _redis_client is not None:
        return _redis_client

    try:
        _redis_client = redis.from_url(
            config.REDIS_URL,
            decode_responses=True,
            socket_timeout=5,
            socket_connect_timeout=5,
            retry_on_timeout=True,
            health_check_interval=30
        )
        REDIS_READY = True
        logger.info("REDIS_CLIENT_CREATED")
        return _redis_client
    except Exception as e:
        logger.error(f"REDIS_CLIENT_CREATE_FAILED error={type(e).__name__}: {e}")
        REDIS_READY = False
        return None


async def check_redis_health() -> bool:
    """PING the server. False when unconfigured or unreachable."""
    client = await get_redis_client()
    if client is None:
        return False
    try:
        if await client.ping():
            logger.info("REDIS_CONNECTED")
            return True
        logger.warning("REDIS_CONNECTION_FAILED reason=ping_failed")
        return False
    except Exception as e:
        logger.warning(f"REDIS_CONNECTION_FAILED reason=ping_exception error={type(e).__name__}: {str(e)[:100]}")
        return False


async def close_redis_client():
    global _redis_client, REDIS_READY

    if _redis_client is not None:
        try:
            await _redis_client.aclose()
            logger.info("REDIS_CLIENT_CLOSED")
        except Exception as e:
            logger.error(f"Error closing Redis client: {e}")
        finally:
            _redis_client = None
            REDIS_READY = False
