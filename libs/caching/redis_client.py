"""
Redis client factory for the segmentation cache.

Provides:
- Async Redis client with connection pooling
- Graceful degradation: ``None`` when Redis is unreachable
- Health check and close helpers

Clients are owned by their caller; nothing is kept at module level.
"""

from typing import Optional

import redis.asyncio as redis
import structlog

logger = structlog.get_logger(__name__)

MAX_CONNECTIONS = 20


def _redact(redis_url: str) -> str:
    return redis_url.split("@")[-1] if "@" in redis_url else redis_url.split("//")[-1]


async def create_redis_client(redis_url: Optional[str]) -> Optional[redis.Redis]:
    """
    Create an async Redis client and verify it with a ping.

    Args:
        redis_url: Redis connection URL, e.g. ``redis://localhost:6379/0``

    Returns:
        Connected client, or None when the URL is missing or the server is unreachable
    """
    if not redis_url:
        logger.warning(
            "Redis URL not configured, falling back to in-memory cache",
            hint="Set SEGMENTATION_REDIS_URL to share the cache between processes",
        )
        return None

    client = redis.from_url(
        redis_url,
        encoding="utf-8",
        decode_responses=True,
        max_connections=MAX_CONNECTIONS,
        socket_timeout=5,
        socket_connect_timeout=5,
        retry_on_timeout=True,
    )

    try:
        await client.ping()
    except redis.ConnectionError as e:
        logger.error(
            "Redis connection failed",
            error=str(e),
            redis_url=_redact(redis_url),
            hint="Check the Redis URL and ensure the server is running",
        )
        await close_redis_client(client)
        return None
    except Exception as e:
        logger.error("Unexpected error initializing Redis", error=str(e), error_type=type(e).__name__)
        await close_redis_client(client)
        return None

    logger.info(
        "Redis client initialized successfully",
        url=_redact(redis_url),
        max_connections=MAX_CONNECTIONS,
    )
    return client


async def close_redis_client(client: Optional[redis.Redis]) -> None:
    """Close a client, logging instead of raising on failure."""
    if client is None:
        return
    try:
        await client.aclose()
        logger.info("Redis client closed")
    except Exception as e:
        logger.warning("Error closing Redis client", error=str(e))


async def health_check(client: Optional[redis.Redis]) -> bool:
    """True when ``client`` answers a ping."""
    if client is None:
        return False
    try:
        return await client.ping() is True
    except Exception as e:
        logger.error("Redis health check failed", error=str(e))
        return False
