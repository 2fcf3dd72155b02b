from typing import Optional

from redis.asyncio import Redis as AsyncRedis
from redis.asyncio import from_url as redis_from_url
from redis.exceptions import RedisError

from .config import get_settings
from .logging import get_logger

_redis_client: Optional[AsyncRedis] = None
_logger = get_logger("RedisClient")


def get_redis_client() -> AsyncRedis:
    """
    Process-wide async Redis client, built on first use.

    Shared by the rate limiter, the run event sink, the SSE endpoint and the
    health probe. Short socket timeouts keep a dead Redis from stalling them.
    """
    global _redis_client
    if _redis_client is None:
        settings = get_settings()
        _redis_client = redis_from_url(
            settings.redis_url,
            encoding="utf-8",
            decode_responses=True,
            socket_connect_timeout=2.0,
            health_check_interval=30,
        )
        _logger.info("RedisClient.initialised", redis_url_present=bool(settings.redis_url))
    return _redis_client


async def redis_available() -> bool:
    try:
        return bool(await get_redis_client().ping())
    except (RedisError, OSError) as exc:
        _logger.warning("RedisClient.ping_failed", error=str(exc))
        return False


async def close_redis_client() -> None:
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        _redis_client = None
