"""
Processed-event hint cache - Redis, non-authoritative.
Lets ingress short-circuit provider retries of events already processed
without a database round trip. The idempotency table remains the source of
truth: a missing or failed hint always falls through to the database.
"""
import asyncio
import logging
from typing import Optional

logger = logging.getLogger(__name__)

# Hints outlive provider retry windows (Meta retries for up to ~24h)
PROCESSED_HINT_TTL_SECONDS = 86400 * 2

# Every command fails within REDIS_SOCKET_TIMEOUT_SECONDS instead of hanging on a dead server.
# Blocking pops (BRPOP) must use a shorter server-side timeout than this.
REDIS_SOCKET_TIMEOUT_SECONDS = 10
REDIS_CONNECT_TIMEOUT_SECONDS = 2

# Redis client (lazily initialized)
_redis_client = None


async def get_redis():
    """Get or create Redis connection."""
    global _redis_client
    if _redis_client is None:
        import redis.asyncio as aioredis
        from webhook_intake.config import get_settings
        _redis_client = aioredis.from_url(
            get_settings().redis_url,
            decode_responses=True,
            socket_timeout=REDIS_SOCKET_TIMEOUT_SECONDS,
            socket_connect_timeout=REDIS_CONNECT_TIMEOUT_SECONDS,
        )
    return _redis_client


async def close_redis() -> None:
    global _redis_client
    if _redis_client is not None:
        try:
            await _redis_client.aclose()
        except Exception as e:
            logger.debug("Redis close failed: %s", str(e))
    _redis_client = None


def make_processed_key(provider: str, event_id: str) -> str:
    return f"webhook_intake:processed:{provider}:{event_id}"


async def is_marked_processed(provider: str, event_id: str, timeout: Optional[float] = None) -> bool:
    """True only when Redis positively says processed. Errors and timeouts -> False."""
    try:
        redis = await get_redis()
        return bool(await asyncio.wait_for(redis.get(make_processed_key(provider, event_id)), timeout=timeout))
    except Exception as e:
        logger.warning(
            "Redis processed-hint lookup failed: %s. Falling back to DB.", str(e) or type(e).__name__
        )
        return False


async def mark_processed_hint(provider: str, event_id: str, ttl: Optional[int] = None) -> None:
    try:
        redis = await get_redis()
        await redis.set(
            make_processed_key(provider, event_id),
            "1",
            ex=ttl or PROCESSED_HINT_TTL_SECONDS,
        )
    except Exception as e:
        logger.warning("Redis processed-hint write failed: %s", str(e))
