"""Redis-based idempotency key guard for money-moving requests."""

import logging

import redis.asyncio as aioredis

from gigescrow.core.config import settings

logger = logging.getLogger(__name__)

_redis: aioredis.Redis | None = None


async def _get_redis() -> aioredis.Redis:
    global _redis
    if _redis is None:
        _redis = aioredis.from_url(settings.redis_url, decode_responses=True)
    return _redis


async def check_idempotency(key: str, ttl: int = 60) -> bool:
    """Return True if this is the first call with this key (proceed).

    Return False for a duplicate within ``ttl`` seconds. When Redis is
    unreachable the request is let through; the ledger's own status checks
    still make a repeated release a no-op.
    """
    try:
        r = await _get_redis()
        was_set = await r.set(f"idempotent:{key}", "1", nx=True, ex=ttl)
        return bool(was_set)
    except Exception:
        logger.exception("Idempotency check failed for key=%s, allowing through", key)
        return True


async def clear_idempotency(key: str) -> None:
    """Forget ``key`` so a retry after a failed attempt is processed again."""
    try:
        r = await _get_redis()
        await r.delete(f"idempotent:{key}")
    except Exception:
        logger.exception("Idempotency key cleanup failed for key=%s", key)
