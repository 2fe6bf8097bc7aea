import redis.asyncio as redis

from rxdispatch.config import settings

_redis: redis.Redis | None = None


async def get_redis() -> redis.Redis:
    global _redis
    if _redis is None:
        _redis = redis.from_url(settings.redis_url, decode_responses=True)
    return _redis


async def close_redis() -> None:
    global _redis
    if _redis is not None:
        await _redis.aclose()
        _redis = None


async def check_idempotency(key: str, ttl_seconds: int | None = None) -> bool:
    """
    Returns True if this key was already seen (duplicate) -> caller should not create again.
    Returns False if key is new -> caller should proceed.
    Uses SETNX: set if not exists. If we set it, we're first; if not, duplicate.
    """
    r = await get_redis()
    was_set = await r.set(key, "1", nx=True, ex=ttl_seconds or settings.idempotency_ttl_seconds)
    return not was_set  # True = duplicate (already existed), False = new


async def remember(key: str, value: str, ttl_seconds: int | None = None) -> None:
    """Overwrite an idempotency key with the id of what it created."""
    r = await get_redis()
    await r.set(key, value, ex=ttl_seconds or settings.idempotency_ttl_seconds)


async def recall(key: str) -> str | None:
    r = await get_redis()
    value = await r.get(key)
    return None if value in (None, "1") else value


async def queue_length(key: str) -> int:
    r = await get_redis()
    return await r.llen(key)


async def forget(key: str) -> None:
    r = await get_redis()
    await r.delete(key)
