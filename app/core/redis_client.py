"""
Redis Client and the cluster-wide drain lock

Only one delivery pool may drain the queue at a time, whichever Celery
worker it runs in; the lock is a single key taken with SET NX EX.
"""
import uuid
from urllib.parse import urlparse

import redis.asyncio as aioredis

from app.core.config import Settings
from app.core.logging import get_logger

logger = get_logger(__name__)

DRAIN_LOCK_KEY = "webhooks:drain-lock"


def mask_redis_url(url: str) -> str:
    """Hide the password for logs (redis://:****@host:6379)"""
    try:
        parsed = urlparse(url)
    except ValueError:
        return "redis://****"
    if parsed.password:
        return url.replace(f":{parsed.password}@", ":****@")
    return url


def create_redis(settings: Settings) -> aioredis.Redis:
    """Client with its own connection pool; nothing connects until first use"""
    client = aioredis.from_url(settings.REDIS_URL, decode_responses=True)
    logger.debug("Redis client created", extra_data={"url": mask_redis_url(settings.REDIS_URL)})
    return client


class RedisLock:
    """
    Mutex over one Redis key.

    The TTL frees the key if the holder dies without releasing it, so it must
    outlast the longest run of the guarded work.
    """

    def __init__(self, redis: aioredis.Redis, key: str, ttl_seconds: int):
        self._redis = redis
        self._key = key
        self._ttl_seconds = ttl_seconds
        self._token: str | None = None

    async def acquire(self) -> bool:
        token = uuid.uuid4().hex
        if await self._redis.set(self._key, token, nx=True, ex=self._ttl_seconds):
            self._token = token
            return True
        return False

    async def release(self) -> None:
        if self._token is None:
            return
        # After expiry the key may belong to another holder
        if await self._redis.get(self._key) == self._token:
            await self._redis.delete(self._key)
        self._token = None


def drain_lock(redis: aioredis.Redis, settings: Settings) -> RedisLock:
    return RedisLock(redis, DRAIN_LOCK_KEY, settings.CELERY_TASK_TIME_LIMIT_SECONDS)
