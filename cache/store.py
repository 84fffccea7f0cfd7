"""
cache/store.py -- Redis-backed TTL cache for session records.

The cache is a read accelerator, never a source of truth: every value here
was written to the durable store first (see auth/session.py). A failed cache
call is logged and reported as a miss, so a Redis outage degrades to
"every read goes to the database" instead of failing logins.

Values are stored as JSON under "session:<id>" with a Redis-side expiry,
so an entry can never outlive the session it mirrors.

Usage:
    cache = SessionCache(Redis.from_url(settings.redis_url, decode_responses=True))
    await cache.set("abc", {"id": "abc", ...}, ttl=3600)
    data = await cache.get("abc")      # dict or None
    await cache.invalidate("abc")
"""

import json
import logging
from typing import Any, Optional

from redis.asyncio import Redis
from redis.exceptions import RedisError

logger = logging.getLogger("terminalpub.cache")

KEY_PREFIX = "session:"


def new_redis(url: str) -> Redis:
    return Redis.from_url(url, decode_responses=True)


class SessionCache:
    def __init__(self, redis: Redis, prefix: str = KEY_PREFIX) -> None:
        self._redis = redis
        self._prefix = prefix

    def _key(self, session_id: str) -> str:
        return f"{self._prefix}{session_id}"

    async def get(self, session_id: str) -> Optional[dict[str, Any]]:
        """Return the cached value, or None on miss, malformed payload or Redis failure."""
        try:
            raw = await self._redis.get(self._key(session_id))
        except (RedisError, OSError) as exc:
            logger.warning("Cache read failed for session %s: %s", session_id, exc)
            return None
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            logger.warning("Dropping malformed cache entry for session %s", session_id)
            await self.invalidate(session_id)
            return None

    async def set(self, session_id: str, value: dict[str, Any], ttl: int) -> bool:
        """Store value with a TTL in seconds. Returns False (never raises) on failure."""
        if ttl <= 0:
            return False
        try:
            await self._redis.set(self._key(session_id), json.dumps(value), ex=ttl)
        except (RedisError, OSError) as exc:
            logger.warning("Cache write failed for session %s: %s", session_id, exc)
            return False
        return True

    async def invalidate(self, session_id: str) -> bool:
        """Delete the cached copy. Returns False (never raises) on failure."""
        try:
            await self._redis.delete(self._key(session_id))
        except (RedisError, OSError) as exc:
            logger.warning("Cache invalidation failed for session %s: %s", session_id, exc)
            return False
        return True

    async def ping(self) -> bool:
        try:
            return bool(await self._redis.ping())
        except (RedisError, OSError) as exc:
            logger.warning("Cache ping failed: %s", exc)
            return False

    async def close(self) -> None:
        await self._redis.aclose()
