# leadinbox/services/conversation_cache.py
"""
Redis-backed cache of raw conversation sets, keyed by account.

Stores what the record store returned, not the processed view, so derived
fields are always recomputed against the current clock on read. A cache
failure is a miss, never an error.
"""

import json

from leadinbox.config import settings
from leadinbox.infrastructure.observability.logging import get_logger
from leadinbox.services.conversations.repository import RawConversationSet
from leadinbox.services.redis_client import FastRedisClient, fast_redis

logger = get_logger(__name__)

KEY_PREFIX = "leadinbox:conversations:"


def cache_key(account_id: str) -> str:
    return f"{KEY_PREFIX}{account_id}"


class ConversationCache:
    def __init__(self, redis_client: FastRedisClient | None = None, ttl_seconds: int | None = None):
        self._redis = redis_client or fast_redis
        self._ttl = ttl_seconds if ttl_seconds is not None else settings.CONVERSATION_CACHE_TTL_SECONDS

    async def get(self, account_id: str) -> RawConversationSet | None:
        raw = await self._redis.get(cache_key(account_id))
        if raw is None:
            return None

        try:
            data = json.loads(raw)
        except (TypeError, ValueError) as e:
            logger.warning("Discarding corrupt conversation cache entry", account_id=account_id, error=str(e))
            await self._redis.delete(cache_key(account_id))
            return None

        if not isinstance(data, dict):
            return None
        return RawConversationSet.from_dict(data)

    async def put(self, account_id: str, raw: RawConversationSet) -> bool:
        payload = json.dumps(raw.to_dict(), default=str)
        stored = await self._redis.set_with_ttl(cache_key(account_id), payload, self._ttl)
        if not stored:
            logger.warning("Failed to cache conversations", account_id=account_id)
        return stored

    async def invalidate(self, account_id: str) -> bool:
        return await self._redis.delete(cache_key(account_id))

    async def health_check(self) -> dict:
        """Ping plus a set/get/delete round trip."""
        try:
            ping_success = await self._redis.ping()
            if not ping_success:
                return {"healthy": False, "ping": False, "error": "Redis ping failed", "service": "redis"}

            test_key = f"{KEY_PREFIX}health_check"
            set_success = await self._redis.set_with_ttl(test_key, "ok", 10)
            get_success = set_success and await self._redis.get(test_key) == "ok"
            if set_success:
                await self._redis.delete(test_key)

            return {
                "healthy": bool(set_success and get_success),
                "ping": True,
                "set_get_operations": bool(set_success and get_success),
                "service": "redis",
            }
        except Exception as e:
            logger.error("Redis health check failed", error=str(e))
            return {"healthy": False, "error": str(e), "service": "redis"}
