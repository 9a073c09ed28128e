"""
Cross-process guard so only one matching run executes at a time.

The lock is a Redis key set with NX and an expiry; the holder's random token
is checked on release so a run that outlived the TTL cannot free a lock that
a later run now holds. The unique marker row per iteration in pair_history
backs this up if Redis is unavailable or the TTL is too short.
"""

import secrets

from app.config import settings
from app.infrastructure.observability.logging import get_logger
from app.services.redis_client import FastRedisClient, fast_redis

logger = get_logger(__name__)

MATCHING_LOCK_KEY = "icebreaker:matching:lock"


class MatchingRunLock:
    def __init__(
        self,
        client: FastRedisClient | None = None,
        key: str = MATCHING_LOCK_KEY,
        ttl_seconds: int | None = None,
    ):
        self.client = client or fast_redis
        self.key = key
        self.ttl_seconds = ttl_seconds or settings.MATCHING_LOCK_TTL_SECONDS

    async def acquire(self) -> str | None:
        """Try to take the lock. Returns the holder token, or None if taken."""
        token = secrets.token_hex(16)
        acquired = await self.client.set_if_absent(self.key, token, self.ttl_seconds)
        if not acquired:
            logger.info("Matching lock already held", key=self.key)
            return None

        logger.debug("Matching lock acquired", key=self.key, ttl_seconds=self.ttl_seconds)
        return token

    async def release(self, token: str) -> bool:
        released = await self.client.delete_if_equals(self.key, token)
        if not released:
            logger.warning("Matching lock expired before release", key=self.key)
        return released


matching_run_lock = MatchingRunLock()
