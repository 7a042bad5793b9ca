"""
Redis fast path for webhook deduplication.

The ``processed_events`` table is the source of truth; this cache only saves
a database round trip for redeliveries. Every Redis failure is logged and
treated as a cache miss so an outage never blocks webhook processing.
"""

import logging

import redis.asyncio as aioredis

from infrastructure.config.settings import settings

logger = logging.getLogger(__name__)

KEY_PREFIX = "webhook:processed:"


class EventDedupCache:
    """Remembers processed gateway event ids for ``ttl`` seconds."""

    def __init__(self, redis_url: str | None = None, ttl: int | None = None):
        self.redis_url = redis_url if redis_url is not None else settings.redis_url
        self.ttl = ttl if ttl is not None else settings.dedup_cache_ttl_seconds
        self._client: aioredis.Redis | None = None

    @property
    def enabled(self) -> bool:
        return bool(self.redis_url)

    def _redis(self) -> aioredis.Redis:
        if self._client is None:
            self._client = aioredis.from_url(self.redis_url)
        return self._client

    async def seen(self, event_id: str) -> bool:
        """True when the event is known to be processed already."""
        if not self.enabled:
            return False
        try:
            return bool(await self._redis().exists(f"{KEY_PREFIX}{event_id}"))
        except Exception as e:
            logger.warning("Webhook dedup cache unavailable (Redis error): %s", e)
            return False

    async def remember(self, event_id: str) -> None:
        """Record an event id after its state change has committed."""
        if not self.enabled:
            return
        try:
            await self._redis().setex(f"{KEY_PREFIX}{event_id}", self.ttl, "1")
        except Exception as e:
            logger.warning("Could not record webhook %s in dedup cache: %s", event_id, e)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
