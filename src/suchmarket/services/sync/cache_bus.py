"""Cache invalidation and cache events.

Invalidation is coarse: every cache key under a collection's prefix is
deleted. Lock keys live under the same prefix and are skipped. Events are
fire-and-forget: they are published on the ``{app}:cache-events`` channel and
handed to in-process subscribers. Errors are logged and never raised.
"""

import json
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from uuid import uuid4

import structlog
from redis.asyncio import Redis
from redis.exceptions import RedisError

from suchmarket.core.timezone import utc_now
from suchmarket.services.sync.keys import (
    LOCK_SUFFIX,
    cache_events_channel,
    collection_cache_pattern,
    ownership_cache_pattern,
)

logger = structlog.get_logger()


@dataclass
class CacheEvent:
    """Structured notification that a collection's cached data changed."""

    contract_address: str
    type: str = "collection_refreshed"
    reason: str = "manual_refresh"
    source: str = "api"
    timestamp: datetime = field(default_factory=utc_now)
    id: str = field(default_factory=lambda: uuid4().hex)

    def to_payload(self) -> dict:
        return {
            "id": self.id,
            "type": self.type,
            "data": {"contractAddress": self.contract_address, "reason": self.reason},
            "timestamp": int(self.timestamp.timestamp() * 1000),
            "source": self.source,
        }


EventHandler = Callable[[CacheEvent], Awaitable[None] | None]


class CacheInvalidationBus:
    """Deletes stale cache entries and broadcasts cache events."""

    def __init__(self, redis: Redis, app_name: str):
        self.redis = redis
        self.app_name = app_name
        self._handlers: list[EventHandler] = []

    def subscribe(self, handler: EventHandler) -> None:
        """Register an in-process handler called for every emitted event."""
        self._handlers.append(handler)

    async def invalidate(self, pattern: str) -> int:
        """Delete every key matching ``pattern`` except lock keys.

        Returns:
            Number of keys deleted (0 if the store is unavailable)
        """
        deleted = 0
        try:
            batch: list[str] = []
            async for key in self.redis.scan_iter(match=pattern, count=500):
                if key.endswith(LOCK_SUFFIX):
                    continue
                batch.append(key)
                if len(batch) >= 500:
                    deleted += await self.redis.delete(*batch)
                    batch = []
            if batch:
                deleted += await self.redis.delete(*batch)
        except RedisError as e:
            logger.warning(
                "cache.invalidate_failed",
                pattern=pattern,
                deleted=deleted,
                error=str(e),
                error_type=type(e).__name__,
            )
            return deleted

        logger.info("cache.invalidated", pattern=pattern, deleted=deleted)
        return deleted

    async def invalidate_collection(self, contract_address: str) -> int:
        """Invalidate cached pages, stats, floor price and ownership for a collection."""
        deleted = await self.invalidate(collection_cache_pattern(self.app_name, contract_address))
        deleted += await self.invalidate(ownership_cache_pattern(self.app_name, contract_address))
        return deleted

    async def emit(self, event: CacheEvent) -> None:
        """Publish an event and notify local subscribers (fire-and-forget)."""
        payload = event.to_payload()
        try:
            receivers = await self.redis.publish(
                cache_events_channel(self.app_name), json.dumps(payload)
            )
            logger.info(
                "cache.event_emitted",
                event_type=event.type,
                contract_address=event.contract_address,
                receivers=receivers,
            )
        except RedisError as e:
            logger.warning(
                "cache.event_publish_failed",
                event_type=event.type,
                contract_address=event.contract_address,
                error=str(e),
                error_type=type(e).__name__,
            )

        for handler in self._handlers:
            try:
                result = handler(event)
                if result is not None:
                    await result
            except Exception as e:
                logger.warning(
                    "cache.event_handler_failed",
                    event_type=event.type,
                    handler=getattr(handler, "__name__", repr(handler)),
                    error=str(e),
                    error_type=type(e).__name__,
                )
