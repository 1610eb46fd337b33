"""Per-collection mutual exclusion backed by the key-value store.

A lock is a single key set with ``SET NX EX``: it is a value with a TTL, not a
held connection. If a holder crashes before releasing, the TTL frees the key.
When the store itself is unreachable the manager fails open (treats the
collection as unlocked) so refreshes keep working without mutual exclusion.
"""

import json
import time
from uuid import uuid4

import structlog
from redis.asyncio import Redis
from redis.exceptions import RedisError

logger = structlog.get_logger()

# Delete the key only if its owner field still matches ours
RELEASE_SCRIPT = """
local current = redis.call('get', KEYS[1])
if not current then
  return 0
end
local ok, data = pcall(cjson.decode, current)
if not ok then
  return -1
end
if data['owner'] ~= ARGV[1] then
  return -2
end
return redis.call('del', KEYS[1])
"""


class LockManager:
    """Acquire and release TTL-bound locks keyed by collection.

    ``try_acquire`` never blocks or retries; a caller that loses the race must
    surface "already in progress" instead of queueing.
    """

    def __init__(self, redis: Redis):
        """Initialize lock manager.

        Args:
            redis: Async Redis client (decode_responses=True)
        """
        self.redis = redis
        self._owned: dict[str, str] = {}

    async def try_acquire(self, key: str, ttl_seconds: int) -> bool:
        """Atomically set the lock key if it does not exist.

        Args:
            key: Lock key (see ``keys.refresh_lock_key``)
            ttl_seconds: Expiry that bounds the holder's authority window

        Returns:
            True if acquired (or the store is unavailable), False if held elsewhere
        """
        owner = uuid4().hex
        value = json.dumps({"timestamp": int(time.time() * 1000), "owner": owner})
        try:
            acquired = await self.redis.set(key, value, nx=True, ex=ttl_seconds)
        except RedisError as e:
            logger.warning(
                "lock.acquire_failed_open",
                key=key,
                error=str(e),
                error_type=type(e).__name__,
            )
            return True

        if not acquired:
            logger.info("lock.busy", key=key)
            return False

        self._owned[key] = owner
        logger.debug("lock.acquired", key=key, ttl_seconds=ttl_seconds)
        return True

    async def release(self, key: str) -> None:
        """Release a lock this manager acquired.

        Only deletes the key while it still carries our owner token, so a job
        whose TTL already expired cannot free a lock taken by the next holder.
        Store errors are logged; the TTL cleans up anything left behind.
        """
        owner = self._owned.pop(key, None)
        if owner is None:
            return
        try:
            result = await self.redis.eval(RELEASE_SCRIPT, 1, key, owner)
        except RedisError as e:
            logger.warning(
                "lock.release_failed",
                key=key,
                error=str(e),
                error_type=type(e).__name__,
            )
            return

        if result == 1:
            logger.debug("lock.released", key=key)
        else:
            logger.warning("lock.release_skipped", key=key, reason="expired_or_taken_over")

    async def is_locked(self, key: str) -> bool:
        """Check whether a lock key is currently held (fails open to False)."""
        try:
            return bool(await self.redis.exists(key))
        except RedisError as e:
            logger.warning(
                "lock.check_failed_open",
                key=key,
                error=str(e),
                error_type=type(e).__name__,
            )
            return False

    async def remaining_seconds(self, key: str) -> int | None:
        """Seconds until a held lock expires, or None if it is not held."""
        try:
            ttl = await self.redis.ttl(key)
        except RedisError as e:
            logger.warning(
                "lock.ttl_failed_open",
                key=key,
                error=str(e),
                error_type=type(e).__name__,
            )
            return None
        # -2: key missing, -1: key without expiry (never written by this manager)
        if ttl is None or ttl < 0:
            return None
        return int(ttl)
