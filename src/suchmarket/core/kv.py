"""Key-value store client setup."""

from redis.asyncio import Redis


def setup_redis(redis_url: str) -> Redis:
    """Create the asyncio Redis client shared by locks and the cache bus.

    Connections are opened lazily, so an unreachable store does not prevent
    startup; callers decide how to degrade when commands fail.

    Args:
        redis_url: Connection URL (redis://host:port/db)

    Returns:
        Redis client with string responses
    """
    return Redis.from_url(
        redis_url,
        decode_responses=True,
        socket_timeout=2.0,
        socket_connect_timeout=2.0,
    )
