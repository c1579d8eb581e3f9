"""Redis client shared by the change stream and its publishers.

Every live change channel holds one pooled connection for its pub/sub
subscription, so the pool is sized for live sessions plus publishers.
"""

import redis.asyncio as redis

_client: redis.Redis | None = None

PUBSUB_HEALTH_CHECK_SECONDS = 30


async def init_redis(url: str, max_connections: int = 200) -> None:
    """Create the shared client."""
    global _client  # noqa: PLW0603
    _client = redis.from_url(  # type: ignore[no-untyped-call]
        url,
        encoding="utf-8",
        decode_responses=True,
        max_connections=max_connections,
        health_check_interval=PUBSUB_HEALTH_CHECK_SECONDS,
    )


async def close_redis() -> None:
    """Close the client and its pool."""
    global _client  # noqa: PLW0603
    if _client is not None:
        await _client.aclose()
        _client = None


def get_redis() -> redis.Redis:
    """Return the shared client; raises until init_redis() has run."""
    if _client is None:
        msg = "Redis not initialized. Call init_redis() first."
        raise RuntimeError(msg)
    return _client


async def ping_redis() -> bool:
    """True when the shared client answers PING."""
    return bool(await get_redis().ping())
