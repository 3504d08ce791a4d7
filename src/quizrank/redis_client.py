"""Optional Redis client shared by the cache tier and the notifier.

When Redis is disabled or unreachable at startup, ``get_redis()`` returns
None and the cache runs on its in-memory tier alone.
"""

import logging

import redis.asyncio as redis

logger = logging.getLogger(__name__)

_client: redis.Redis | None = None


async def init_redis(url: str, *, max_connections: int = 50) -> redis.Redis | None:
    """Connect and ping. Returns the client, or None if the server did not answer."""
    global _client  # noqa: PLW0603
    client = redis.from_url(  # type: ignore[no-untyped-call]
        url,
        encoding="utf-8",
        decode_responses=True,
        max_connections=max_connections,
    )
    try:
        await client.ping()
    except Exception:
        logger.warning("Redis at %s unreachable, using the in-memory cache only", url, exc_info=True)
        await client.aclose()
        _client = None
        return None
    _client = client
    return client


async def close_redis() -> None:
    global _client  # noqa: PLW0603
    if _client is not None:
        await _client.aclose()
        _client = None


def get_redis() -> redis.Redis | None:
    return _client
