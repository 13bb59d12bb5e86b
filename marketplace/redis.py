"""Redis connections for outbound events.

One pool per process. Request handlers borrow a client through ``get_redis``;
the background sweeper holds its own client for its whole lifetime.
"""

from collections.abc import AsyncGenerator

import redis.asyncio as aioredis

from marketplace.config import settings

redis_pool = aioredis.ConnectionPool.from_url(settings.redis_url, decode_responses=True)


def redis_client() -> aioredis.Redis:
    """Client bound to the shared pool. The caller closes it."""
    return aioredis.Redis(connection_pool=redis_pool)


async def get_redis() -> AsyncGenerator[aioredis.Redis, None]:
    client = redis_client()
    try:
        yield client
    finally:
        await client.aclose()
