"""Injectable collaborators: the event notifier and evidence storage."""

import redis.asyncio as aioredis
from fastapi import Depends

from marketplace.redis import get_redis
from marketplace.services.notifications import Notifier
from marketplace.services.storage import FileStorage, LocalFileStorage


async def get_notifier(redis: aioredis.Redis = Depends(get_redis)) -> Notifier:
    return Notifier(redis)


def get_storage() -> FileStorage:
    return LocalFileStorage()
