"""Outbound event emission over Redis pub/sub.

Fire-and-forget: services call ``emit`` after their transaction commits, and
a delivery failure is logged, never raised. Nothing in the escrow, dispute
or ledger core depends on the bus being up.
"""

import json
import logging
from datetime import UTC, datetime

import redis.asyncio as aioredis

from marketplace.config import settings

logger = logging.getLogger(__name__)


def build_event(event_type: str, payload: dict) -> dict:
    """Envelope published on the events channel."""
    return {
        "event": event_type,
        "timestamp": datetime.now(UTC).isoformat(),
        "data": payload,
    }


class Notifier:
    def __init__(
        self,
        redis: aioredis.Redis | None,
        channel: str = settings.events_channel,
        enabled: bool = settings.notifications_enabled,
    ) -> None:
        self.redis = redis
        self.channel = channel
        self.enabled = enabled

    async def emit(self, event_type: str, payload: dict) -> None:
        if not self.enabled or self.redis is None:
            return
        body = json.dumps(build_event(event_type, payload), default=str)
        try:
            await self.redis.publish(self.channel, body)
        except Exception:
            logger.exception("Failed to publish %s event", event_type)


async def notify(notifier: Notifier | None, event_type: str, payload: dict) -> None:
    """Emit if a notifier was supplied. Services accept ``notifier=None``."""
    if notifier is None:
        return
    try:
        await notifier.emit(event_type, payload)
    except Exception:
        logger.exception("Notifier raised while emitting %s", event_type)
