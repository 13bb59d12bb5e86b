"""Periodic maintenance loop: auto-release stale escrows, escalate overdue disputes.

Each task runs in its own session. An unexpected error abandons the current
iteration (its transaction has already rolled back) and the loop retries on
the next tick.
"""

import asyncio
import logging

from marketplace.config import settings
from marketplace.services.notifications import Notifier

logger = logging.getLogger(__name__)


async def sweep_once(notifier: Notifier | None = None) -> dict[str, int]:
    """Run every maintenance task once and return how many items each touched."""
    from marketplace.database import async_session_factory
    from marketplace.services.disputes import escalate_overdue_disputes
    from marketplace.services.escrow import auto_release_stale_escrows

    async with async_session_factory() as db:
        released = await auto_release_stale_escrows(db, notifier=notifier)
    async with async_session_factory() as db:
        escalated = await escalate_overdue_disputes(db, notifier=notifier)

    return {"released": len(released), "escalated": len(escalated)}


async def run_sweeper() -> None:
    """Run ``sweep_once`` every ``sweeper_interval_seconds`` until cancelled."""
    from marketplace.redis import redis_client

    redis = redis_client()
    notifier = Notifier(redis)

    while True:
        try:
            counts = await sweep_once(notifier)
            if any(counts.values()):
                logger.info(
                    "Sweep complete: %d escrow(s) released, %d dispute(s) escalated",
                    counts["released"], counts["escalated"],
                )
            await asyncio.sleep(settings.sweeper_interval_seconds)
        except asyncio.CancelledError:
            logger.info("Sweeper shutting down")
            break
        except Exception:
            logger.exception("Sweeper error, retrying in 30s")
            await asyncio.sleep(30)

    await redis.aclose()
