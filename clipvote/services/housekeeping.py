"""Periodic purge of expired rate-limit windows.

Expired windows are reset on the voter's next attempt anyway; this worker
only keeps the vote_rate_limits table from growing without bound.
"""

import asyncio
import logging
import time

from clipvote.services.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

PURGE_INTERVAL_SECONDS = 900


async def run(rate_limiter: RateLimiter, interval: float = PURGE_INTERVAL_SECONDS) -> None:
    """Run the purge loop forever.

    Args:
        rate_limiter: Limiter whose expired windows are dropped.
        interval: Seconds between purges.
    """
    logger.info("housekeeping: starting (interval=%.0fs)", interval)

    while True:
        try:
            await asyncio.sleep(interval)
            await tick(rate_limiter)
        except asyncio.CancelledError:
            logger.info("housekeeping: stopping (cancelled)")
            return
        except Exception:
            logger.exception("housekeeping: purge error, retrying next cycle")


async def tick(rate_limiter: RateLimiter) -> int:
    """Run one purge cycle. Returns the number of windows removed."""
    start = time.time()
    removed = await rate_limiter.purge_stale()
    if removed > 0:
        logger.info(
            "housekeeping: purged %d expired rate windows (%.0fms)",
            removed,
            (time.time() - start) * 1000,
        )
    return removed
