"""Per-voter fixed-window vote rate limiter.

Window state lives in the VoteStore so that every API worker shares it; the
read-modify-write happens inside the store as one atomic upsert.
"""

import math
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from clipvote.db.time import utcnow
from clipvote.stores.base import VoteStore

DEFAULT_MAX_VOTES = 30
DEFAULT_WINDOW_SECONDS = 300


@dataclass
class RateDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_at: datetime
    retry_after: int = 0

    def headers(self) -> dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(max(self.remaining, 0)),
            "X-RateLimit-Reset": str(int(self.reset_at.timestamp())),
        }


class RateLimiter:
    """Fixed-window limiter: at most ``max_votes`` attempts per ``window_seconds``."""

    def __init__(
        self,
        store: VoteStore,
        max_votes: int = DEFAULT_MAX_VOTES,
        window_seconds: float = DEFAULT_WINDOW_SECONDS,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.max_votes = max_votes
        self.window_seconds = window_seconds
        self._store = store
        self._clock = clock

    async def check_and_consume(self, voter: str) -> RateDecision:
        """Count one attempt for ``voter`` and decide whether it may proceed."""
        now = self._clock()
        window = await self._store.consume_rate_slot(voter, self.window_seconds, now)

        window_age = max(0.0, (now - window.window_start).total_seconds())
        reset_at = window.window_start + timedelta(seconds=self.window_seconds)
        remaining = self.max_votes - window.vote_count

        if window.vote_count > self.max_votes:
            retry_after = max(1, math.ceil(self.window_seconds - window_age))
            return RateDecision(False, self.max_votes, 0, reset_at, retry_after)

        return RateDecision(True, self.max_votes, remaining, reset_at)

    async def reset(self, voter: str) -> None:
        await self._store.clear_rate_window(voter)

    async def purge_stale(self) -> int:
        """Drop windows that have fully expired. Housekeeping only."""
        cutoff = self._clock() - timedelta(seconds=self.window_seconds)
        return await self._store.purge_rate_windows(cutoff)
