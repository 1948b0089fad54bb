"""Admin remediation: review flagged voters and reverse their votes.

These operations bypass the rate limiter and the suspension gate. Undo works
one ledger row at a time, each in its own vote transaction, so a failure
part-way leaves every processed clip consistent and a retry only touches the
rows that remain.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime

from clipvote.db.time import utcnow
from clipvote.errors import ClipNotFound, UndoIncomplete, VoterNotFound
from clipvote.models.clip import Clip
from clipvote.models.voter import AdminStats, VoterProfile
from clipvote.routers import metrics
from clipvote.services.cache_service import CacheService
from clipvote.services.rate_limiter import RateLimiter
from clipvote.stores.base import VoteStore

logger = logging.getLogger(__name__)

DEFAULT_LIST_LIMIT = 100
MAX_LIST_LIMIT = 500


@dataclass
class UndoResult:
    voter: str
    votes_removed: int
    clips: list[tuple[str, str]] = field(default_factory=list)


class AdminService:
    def __init__(
        self,
        store: VoteStore,
        rate_limiter: RateLimiter,
        cache: CacheService | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._store = store
        self._rate_limiter = rate_limiter
        self._cache = cache or CacheService(None)
        self._clock = clock

    async def list_flagged(self) -> list[VoterProfile]:
        return await self._store.list_profiles(flagged_only=True)

    async def list_all(self, limit: int = DEFAULT_LIST_LIMIT) -> list[VoterProfile]:
        limit = min(max(limit, 1), MAX_LIST_LIMIT)
        return await self._store.list_profiles(flagged_only=False, limit=limit)

    async def undo_votes(self, voter: str) -> UndoResult:
        """Remove every vote ``voter`` holds and take them out of the counters."""
        entries = await self._store.ledger_entries_for(voter)
        result = UndoResult(voter=voter, votes_removed=0)

        for entry in entries:
            try:
                removed = await self._undo_entry(entry.channel, entry.clip_id, voter)
            except Exception as e:
                logger.error(
                    "undo for %s stopped after %d votes: %s", voter, result.votes_removed, e
                )
                raise UndoIncomplete(voter, result.votes_removed) from e
            if removed:
                result.votes_removed += 1
                metrics.undo_votes_removed.inc()
                result.clips.append((entry.channel, entry.clip_id))
                await self._cache.invalidate_counts(entry.channel, entry.clip_id)

        now = self._clock()
        try:
            async with self._store.profile_transaction(voter) as tx:
                profile = await tx.get()
                if profile is not None:
                    profile.total_votes = 0
                    profile.votes_last_hour = 0
                    profile.votes_last_day = 0
                    profile.downvote_ratio = 0.0
                    profile.flagged = False
                    profile.reviewed = True
                    profile.reviewed_at = now
                    await tx.put(profile)
            await self._rate_limiter.reset(voter)
        except Exception as e:
            logger.error("undo for %s removed votes but failed to reset state: %s", voter, e)
            raise UndoIncomplete(voter, result.votes_removed) from e

        logger.info("removed %d votes from %s", result.votes_removed, voter)
        return result

    async def _undo_entry(self, channel: str, clip_id: str, voter: str) -> bool:
        async with self._store.vote_transaction(channel, clip_id, voter) as tx:
            current = await tx.current()
            if current is None:
                return False
            await tx.delete()
            if current.direction == "up":
                await tx.adjust(-1, 0, self._clock())
            else:
                await tx.adjust(0, -1, self._clock())
        return True

    async def clear_flag(self, voter: str) -> VoterProfile:
        """Mark a voter reviewed and unflagged without touching their votes."""
        async with self._store.profile_transaction(voter) as tx:
            profile = await tx.get()
            if profile is None:
                raise VoterNotFound(voter)
            profile.flagged = False
            profile.reviewed = True
            profile.reviewed_at = self._clock()
            await tx.put(profile)
        logger.info("cleared flag for %s", voter)
        return profile

    async def get_stats(self) -> AdminStats:
        return await self._store.admin_stats(self._clock())

    async def reset_clip_votes(self, clip: Clip) -> int:
        """Drop every vote on a clip and zero its counters."""
        if clip.blocked:
            raise ClipNotFound(clip.channel, clip.clip_id)
        removed = await self._store.reset_clip(clip.channel, clip.clip_id, self._clock())
        await self._cache.invalidate_counts(clip.channel, clip.clip_id)
        logger.info("reset %d votes on %s/%s", removed, clip.channel, clip.clip_id)
        return removed
