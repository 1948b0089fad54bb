"""Vote transaction coordinator.

A vote request passes, in order: vote-type validation, the channel voting
switch, clip resolution, the suspension gate, the rate gate, and finally one
store transaction that reads the voter's current ledger entry and applies
the ledger write plus the matching counter deltas. Heuristics run after the
commit and can never fail the vote.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Literal

from clipvote.db.time import utcnow
from clipvote.errors import (
    ClipNotFound,
    InvalidVoteType,
    RateLimited,
    StorageError,
    Suspended,
    VotingDisabled,
)
from clipvote.middleware.validation import parse_clip_ref
from clipvote.models.clip import Clip
from clipvote.models.vote import (
    DIRECTION_FOR_VOTE,
    VOTE_FOR_DIRECTION,
    VOTE_TYPES,
    Action,
    ClipTally,
    ClipVoteSummary,
    Direction,
)
from clipvote.routers import metrics
from clipvote.services.cache_service import CacheService
from clipvote.services.channel_settings import ChannelSettingsService, GatePolicy
from clipvote.services.heuristics import HeuristicEngine
from clipvote.services.rate_limiter import RateDecision, RateLimiter
from clipvote.stores.base import VoteStore

logger = logging.getLogger(__name__)


@dataclass
class Transition:
    """What a requested vote does to the ledger and the counters."""

    action: Action
    ledger_write: Literal["none", "put", "delete"]
    direction: Direction | None = None
    up_delta: int = 0
    down_delta: int = 0

    @property
    def mutates(self) -> bool:
        return self.ledger_write != "none"


def _delta(direction: Direction, amount: int) -> tuple[int, int]:
    return (amount, 0) if direction == "up" else (0, amount)


def decide_transition(existing: Direction | None, requested: str) -> Transition:
    """Map (current ledger direction, requested vote) to a Transition."""
    if requested not in VOTE_TYPES:
        raise InvalidVoteType()

    if requested == "clear":
        if existing is None:
            return Transition("cleared", "none")
        up, down = _delta(existing, -1)
        return Transition("cleared", "delete", None, up, down)

    direction = DIRECTION_FOR_VOTE[requested]
    if existing == direction:
        return Transition("unchanged", "none", direction)

    up, down = _delta(direction, 1)
    if existing is None:
        return Transition("recorded", "put", direction, up, down)

    old_up, old_down = _delta(existing, -1)
    return Transition("changed", "put", direction, up + old_up, down + old_down)


@dataclass
class VoteResult:
    action: Action
    likes: int
    dislikes: int
    user_vote: str | None
    clip: Clip
    rate: RateDecision | None = None


@dataclass
class VoteQueryResult:
    votes: dict[str, ClipVoteSummary]
    logged_in: bool
    username: str | None = None


@dataclass
class VoteExport:
    channel: str
    exported_at: datetime
    votes: list[ClipTally]


class VoteCoordinator:
    def __init__(
        self,
        store: VoteStore,
        rate_limiter: RateLimiter,
        heuristics: HeuristicEngine,
        channel_settings: ChannelSettingsService,
        cache: CacheService | None = None,
        rate_limit_failure_policy: GatePolicy = GatePolicy.FAIL_OPEN,
        suspension_check_failure_policy: GatePolicy = GatePolicy.FAIL_OPEN,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._store = store
        self._rate_limiter = rate_limiter
        self._heuristics = heuristics
        self._channel_settings = channel_settings
        self._cache = cache or CacheService(None)
        self.rate_limit_failure_policy = rate_limit_failure_policy
        self.suspension_check_failure_policy = suspension_check_failure_policy
        self._clock = clock

    async def submit_vote(
        self, channel: str, clip_ref: str | int, voter: str, requested_vote: str
    ) -> VoteResult:
        requested = (requested_vote or "").strip().lower()
        if requested not in VOTE_TYPES:
            raise InvalidVoteType()

        if not await self._channel_settings.voting_enabled(channel):
            metrics.votes_rejected.labels(reason="disabled").inc()
            raise VotingDisabled(channel)

        clip = await self.resolve(channel, clip_ref)
        await self._check_suspension(voter)
        rate = await self._consume_rate_slot(voter)

        now = self._clock()
        async with self._store.vote_transaction(channel, clip.clip_id, voter) as tx:
            existing = await tx.current()
            transition = decide_transition(existing.direction if existing else None, requested)

            if transition.ledger_write == "put":
                await tx.put(transition.direction, now)
            elif transition.ledger_write == "delete":
                await tx.delete()
            if transition.up_delta or transition.down_delta:
                await tx.adjust(transition.up_delta, transition.down_delta, now)

            counts = await tx.counts()

        metrics.votes_total.labels(action=transition.action).inc()
        if transition.mutates:
            await self._cache.invalidate_counts(channel, clip.clip_id)

        if transition.action != "cleared":
            await self._recompute_quietly(voter)

        user_vote = VOTE_FOR_DIRECTION.get(transition.direction) if transition.direction else None
        return VoteResult(
            action=transition.action,
            likes=counts.up_votes,
            dislikes=counts.down_votes,
            user_vote=user_vote,
            clip=clip,
            rate=rate,
        )

    async def query_votes(
        self, channel: str, clip_refs: list[str | int], voter: str | None = None
    ) -> VoteQueryResult:
        refs = [parse_clip_ref(ref) for ref in clip_refs]
        clips = await self._store.resolve_clips(channel, refs)
        clip_ids = [clip.clip_id for clip in clips.values()]

        cached = await self._cache.get_many_counts(channel, clip_ids)
        counts = dict(cached.counts)
        misses = [clip_id for clip_id in clip_ids if clip_id not in counts]
        if misses:
            stored = await self._store.get_counts(channel, misses)
            fetched = {
                clip_id: (stored[clip_id].up_votes, stored[clip_id].down_votes)
                if clip_id in stored
                else (0, 0)
                for clip_id in misses
            }
            await self._cache.fill_counts(channel, fetched, cached)
            counts.update(fetched)

        user_votes = await self._store.get_user_votes(channel, clip_ids, voter) if voter else {}

        votes: dict[str, ClipVoteSummary] = {}
        for ref, clip in clips.items():
            likes, dislikes = counts[clip.clip_id]
            direction = user_votes.get(clip.clip_id)
            votes[str(ref)] = ClipVoteSummary(
                likes=likes,
                dislikes=dislikes,
                user_vote=VOTE_FOR_DIRECTION[direction] if direction else None,
            )
        return VoteQueryResult(votes=votes, logged_in=voter is not None, username=voter)

    async def export_votes(self, channel: str) -> VoteExport:
        """Tally of every voted clip in ``channel``, ordered by seq."""
        tallies = await self._store.export_counts(channel)
        return VoteExport(channel=channel, exported_at=self._clock(), votes=tallies)

    async def resolve(self, channel: str, clip_ref: str | int) -> Clip:
        ref = parse_clip_ref(clip_ref)
        if isinstance(ref, int):
            clip = await self._store.resolve_clip(channel, seq=ref)
        else:
            clip = await self._store.resolve_clip(channel, clip_id=ref)
        if clip is None:
            raise ClipNotFound(channel, str(clip_ref))
        return clip

    async def _check_suspension(self, voter: str) -> None:
        try:
            profile = await self._store.get_profile(voter)
        except StorageError:
            if self.suspension_check_failure_policy is GatePolicy.FAIL_CLOSED:
                raise
            logger.warning("suspension check unavailable for %s, failing open", voter)
            return

        if profile is not None and profile.suspended:
            metrics.votes_rejected.labels(reason="suspended").inc()
            raise Suspended()

    async def _consume_rate_slot(self, voter: str) -> RateDecision | None:
        try:
            decision = await self._rate_limiter.check_and_consume(voter)
        except StorageError:
            if self.rate_limit_failure_policy is GatePolicy.FAIL_CLOSED:
                raise
            logger.warning("rate limiter unavailable for %s, failing open", voter)
            return None

        if not decision.allowed:
            metrics.votes_rejected.labels(reason="rate_limited").inc()
            raise RateLimited(decision.retry_after, decision.headers())
        return decision

    async def _recompute_quietly(self, voter: str) -> None:
        try:
            profile = await self._heuristics.recompute(voter)
        except Exception:
            metrics.heuristic_failures.inc()
            logger.exception("heuristic recompute failed for %s", voter)
            return
        if profile.suspended:
            metrics.flagged_voters.inc()
