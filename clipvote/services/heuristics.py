"""Abuse heuristics: downvote ratio, velocity, and new-account rapid voting.

Rules are deterministic and explainable; every flag carries the reasons that
triggered it. Once an admin has reviewed a voter, the flag fields are frozen
and only the statistics keep updating.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime

from clipvote.db.time import utcnow
from clipvote.models.voter import VoterProfile
from clipvote.stores.base import VoteStore, VoterActivity

logger = logging.getLogger(__name__)

MIN_VOTES_FOR_RATIO = 10
DOWNVOTE_RATIO_THRESHOLD = 0.9
VOTES_PER_HOUR_THRESHOLD = 50
NEW_ACCOUNT_SECONDS = 3600
MIN_VOTES_NEW_ACCOUNT = 10


@dataclass
class HeuristicThresholds:
    min_votes: int = MIN_VOTES_FOR_RATIO
    downvote_ratio: float = DOWNVOTE_RATIO_THRESHOLD
    votes_per_hour: int = VOTES_PER_HOUR_THRESHOLD
    new_account_seconds: int = NEW_ACCOUNT_SECONDS
    new_account_min_votes: int = MIN_VOTES_NEW_ACCOUNT


@dataclass
class FlagDecision:
    reasons: list[str] = field(default_factory=list)

    @property
    def flagged(self) -> bool:
        return bool(self.reasons)

    @property
    def reason(self) -> str | None:
        return "; ".join(self.reasons) or None


def evaluate_flags(
    activity: VoterActivity,
    now: datetime,
    thresholds: HeuristicThresholds | None = None,
) -> FlagDecision:
    """Apply every rule to the voter's ledger statistics."""
    t = thresholds or HeuristicThresholds()
    decision = FlagDecision()
    ratio = activity.downvote_ratio

    if activity.total >= t.min_votes and ratio >= t.downvote_ratio:
        decision.reasons.append(f"High downvote ratio: {round(ratio * 100)}%")

    if activity.votes_last_hour >= t.votes_per_hour:
        decision.reasons.append(f"High velocity: {activity.votes_last_hour} votes/hour")

    first_vote_at = activity.first_vote_at or now
    account_age = (now - first_vote_at).total_seconds()
    if account_age < t.new_account_seconds and activity.total >= t.new_account_min_votes:
        decision.reasons.append(
            f"New account rapid voting: {activity.total} votes in first hour"
        )

    return decision


def merge_profile(
    existing: VoterProfile | None,
    voter: str,
    activity: VoterActivity,
    decision: FlagDecision,
    now: datetime,
) -> VoterProfile:
    """Build the profile to store after a recompute.

    Statistics always refresh. Flag fields are left untouched when the
    profile is already reviewed; otherwise ``flagged_at`` is stamped on the
    unflagged -> flagged transition and otherwise kept as is.
    """
    profile = existing.model_copy() if existing is not None else VoterProfile(voter=voter)

    profile.total_votes = activity.total
    profile.votes_last_hour = activity.votes_last_hour
    profile.votes_last_day = activity.votes_last_day
    profile.downvote_ratio = activity.downvote_ratio
    profile.first_vote_at = activity.first_vote_at
    profile.last_vote_at = now

    if profile.reviewed:
        return profile

    if decision.flagged and not profile.flagged:
        profile.flagged_at = now
    profile.flagged = decision.flagged
    profile.flag_reason = decision.reason
    return profile


class HeuristicEngine:
    def __init__(
        self,
        store: VoteStore,
        thresholds: HeuristicThresholds | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._store = store
        self.thresholds = thresholds or HeuristicThresholds()
        self._clock = clock

    async def recompute(self, voter: str) -> VoterProfile:
        """Refresh the voter's statistics and flag state from the ledger."""
        now = self._clock()
        activity = await self._store.voter_activity(voter, now)
        decision = evaluate_flags(activity, now, self.thresholds)

        async with self._store.profile_transaction(voter) as tx:
            existing = await tx.get()
            profile = merge_profile(existing, voter, activity, decision, now)
            await tx.put(profile)

        newly_flagged = profile.flagged and not (existing is not None and existing.flagged)
        if newly_flagged and not profile.reviewed:
            logger.warning("suspicious voter flagged: %s - %s", voter, profile.flag_reason)
        return profile
