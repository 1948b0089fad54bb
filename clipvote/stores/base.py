"""Storage interface shared by the PostgreSQL and in-memory backends.

The coordinator and admin service only talk to a VoteStore. Each backend
guarantees the same atomicity:

- a vote transaction is scoped to one (channel, clip, voter) key, is
  serialised against other transactions on that key, and commits its
  ledger and aggregate writes together or not at all;
- aggregate adjustments are applied as deltas and clamp at zero inside the
  store;
- rate-window consumption is a single atomic conditional upsert.
"""

import abc
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass
from datetime import datetime

from clipvote.models.clip import Clip
from clipvote.models.vote import AggregateCount, ClipTally, Direction, VoteLedgerEntry
from clipvote.models.voter import AdminStats, RateLimitWindow, VoterProfile


@dataclass
class VoterActivity:
    """Ledger-derived statistics for one voter."""

    total: int = 0
    downvotes: int = 0
    votes_last_hour: int = 0
    votes_last_day: int = 0
    first_vote_at: datetime | None = None

    @property
    def downvote_ratio(self) -> float:
        if self.total == 0:
            return 0.0
        return self.downvotes / self.total


class VoteTransaction(abc.ABC):
    """Ledger and aggregate operations for a single vote key."""

    channel: str
    clip_id: str
    voter: str

    @abc.abstractmethod
    async def current(self) -> VoteLedgerEntry | None: ...

    @abc.abstractmethod
    async def put(self, direction: Direction, now: datetime) -> None: ...

    @abc.abstractmethod
    async def delete(self) -> None: ...

    @abc.abstractmethod
    async def adjust(self, up_delta: int, down_delta: int, now: datetime) -> None:
        """Apply counter deltas, clamping each counter at zero."""

    @abc.abstractmethod
    async def counts(self) -> AggregateCount: ...


class ProfileTransaction(abc.ABC):
    """Serialised read-then-write access to one voter profile."""

    @abc.abstractmethod
    async def get(self) -> VoterProfile | None: ...

    @abc.abstractmethod
    async def put(self, profile: VoterProfile) -> None: ...


class VoteStore(abc.ABC):
    # --- Clips ---

    @abc.abstractmethod
    async def resolve_clip(
        self, channel: str, seq: int | None = None, clip_id: str | None = None
    ) -> Clip | None:
        """Return the non-blocked clip by seq or clip_id, or None."""

    async def resolve_clips(self, channel: str, refs: list[int | str]) -> dict[int | str, Clip]:
        resolved: dict[int | str, Clip] = {}
        for ref in refs:
            if isinstance(ref, int):
                clip = await self.resolve_clip(channel, seq=ref)
            else:
                clip = await self.resolve_clip(channel, clip_id=ref)
            if clip is not None:
                resolved[ref] = clip
        return resolved

    # --- Ledger + aggregate ---

    @abc.abstractmethod
    def vote_transaction(
        self, channel: str, clip_id: str, voter: str
    ) -> AbstractAsyncContextManager[VoteTransaction]: ...

    @abc.abstractmethod
    async def get_counts(self, channel: str, clip_ids: list[str]) -> dict[str, AggregateCount]: ...

    @abc.abstractmethod
    async def export_counts(self, channel: str) -> list[ClipTally]:
        """Every clip of the channel with an aggregate row, ordered by seq."""

    @abc.abstractmethod
    async def get_user_votes(
        self, channel: str, clip_ids: list[str], voter: str
    ) -> dict[str, Direction]: ...

    @abc.abstractmethod
    async def ledger_entries_for(self, voter: str) -> list[VoteLedgerEntry]: ...

    @abc.abstractmethod
    async def reset_clip(self, channel: str, clip_id: str, now: datetime) -> int:
        """Delete every ledger row of a clip and zero its counters. Returns rows removed."""

    # --- Rate limiting ---

    @abc.abstractmethod
    async def consume_rate_slot(
        self, voter: str, window_seconds: float, now: datetime
    ) -> RateLimitWindow: ...

    @abc.abstractmethod
    async def clear_rate_window(self, voter: str) -> None: ...

    @abc.abstractmethod
    async def purge_rate_windows(self, older_than: datetime) -> int: ...

    # --- Voter profiles ---

    @abc.abstractmethod
    async def voter_activity(self, voter: str, now: datetime) -> VoterActivity: ...

    @abc.abstractmethod
    def profile_transaction(self, voter: str) -> AbstractAsyncContextManager[ProfileTransaction]: ...

    @abc.abstractmethod
    async def get_profile(self, voter: str) -> VoterProfile | None: ...

    @abc.abstractmethod
    async def list_profiles(self, flagged_only: bool, limit: int | None = None) -> list[VoterProfile]: ...

    @abc.abstractmethod
    async def admin_stats(self, now: datetime) -> AdminStats: ...

    # --- Channel settings ---

    @abc.abstractmethod
    async def get_voting_enabled(self, channel: str) -> bool | None: ...

    @abc.abstractmethod
    async def set_voting_enabled(self, channel: str, enabled: bool, now: datetime) -> None: ...

    # --- Lifecycle ---

    async def ping(self) -> None:
        return None

    async def close(self) -> None:
        return None
