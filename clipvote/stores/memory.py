"""In-process VoteStore for local development and tests.

Vote and profile transactions hold a per-key ``asyncio.Lock`` for their whole
lifetime and stage their writes; staged writes are applied in one
synchronous step on successful exit, so no other coroutine can observe a
half-applied transaction, and an exception discards them entirely.
"""

import asyncio
from collections import Counter
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

from clipvote.models.clip import Clip
from clipvote.models.vote import AggregateCount, ClipTally, Direction, VoteLedgerEntry
from clipvote.models.voter import AdminStats, RateLimitWindow, VoterProfile
from clipvote.stores.base import ProfileTransaction, VoteStore, VoteTransaction, VoterActivity

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def _newest_first(value: datetime | None) -> tuple[bool, datetime]:
    return value is not None, value or _EPOCH


def _clamped(count: int, delta: int) -> int:
    return max(0, count + delta)


class _MemoryVoteTransaction(VoteTransaction):
    def __init__(self, store: "MemoryVoteStore", channel: str, clip_id: str, voter: str):
        self._store = store
        self.channel = channel
        self.clip_id = clip_id
        self.voter = voter
        self._entry = store._ledger.get((channel, clip_id, voter))
        self._ledger_dirty = False
        self._adjustments: list[tuple[int, int, datetime]] = []

    async def current(self) -> VoteLedgerEntry | None:
        return self._entry.model_copy() if self._entry is not None else None

    async def put(self, direction: Direction, now: datetime) -> None:
        self._entry = VoteLedgerEntry(
            channel=self.channel,
            clip_id=self.clip_id,
            voter=self.voter,
            direction=direction,
            voted_at=now,
        )
        self._ledger_dirty = True

    async def delete(self) -> None:
        self._entry = None
        self._ledger_dirty = True

    async def adjust(self, up_delta: int, down_delta: int, now: datetime) -> None:
        self._adjustments.append((up_delta, down_delta, now))

    async def counts(self) -> AggregateCount:
        row = self._apply_adjustments(self._store._aggregates.get((self.channel, self.clip_id)))
        if row is None:
            return AggregateCount(channel=self.channel, clip_id=self.clip_id)
        return row

    def _apply_adjustments(self, row: AggregateCount | None) -> AggregateCount | None:
        row = row.model_copy() if row is not None else None
        for up_delta, down_delta, now in self._adjustments:
            if row is None:
                if up_delta <= 0 and down_delta <= 0:
                    continue
                row = AggregateCount(channel=self.channel, clip_id=self.clip_id, created_at=now)
            row.up_votes = _clamped(row.up_votes, up_delta)
            row.down_votes = _clamped(row.down_votes, down_delta)
            row.updated_at = now
        return row

    def commit(self) -> None:
        key = (self.channel, self.clip_id, self.voter)
        if self._ledger_dirty:
            if self._entry is None:
                self._store._ledger.pop(key, None)
            else:
                self._store._ledger[key] = self._entry
        row = self._apply_adjustments(self._store._aggregates.get((self.channel, self.clip_id)))
        if row is not None:
            self._store._aggregates[(self.channel, self.clip_id)] = row


class _MemoryProfileTransaction(ProfileTransaction):
    def __init__(self, store: "MemoryVoteStore", voter: str):
        self._store = store
        self._voter = voter
        self._pending: VoterProfile | None = None

    async def get(self) -> VoterProfile | None:
        profile = self._store._profiles.get(self._voter)
        return profile.model_copy() if profile is not None else None

    async def put(self, profile: VoterProfile) -> None:
        self._pending = profile.model_copy()

    def commit(self) -> None:
        if self._pending is not None:
            self._store._profiles[self._voter] = self._pending


class MemoryVoteStore(VoteStore):
    def __init__(self, clips: list[Clip] | None = None):
        self._clips: dict[tuple[str, str], Clip] = {}
        self._ledger: dict[tuple[str, str, str], VoteLedgerEntry] = {}
        self._aggregates: dict[tuple[str, str], AggregateCount] = {}
        self._rate_windows: dict[str, RateLimitWindow] = {}
        self._profiles: dict[str, VoterProfile] = {}
        self._voting_enabled: dict[str, bool] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_holders: Counter[str] = Counter()
        for clip in clips or []:
            self.add_clip(clip)

    def add_clip(self, clip: Clip) -> None:
        self._clips[(clip.channel, clip.clip_id)] = clip

    @asynccontextmanager
    async def _key_lock(self, key: str) -> AsyncIterator[None]:
        # A key's lock lives only while some coroutine holds or awaits it.
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._lock_holders[key] += 1
        try:
            async with lock:
                yield
        finally:
            self._lock_holders[key] -= 1
            if not self._lock_holders[key]:
                del self._lock_holders[key]
                del self._locks[key]

    async def resolve_clip(
        self, channel: str, seq: int | None = None, clip_id: str | None = None
    ) -> Clip | None:
        for clip in self._clips.values():
            if clip.channel != channel or clip.blocked:
                continue
            if seq is not None and clip.seq == seq:
                return clip
            if seq is None and clip_id and clip.clip_id == clip_id:
                return clip
        return None

    @asynccontextmanager
    async def vote_transaction(
        self, channel: str, clip_id: str, voter: str
    ) -> AsyncIterator[VoteTransaction]:
        async with self._key_lock(f"vote:{channel}:{clip_id}:{voter}"):
            tx = _MemoryVoteTransaction(self, channel, clip_id, voter)
            yield tx
            tx.commit()

    async def get_counts(self, channel: str, clip_ids: list[str]) -> dict[str, AggregateCount]:
        return {
            clip_id: self._aggregates[(channel, clip_id)].model_copy()
            for clip_id in clip_ids
            if (channel, clip_id) in self._aggregates
        }

    async def export_counts(self, channel: str) -> list[ClipTally]:
        tallies = []
        for (login, clip_id), row in self._aggregates.items():
            if login != channel:
                continue
            clip = self._clips.get((channel, clip_id))
            tallies.append(
                ClipTally(
                    clip_id=clip_id,
                    seq=clip.seq if clip else None,
                    title=clip.title if clip else None,
                    up_votes=row.up_votes,
                    down_votes=row.down_votes,
                    net_score=row.up_votes - row.down_votes,
                    first_vote_at=row.created_at,
                    last_vote_at=row.updated_at,
                )
            )
        tallies.sort(key=lambda t: (t.seq is None, t.seq or 0, t.clip_id))
        return tallies

    async def get_user_votes(
        self, channel: str, clip_ids: list[str], voter: str
    ) -> dict[str, Direction]:
        votes: dict[str, Direction] = {}
        for clip_id in clip_ids:
            entry = self._ledger.get((channel, clip_id, voter))
            if entry is not None:
                votes[clip_id] = entry.direction
        return votes

    async def ledger_entries_for(self, voter: str) -> list[VoteLedgerEntry]:
        entries = [e.model_copy() for e in self._ledger.values() if e.voter == voter]
        return sorted(entries, key=lambda e: e.voted_at)

    async def reset_clip(self, channel: str, clip_id: str, now: datetime) -> int:
        doomed = [key for key in self._ledger if key[0] == channel and key[1] == clip_id]
        for key in doomed:
            del self._ledger[key]
        row = self._aggregates.get((channel, clip_id))
        if row is not None:
            self._aggregates[(channel, clip_id)] = row.model_copy(
                update={"up_votes": 0, "down_votes": 0, "updated_at": now}
            )
        return len(doomed)

    async def consume_rate_slot(
        self, voter: str, window_seconds: float, now: datetime
    ) -> RateLimitWindow:
        window = self._rate_windows.get(voter)
        if window is None or (now - window.window_start).total_seconds() >= window_seconds:
            window = RateLimitWindow(voter=voter, vote_count=1, window_start=now)
        else:
            window = window.model_copy(update={"vote_count": window.vote_count + 1})
        self._rate_windows[voter] = window
        return window.model_copy()

    async def clear_rate_window(self, voter: str) -> None:
        self._rate_windows.pop(voter, None)

    async def purge_rate_windows(self, older_than: datetime) -> int:
        stale = [v for v, w in self._rate_windows.items() if w.window_start < older_than]
        for voter in stale:
            del self._rate_windows[voter]
        return len(stale)

    async def voter_activity(self, voter: str, now: datetime) -> VoterActivity:
        activity = VoterActivity()
        hour_ago = now - timedelta(hours=1)
        day_ago = now - timedelta(days=1)
        for entry in self._ledger.values():
            if entry.voter != voter:
                continue
            activity.total += 1
            if entry.direction == "down":
                activity.downvotes += 1
            if entry.voted_at > hour_ago:
                activity.votes_last_hour += 1
            if entry.voted_at > day_ago:
                activity.votes_last_day += 1
            if activity.first_vote_at is None or entry.voted_at < activity.first_vote_at:
                activity.first_vote_at = entry.voted_at
        return activity

    @asynccontextmanager
    async def profile_transaction(self, voter: str) -> AsyncIterator[ProfileTransaction]:
        async with self._key_lock(f"voter:{voter}"):
            tx = _MemoryProfileTransaction(self, voter)
            yield tx
            tx.commit()

    async def get_profile(self, voter: str) -> VoterProfile | None:
        profile = self._profiles.get(voter)
        return profile.model_copy() if profile is not None else None

    async def list_profiles(self, flagged_only: bool, limit: int | None = None) -> list[VoterProfile]:
        if flagged_only:
            profiles = [p for p in self._profiles.values() if p.suspended]
            profiles.sort(key=lambda p: _newest_first(p.flagged_at), reverse=True)
        else:
            profiles = list(self._profiles.values())
            profiles.sort(key=lambda p: _newest_first(p.last_vote_at), reverse=True)
        if limit is not None:
            profiles = profiles[:limit]
        return [p.model_copy() for p in profiles]

    async def admin_stats(self, now: datetime) -> AdminStats:
        day_ago = now - timedelta(hours=24)
        return AdminStats(
            flagged_count=sum(1 for p in self._profiles.values() if p.suspended),
            total_tracked=len(self._profiles),
            total_voters=len({e.voter for e in self._ledger.values()}),
            votes_24h=sum(1 for e in self._ledger.values() if e.voted_at > day_ago),
        )

    async def get_voting_enabled(self, channel: str) -> bool | None:
        return self._voting_enabled.get(channel)

    async def set_voting_enabled(self, channel: str, enabled: bool, now: datetime) -> None:
        self._voting_enabled[channel] = enabled
