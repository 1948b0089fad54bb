"""PostgreSQL-backed VoteStore using asyncpg.

Vote transactions take a transaction-scoped advisory lock on the
(channel, clip, voter) key, so two concurrent first votes from the same voter
cannot both observe "no existing entry". Aggregate counters are only ever
changed with ``col = GREATEST(0, col + $delta)``.
"""

import asyncio
import logging
from collections.abc import AsyncIterator, Iterator
from contextlib import asynccontextmanager, contextmanager
from datetime import datetime

import asyncpg

from clipvote.errors import StorageError
from clipvote.models.clip import Clip
from clipvote.models.vote import AggregateCount, ClipTally, Direction, VoteLedgerEntry
from clipvote.models.voter import AdminStats, RateLimitWindow, VoterProfile
from clipvote.stores.base import ProfileTransaction, VoteStore, VoteTransaction, VoterActivity

logger = logging.getLogger(__name__)

FIND_CLIP_BY_SEQ = """
    SELECT login, clip_id, seq, title, blocked FROM clips
    WHERE login = $1 AND seq = $2 AND blocked = FALSE
"""

FIND_CLIP_BY_ID = """
    SELECT login, clip_id, seq, title, blocked FROM clips
    WHERE login = $1 AND clip_id = $2 AND blocked = FALSE
"""

LOCK_KEY = "SELECT pg_advisory_xact_lock(hashtext($1))"

SELECT_LEDGER_ENTRY = """
    SELECT vote_dir, voted_at FROM vote_ledger
    WHERE login = $1 AND clip_id = $2 AND username = $3
    FOR UPDATE
"""

UPSERT_LEDGER_ENTRY = """
    INSERT INTO vote_ledger (login, clip_id, username, vote_dir, voted_at)
    VALUES ($1, $2, $3, $4, $5)
    ON CONFLICT (login, clip_id, username)
    DO UPDATE SET vote_dir = EXCLUDED.vote_dir, voted_at = EXCLUDED.voted_at
"""

DELETE_LEDGER_ENTRY = """
    DELETE FROM vote_ledger WHERE login = $1 AND clip_id = $2 AND username = $3
"""

UPSERT_COUNTS = """
    INSERT INTO clip_votes (login, clip_id, up_votes, down_votes, created_at, updated_at)
    VALUES ($1, $2, GREATEST(0, $3::int), GREATEST(0, $4::int), $5, $5)
    ON CONFLICT (login, clip_id) DO UPDATE SET
      up_votes = GREATEST(0, clip_votes.up_votes + $3::int),
      down_votes = GREATEST(0, clip_votes.down_votes + $4::int),
      updated_at = $5
"""

DECREMENT_COUNTS = """
    UPDATE clip_votes SET
      up_votes = GREATEST(0, up_votes + $3::int),
      down_votes = GREATEST(0, down_votes + $4::int),
      updated_at = $5
    WHERE login = $1 AND clip_id = $2
"""

SELECT_COUNTS = """
    SELECT login, clip_id, up_votes, down_votes, updated_at FROM clip_votes
    WHERE login = $1 AND clip_id = ANY($2::text[])
"""

EXPORT_COUNTS = """
    SELECT v.clip_id, c.seq, c.title, v.up_votes, v.down_votes,
           (v.up_votes - v.down_votes) AS net_score, v.created_at, v.updated_at
    FROM clip_votes v
    LEFT JOIN clips c ON c.login = v.login AND c.clip_id = v.clip_id
    WHERE v.login = $1
    ORDER BY c.seq ASC NULLS LAST, v.clip_id
"""

SELECT_USER_VOTES = """
    SELECT clip_id, vote_dir FROM vote_ledger
    WHERE login = $1 AND clip_id = ANY($2::text[]) AND username = $3
"""

SELECT_LEDGER_FOR_VOTER = """
    SELECT login, clip_id, username, vote_dir, voted_at FROM vote_ledger
    WHERE username = $1
    ORDER BY voted_at
"""

CONSUME_RATE_SLOT = """
    INSERT INTO vote_rate_limits (username, vote_count, window_start)
    VALUES ($1, 1, $2::timestamptz)
    ON CONFLICT (username) DO UPDATE SET
      vote_count = CASE
        WHEN EXTRACT(EPOCH FROM ($2::timestamptz - vote_rate_limits.window_start)) >= $3::double precision
        THEN 1
        ELSE vote_rate_limits.vote_count + 1
      END,
      window_start = CASE
        WHEN EXTRACT(EPOCH FROM ($2::timestamptz - vote_rate_limits.window_start)) >= $3::double precision
        THEN $2::timestamptz
        ELSE vote_rate_limits.window_start
      END
    RETURNING vote_count, window_start
"""

VOTER_ACTIVITY = """
    SELECT
        COUNT(*) AS total,
        COUNT(*) FILTER (WHERE vote_dir = 'down') AS downvotes,
        COUNT(*) FILTER (WHERE voted_at > $2::timestamptz - INTERVAL '1 hour') AS last_hour,
        COUNT(*) FILTER (WHERE voted_at > $2::timestamptz - INTERVAL '1 day') AS last_day,
        MIN(voted_at) AS first_vote
    FROM vote_ledger
    WHERE username = $1
"""

PROFILE_COLUMNS = """
    username, total_votes, votes_last_hour, votes_last_day, downvote_ratio,
    first_vote_at, last_vote_at, flagged, flag_reason, flagged_at, reviewed, reviewed_at
"""

SELECT_PROFILE = f"SELECT {PROFILE_COLUMNS} FROM suspicious_voters WHERE username = $1"

UPSERT_PROFILE = """
    INSERT INTO suspicious_voters (
        username, total_votes, votes_last_hour, votes_last_day, downvote_ratio,
        first_vote_at, last_vote_at, flagged, flag_reason, flagged_at, reviewed, reviewed_at
    ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12)
    ON CONFLICT (username) DO UPDATE SET
      total_votes = EXCLUDED.total_votes,
      votes_last_hour = EXCLUDED.votes_last_hour,
      votes_last_day = EXCLUDED.votes_last_day,
      downvote_ratio = EXCLUDED.downvote_ratio,
      first_vote_at = EXCLUDED.first_vote_at,
      last_vote_at = EXCLUDED.last_vote_at,
      flagged = EXCLUDED.flagged,
      flag_reason = EXCLUDED.flag_reason,
      flagged_at = EXCLUDED.flagged_at,
      reviewed = EXCLUDED.reviewed,
      reviewed_at = EXCLUDED.reviewed_at
"""

LIST_FLAGGED = f"""
    SELECT {PROFILE_COLUMNS} FROM suspicious_voters
    WHERE flagged = TRUE AND reviewed = FALSE
    ORDER BY flagged_at DESC NULLS LAST
    LIMIT $1
"""

LIST_ALL = f"""
    SELECT {PROFILE_COLUMNS} FROM suspicious_voters
    ORDER BY last_vote_at DESC NULLS LAST
    LIMIT $1
"""

ADMIN_STATS = """
    SELECT
        (SELECT COUNT(*) FROM suspicious_voters WHERE flagged = TRUE AND reviewed = FALSE) AS flagged_count,
        (SELECT COUNT(*) FROM suspicious_voters) AS total_tracked,
        (SELECT COUNT(DISTINCT username) FROM vote_ledger) AS total_voters,
        (SELECT COUNT(*) FROM vote_ledger WHERE voted_at > $1::timestamptz - INTERVAL '24 hours') AS votes_24h
"""


@contextmanager
def _storage_errors(operation: str) -> Iterator[None]:
    try:
        yield
    except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, asyncio.TimeoutError) as e:
        logger.error("storage: %s failed: %s", operation, e)
        raise StorageError(f"Database error during {operation}") from e


def _row_to_clip(row: asyncpg.Record) -> Clip:
    return Clip(
        channel=row["login"],
        clip_id=row["clip_id"],
        seq=row["seq"],
        title=row["title"],
        blocked=row["blocked"],
    )


def _row_to_profile(row: asyncpg.Record) -> VoterProfile:
    return VoterProfile(
        voter=row["username"],
        total_votes=row["total_votes"],
        votes_last_hour=row["votes_last_hour"],
        votes_last_day=row["votes_last_day"],
        downvote_ratio=float(row["downvote_ratio"]),
        first_vote_at=row["first_vote_at"],
        last_vote_at=row["last_vote_at"],
        flagged=row["flagged"],
        flag_reason=row["flag_reason"],
        flagged_at=row["flagged_at"],
        reviewed=row["reviewed"],
        reviewed_at=row["reviewed_at"],
    )


class _PostgresVoteTransaction(VoteTransaction):
    def __init__(self, conn: asyncpg.Connection, channel: str, clip_id: str, voter: str):
        self._conn = conn
        self.channel = channel
        self.clip_id = clip_id
        self.voter = voter

    async def current(self) -> VoteLedgerEntry | None:
        row = await self._conn.fetchrow(SELECT_LEDGER_ENTRY, self.channel, self.clip_id, self.voter)
        if row is None:
            return None
        return VoteLedgerEntry(
            channel=self.channel,
            clip_id=self.clip_id,
            voter=self.voter,
            direction=row["vote_dir"],
            voted_at=row["voted_at"],
        )

    async def put(self, direction: Direction, now: datetime) -> None:
        await self._conn.execute(
            UPSERT_LEDGER_ENTRY, self.channel, self.clip_id, self.voter, direction, now
        )

    async def delete(self) -> None:
        await self._conn.execute(DELETE_LEDGER_ENTRY, self.channel, self.clip_id, self.voter)

    async def adjust(self, up_delta: int, down_delta: int, now: datetime) -> None:
        # Decrements alone never create the aggregate row.
        query = UPSERT_COUNTS if up_delta > 0 or down_delta > 0 else DECREMENT_COUNTS
        await self._conn.execute(query, self.channel, self.clip_id, up_delta, down_delta, now)

    async def counts(self) -> AggregateCount:
        row = await self._conn.fetchrow(SELECT_COUNTS, self.channel, [self.clip_id])
        if row is None:
            return AggregateCount(channel=self.channel, clip_id=self.clip_id)
        return AggregateCount(
            channel=self.channel,
            clip_id=self.clip_id,
            up_votes=row["up_votes"],
            down_votes=row["down_votes"],
            updated_at=row["updated_at"],
        )


class _PostgresProfileTransaction(ProfileTransaction):
    def __init__(self, conn: asyncpg.Connection, voter: str):
        self._conn = conn
        self._voter = voter

    async def get(self) -> VoterProfile | None:
        row = await self._conn.fetchrow(SELECT_PROFILE + " FOR UPDATE", self._voter)
        return _row_to_profile(row) if row is not None else None

    async def put(self, profile: VoterProfile) -> None:
        await self._conn.execute(
            UPSERT_PROFILE,
            profile.voter,
            profile.total_votes,
            profile.votes_last_hour,
            profile.votes_last_day,
            profile.downvote_ratio,
            profile.first_vote_at,
            profile.last_vote_at,
            profile.flagged,
            profile.flag_reason,
            profile.flagged_at,
            profile.reviewed,
            profile.reviewed_at,
        )


class PostgresVoteStore(VoteStore):
    def __init__(self, pool: asyncpg.Pool):
        self._pool = pool

    @property
    def pool(self) -> asyncpg.Pool:
        return self._pool

    async def resolve_clip(
        self, channel: str, seq: int | None = None, clip_id: str | None = None
    ) -> Clip | None:
        with _storage_errors("clip lookup"):
            if seq is not None:
                row = await self._pool.fetchrow(FIND_CLIP_BY_SEQ, channel, seq)
            elif clip_id:
                row = await self._pool.fetchrow(FIND_CLIP_BY_ID, channel, clip_id)
            else:
                return None
        return _row_to_clip(row) if row is not None else None

    @asynccontextmanager
    async def vote_transaction(
        self, channel: str, clip_id: str, voter: str
    ) -> AsyncIterator[VoteTransaction]:
        with _storage_errors("vote transaction"):
            async with self._pool.acquire() as conn:
                async with conn.transaction():
                    await conn.execute(LOCK_KEY, f"vote:{channel}:{clip_id}:{voter}")
                    yield _PostgresVoteTransaction(conn, channel, clip_id, voter)

    async def get_counts(self, channel: str, clip_ids: list[str]) -> dict[str, AggregateCount]:
        if not clip_ids:
            return {}
        with _storage_errors("count lookup"):
            rows = await self._pool.fetch(SELECT_COUNTS, channel, clip_ids)
        return {
            row["clip_id"]: AggregateCount(
                channel=row["login"],
                clip_id=row["clip_id"],
                up_votes=row["up_votes"],
                down_votes=row["down_votes"],
                updated_at=row["updated_at"],
            )
            for row in rows
        }

    async def export_counts(self, channel: str) -> list[ClipTally]:
        with _storage_errors("vote export"):
            rows = await self._pool.fetch(EXPORT_COUNTS, channel)
        return [
            ClipTally(
                clip_id=row["clip_id"],
                seq=row["seq"],
                title=row["title"],
                up_votes=row["up_votes"],
                down_votes=row["down_votes"],
                net_score=row["net_score"],
                first_vote_at=row["created_at"],
                last_vote_at=row["updated_at"],
            )
            for row in rows
        ]

    async def get_user_votes(
        self, channel: str, clip_ids: list[str], voter: str
    ) -> dict[str, Direction]:
        if not clip_ids:
            return {}
        with _storage_errors("user vote lookup"):
            rows = await self._pool.fetch(SELECT_USER_VOTES, channel, clip_ids, voter)
        return {row["clip_id"]: row["vote_dir"] for row in rows}

    async def ledger_entries_for(self, voter: str) -> list[VoteLedgerEntry]:
        with _storage_errors("ledger lookup"):
            rows = await self._pool.fetch(SELECT_LEDGER_FOR_VOTER, voter)
        return [
            VoteLedgerEntry(
                channel=row["login"],
                clip_id=row["clip_id"],
                voter=row["username"],
                direction=row["vote_dir"],
                voted_at=row["voted_at"],
            )
            for row in rows
        ]

    async def reset_clip(self, channel: str, clip_id: str, now: datetime) -> int:
        # Ledger rows first, then the counter row: the same order vote transactions lock them.
        with _storage_errors("clip reset"):
            async with self._pool.acquire() as conn:
                async with conn.transaction():
                    result = await conn.execute(
                        "DELETE FROM vote_ledger WHERE login = $1 AND clip_id = $2",
                        channel,
                        clip_id,
                    )
                    await conn.execute(
                        """UPDATE clip_votes SET up_votes = 0, down_votes = 0, updated_at = $3
                           WHERE login = $1 AND clip_id = $2""",
                        channel,
                        clip_id,
                        now,
                    )
        # asyncpg returns 'DELETE N'
        return int(result.split()[-1])

    async def consume_rate_slot(
        self, voter: str, window_seconds: float, now: datetime
    ) -> RateLimitWindow:
        with _storage_errors("rate limit"):
            row = await self._pool.fetchrow(CONSUME_RATE_SLOT, voter, now, float(window_seconds))
        return RateLimitWindow(voter=voter, vote_count=row["vote_count"], window_start=row["window_start"])

    async def clear_rate_window(self, voter: str) -> None:
        with _storage_errors("rate limit reset"):
            await self._pool.execute("DELETE FROM vote_rate_limits WHERE username = $1", voter)

    async def purge_rate_windows(self, older_than: datetime) -> int:
        with _storage_errors("rate limit purge"):
            result = await self._pool.execute(
                "DELETE FROM vote_rate_limits WHERE window_start < $1", older_than
            )
        return int(result.split()[-1])

    async def voter_activity(self, voter: str, now: datetime) -> VoterActivity:
        with _storage_errors("voter activity"):
            row = await self._pool.fetchrow(VOTER_ACTIVITY, voter, now)
        return VoterActivity(
            total=row["total"],
            downvotes=row["downvotes"],
            votes_last_hour=row["last_hour"],
            votes_last_day=row["last_day"],
            first_vote_at=row["first_vote"],
        )

    @asynccontextmanager
    async def profile_transaction(self, voter: str) -> AsyncIterator[ProfileTransaction]:
        with _storage_errors("profile update"):
            async with self._pool.acquire() as conn:
                async with conn.transaction():
                    await conn.execute(LOCK_KEY, f"voter:{voter}")
                    yield _PostgresProfileTransaction(conn, voter)

    async def get_profile(self, voter: str) -> VoterProfile | None:
        with _storage_errors("profile lookup"):
            row = await self._pool.fetchrow(SELECT_PROFILE, voter)
        return _row_to_profile(row) if row is not None else None

    async def list_profiles(self, flagged_only: bool, limit: int | None = None) -> list[VoterProfile]:
        with _storage_errors("profile listing"):
            rows = await self._pool.fetch(LIST_FLAGGED if flagged_only else LIST_ALL, limit)
        return [_row_to_profile(row) for row in rows]

    async def admin_stats(self, now: datetime) -> AdminStats:
        with _storage_errors("admin stats"):
            row = await self._pool.fetchrow(ADMIN_STATS, now)
        return AdminStats(
            flagged_count=row["flagged_count"],
            total_tracked=row["total_tracked"],
            total_voters=row["total_voters"],
            votes_24h=row["votes_24h"],
        )

    async def get_voting_enabled(self, channel: str) -> bool | None:
        with _storage_errors("channel settings lookup"):
            return await self._pool.fetchval(
                "SELECT voting_enabled FROM channel_settings WHERE login = $1", channel
            )

    async def set_voting_enabled(self, channel: str, enabled: bool, now: datetime) -> None:
        with _storage_errors("channel settings update"):
            await self._pool.execute(
                """INSERT INTO channel_settings (login, voting_enabled, updated_at)
                   VALUES ($1, $2, $3)
                   ON CONFLICT (login) DO UPDATE
                   SET voting_enabled = EXCLUDED.voting_enabled, updated_at = EXCLUDED.updated_at""",
                channel,
                enabled,
                now,
            )

    async def ping(self) -> None:
        with _storage_errors("ping"):
            async with self._pool.acquire() as conn:
                await conn.fetchval("SELECT 1")

    async def close(self) -> None:
        await self._pool.close()
        logger.info("database pool closed")
