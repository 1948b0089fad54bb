import asyncio
import logging

import asyncpg

logger = logging.getLogger(__name__)

MAX_RETRIES = 5
RETRY_INTERVAL = 2  # seconds

SCHEMA = """
CREATE TABLE IF NOT EXISTS clips (
    login VARCHAR(64) NOT NULL,
    clip_id VARCHAR(255) NOT NULL,
    seq INTEGER NOT NULL,
    title TEXT,
    blocked BOOLEAN NOT NULL DEFAULT FALSE,
    PRIMARY KEY (login, clip_id),
    UNIQUE (login, seq)
);

CREATE TABLE IF NOT EXISTS vote_ledger (
    id BIGSERIAL PRIMARY KEY,
    login VARCHAR(64) NOT NULL,
    clip_id VARCHAR(255) NOT NULL,
    username VARCHAR(64) NOT NULL,
    vote_dir VARCHAR(10) NOT NULL CHECK (vote_dir IN ('up', 'down')),
    voted_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    UNIQUE (login, clip_id, username)
);
CREATE INDEX IF NOT EXISTS idx_ledger_username ON vote_ledger (username, voted_at);

CREATE TABLE IF NOT EXISTS clip_votes (
    login VARCHAR(64) NOT NULL,
    clip_id VARCHAR(255) NOT NULL,
    up_votes INTEGER NOT NULL DEFAULT 0,
    down_votes INTEGER NOT NULL DEFAULT 0,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    PRIMARY KEY (login, clip_id)
);

CREATE TABLE IF NOT EXISTS suspicious_voters (
    username VARCHAR(64) PRIMARY KEY,
    total_votes INTEGER NOT NULL DEFAULT 0,
    votes_last_hour INTEGER NOT NULL DEFAULT 0,
    votes_last_day INTEGER NOT NULL DEFAULT 0,
    downvote_ratio DOUBLE PRECISION NOT NULL DEFAULT 0,
    first_vote_at TIMESTAMPTZ,
    last_vote_at TIMESTAMPTZ,
    flagged BOOLEAN NOT NULL DEFAULT FALSE,
    flag_reason TEXT,
    flagged_at TIMESTAMPTZ,
    reviewed BOOLEAN NOT NULL DEFAULT FALSE,
    reviewed_at TIMESTAMPTZ
);
CREATE INDEX IF NOT EXISTS idx_suspicious_flagged ON suspicious_voters (flagged, reviewed);

CREATE TABLE IF NOT EXISTS vote_rate_limits (
    username VARCHAR(64) PRIMARY KEY,
    vote_count INTEGER NOT NULL DEFAULT 0,
    window_start TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS channel_settings (
    login VARCHAR(64) PRIMARY KEY,
    voting_enabled BOOLEAN NOT NULL DEFAULT TRUE,
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
"""


async def create_pool(database_url: str) -> asyncpg.Pool:
    # asyncpg expects postgresql:// not postgres://
    dsn = database_url.replace("postgres://", "postgresql://", 1)

    for attempt in range(1, MAX_RETRIES + 1):
        try:
            pool = await asyncpg.create_pool(
                dsn,
                min_size=2,
                max_size=10,
                max_inactive_connection_lifetime=1800,  # 30 minutes
            )
            # Verify connectivity
            async with pool.acquire() as conn:
                await conn.execute("SELECT 1")
            logger.info("database connected")
            return pool
        except Exception as e:
            logger.warning("database connection attempt %d/%d failed: %s", attempt, MAX_RETRIES, e)
            if attempt < MAX_RETRIES:
                await asyncio.sleep(RETRY_INTERVAL)

    raise RuntimeError(f"database connection failed after {MAX_RETRIES} attempts")


async def init_schema(pool: asyncpg.Pool) -> None:
    """Create the vote tables if they do not exist yet."""
    async with pool.acquire() as conn:
        await conn.execute(SCHEMA)
    logger.info("database schema ready")
