"""Redis cache-aside for per-clip like/dislike counts.

Each clip's counts live in one hash, ``votes:{channel}:{clip_id}``, with
``likes`` and ``dislikes`` fields and a short TTL. Beside it sits a
generation counter, ``votes:gen:{channel}:{clip_id}``, bumped every time the
counts are invalidated. A query snapshots the generations together with the
cached hashes, and its fill after the store read only lands for clips whose
generation has not moved, so a fill can never overwrite a newer commit.

Any Redis failure degrades to a cache miss; the vote store stays the source
of truth.
"""

import logging
from dataclasses import dataclass, field

import redis.asyncio as redis

from clipvote.routers import metrics

logger = logging.getLogger(__name__)

COUNTS_TTL_SECONDS = 60
GENERATION_TTL_SECONDS = 3600

# KEYS: counts1, gen1, counts2, gen2, ...
# ARGV: ttl, then (expected_gen, likes, dislikes) per clip
FILL_IF_CURRENT = """
local ttl = ARGV[1]
local written = 0
for i = 1, #KEYS, 2 do
    local base = 2 + ((i - 1) / 2) * 3
    local gen = redis.call('GET', KEYS[i + 1]) or ''
    if gen == ARGV[base] then
        redis.call('HSET', KEYS[i], 'likes', ARGV[base + 1], 'dislikes', ARGV[base + 2])
        redis.call('EXPIRE', KEYS[i], ttl)
        written = written + 1
    end
end
return written
"""


def counts_key(channel: str, clip_id: str) -> str:
    return f"votes:{channel}:{clip_id}"


def generation_key(channel: str, clip_id: str) -> str:
    return f"votes:gen:{channel}:{clip_id}"


@dataclass
class CachedCounts:
    """Cached ``(likes, dislikes)`` per clip plus the generations seen with them."""

    counts: dict[str, tuple[int, int]] = field(default_factory=dict)
    generations: dict[str, str] = field(default_factory=dict)


class CacheService:
    """Cache-aside layer over an optional Redis client; ``None`` disables it."""

    def __init__(self, client: redis.Redis | None):
        self._rdb = client
        self._fill_script = client.register_script(FILL_IF_CURRENT) if client is not None else None

    @property
    def client(self) -> redis.Redis | None:
        return self._rdb

    async def get_many_counts(self, channel: str, clip_ids: list[str]) -> CachedCounts:
        """Read cached counts and snapshot each clip's generation in one round trip.

        Call this before reading the store; pass the result to ``fill_counts``.
        """
        if self._rdb is None or not clip_ids:
            return CachedCounts()
        try:
            async with self._rdb.pipeline(transaction=True) as pipe:
                for clip_id in clip_ids:
                    pipe.hgetall(counts_key(channel, clip_id))
                    pipe.get(generation_key(channel, clip_id))
                replies = await pipe.execute()
        except Exception:
            logger.warning("cache read failed for %s (%d clips)", channel, len(clip_ids), exc_info=True)
            return CachedCounts()

        cached = CachedCounts()
        for clip_id, row, gen in zip(clip_ids, replies[::2], replies[1::2]):
            cached.generations[clip_id] = gen or ""
            if row:
                cached.counts[clip_id] = (int(row["likes"]), int(row["dislikes"]))
        metrics.cache_hits.inc(len(cached.counts))
        metrics.cache_misses.inc(len(clip_ids) - len(cached.counts))
        return cached

    async def fill_counts(
        self, channel: str, counts: dict[str, tuple[int, int]], snapshot: CachedCounts
    ) -> None:
        """Store counts read from the vote store, skipping clips invalidated since ``snapshot``."""
        if self._fill_script is None or not counts:
            return
        keys: list[str] = []
        args: list[str | int] = [COUNTS_TTL_SECONDS]
        for clip_id, (likes, dislikes) in counts.items():
            if clip_id not in snapshot.generations:
                continue
            keys += [counts_key(channel, clip_id), generation_key(channel, clip_id)]
            args += [snapshot.generations[clip_id], likes, dislikes]
        if not keys:
            return
        try:
            await self._fill_script(keys=keys, args=args)
        except Exception:
            logger.warning("cache write failed for %s (%d clips)", channel, len(counts), exc_info=True)

    async def invalidate_counts(self, channel: str, clip_id: str) -> None:
        if self._rdb is None:
            return
        gen = generation_key(channel, clip_id)
        try:
            async with self._rdb.pipeline(transaction=True) as pipe:
                pipe.delete(counts_key(channel, clip_id))
                pipe.incr(gen)
                pipe.expire(gen, GENERATION_TTL_SECONDS)
                await pipe.execute()
        except Exception:
            logger.warning("cache invalidate failed for %s/%s", channel, clip_id, exc_info=True)

    async def close(self) -> None:
        if self._rdb is not None:
            await self._rdb.aclose()


async def create_cache_service(redis_url: str) -> CacheService:
    """Connect to Redis, or return a disabled service when that is not possible."""
    if not redis_url:
        logger.info("redis: not configured, vote count caching disabled")
        return CacheService(None)

    client = redis.from_url(redis_url, decode_responses=True)
    try:
        await client.ping()
    except Exception:
        logger.warning("redis: unreachable, vote count caching disabled", exc_info=True)
        await client.aclose()
        return CacheService(None)

    logger.info("redis: connected, vote count caching enabled")
    return CacheService(client)
