"""Per-channel voting switch, read through a TTL cache."""

import enum
import logging
from collections.abc import Callable
from datetime import datetime

from clipvote.db.time import utcnow
from clipvote.errors import StorageError
from clipvote.services.ttl_cache import TTLCache
from clipvote.stores.base import VoteStore

logger = logging.getLogger(__name__)

DEFAULT_VOTING_ENABLED = True


class GatePolicy(str, enum.Enum):
    """What a check does when its backing store cannot be reached."""

    FAIL_OPEN = "open"
    FAIL_CLOSED = "closed"


class ChannelSettingsService:
    def __init__(
        self,
        store: VoteStore,
        ttl: float = 30.0,
        failure_policy: GatePolicy = GatePolicy.FAIL_OPEN,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._store = store
        self._cache: TTLCache[str, bool] = TTLCache(ttl)
        self.failure_policy = failure_policy
        self._clock = clock

    async def voting_enabled(self, channel: str) -> bool:
        cached, fresh = self._cache.get(channel)
        if fresh:
            return cached

        try:
            stored = await self._store.get_voting_enabled(channel)
        except StorageError:
            if cached is not None:
                logger.warning("channel settings unavailable for %s, using stale value", channel)
                return cached
            if self.failure_policy is GatePolicy.FAIL_CLOSED:
                raise
            logger.warning("channel settings unavailable for %s, failing open", channel)
            return DEFAULT_VOTING_ENABLED

        enabled = DEFAULT_VOTING_ENABLED if stored is None else stored
        self._cache.set(channel, enabled)
        return enabled

    async def set_voting_enabled(self, channel: str, enabled: bool) -> None:
        await self._store.set_voting_enabled(channel, enabled, self._clock())
        self._cache.invalidate(channel)
        logger.info("voting %s for %s", "enabled" if enabled else "disabled", channel)
