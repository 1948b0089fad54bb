"""Tests for the per-channel voting switch and its TTL cache."""

import pytest
from conftest import CHANNEL

from clipvote.errors import StorageError
from clipvote.services.channel_settings import ChannelSettingsService, GatePolicy
from clipvote.services.ttl_cache import TTLCache
from clipvote.stores.memory import MemoryVoteStore


class _Ticker:
    def __init__(self):
        self.t = 0.0

    def __call__(self) -> float:
        return self.t


class _CountingStore(MemoryVoteStore):
    def __init__(self):
        super().__init__()
        self.reads = 0
        self.down = False

    async def get_voting_enabled(self, channel):
        self.reads += 1
        if self.down:
            raise StorageError("settings table unreachable")
        return await super().get_voting_enabled(channel)


# ---------- TTLCache ----------


class TestTTLCache:
    def test_missing_key(self):
        cache = TTLCache(10)
        assert cache.get("a") == (None, False)
        assert "a" not in cache

    def test_fresh_then_stale(self):
        ticker = _Ticker()
        cache = TTLCache(10, clock=ticker)
        cache.set("a", True)
        assert cache.get("a") == (True, True)

        ticker.t = 10
        assert cache.get("a") == (True, False)
        assert "a" in cache

    def test_invalidate_and_clear(self):
        cache = TTLCache(10)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.invalidate("a")
        assert "a" not in cache
        cache.clear()
        assert "b" not in cache


# ---------- ChannelSettingsService ----------


class TestVotingEnabled:
    @pytest.mark.asyncio
    async def test_defaults_to_enabled(self):
        svc = ChannelSettingsService(MemoryVoteStore())
        assert await svc.voting_enabled(CHANNEL)

    @pytest.mark.asyncio
    async def test_reads_are_cached(self):
        store = _CountingStore()
        svc = ChannelSettingsService(store, ttl=30)

        for _ in range(5):
            await svc.voting_enabled(CHANNEL)
        assert store.reads == 1

    @pytest.mark.asyncio
    async def test_set_invalidates_cache(self):
        store = _CountingStore()
        svc = ChannelSettingsService(store, ttl=30)
        assert await svc.voting_enabled(CHANNEL)

        await svc.set_voting_enabled(CHANNEL, False)

        assert not await svc.voting_enabled(CHANNEL)
        assert store.reads == 2

    @pytest.mark.asyncio
    async def test_outage_uses_stale_value(self):
        store = _CountingStore()
        await store.set_voting_enabled(CHANNEL, False, now=None)
        svc = ChannelSettingsService(store, ttl=0, failure_policy=GatePolicy.FAIL_CLOSED)
        assert not await svc.voting_enabled(CHANNEL)

        store.down = True
        assert not await svc.voting_enabled(CHANNEL)

    @pytest.mark.asyncio
    async def test_outage_without_cache_fails_open(self):
        store = _CountingStore()
        store.down = True
        svc = ChannelSettingsService(store)
        assert await svc.voting_enabled(CHANNEL)

    @pytest.mark.asyncio
    async def test_outage_without_cache_fails_closed(self):
        store = _CountingStore()
        store.down = True
        svc = ChannelSettingsService(store, failure_policy=GatePolicy.FAIL_CLOSED)
        with pytest.raises(StorageError):
            await svc.voting_enabled(CHANNEL)

    def test_policy_from_setting_string(self):
        assert GatePolicy("closed") is GatePolicy.FAIL_CLOSED
        assert GatePolicy("open") is GatePolicy.FAIL_OPEN
