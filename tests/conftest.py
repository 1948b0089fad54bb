import os
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import pytest

# Settings are read at import time; force the in-memory backend and no Redis.
os.environ["STORAGE_BACKEND"] = "memory"
os.environ["CACHE_ENABLED"] = "false"
os.environ["ADMIN_KEY"] = "test-admin-key"
os.environ["BOT_KEY"] = "test-bot-key"
os.environ["IDENTITY_SECRET"] = "test-identity-secret"

from clipvote.models.clip import Clip  # noqa: E402
from clipvote.services.admin_service import AdminService  # noqa: E402
from clipvote.services.channel_settings import ChannelSettingsService, GatePolicy  # noqa: E402
from clipvote.services.heuristics import HeuristicEngine, HeuristicThresholds  # noqa: E402
from clipvote.services.rate_limiter import RateLimiter  # noqa: E402
from clipvote.services.vote_service import VoteCoordinator  # noqa: E402
from clipvote.stores.memory import MemoryVoteStore  # noqa: E402

CHANNEL = "loadingreadyrun"


class FakeClock:
    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


def make_clips(channel: str = CHANNEL, count: int = 12) -> list[Clip]:
    return [
        Clip(channel=channel, clip_id=f"Clip{n}Slug", seq=n, title=f"Clip {n}")
        for n in range(1, count + 1)
    ]


@dataclass
class Services:
    store: MemoryVoteStore
    clock: FakeClock
    rate_limiter: RateLimiter
    heuristics: HeuristicEngine
    channel_settings: ChannelSettingsService
    coordinator: VoteCoordinator
    admin: AdminService


def build_services(
    store: MemoryVoteStore,
    clock: FakeClock,
    thresholds: HeuristicThresholds | None = None,
    max_votes: int = 30,
    window_seconds: int = 300,
    rate_limit_failure_policy: GatePolicy = GatePolicy.FAIL_OPEN,
    suspension_check_failure_policy: GatePolicy = GatePolicy.FAIL_OPEN,
    heuristics=None,
    cache=None,
) -> Services:
    rate_limiter = RateLimiter(store, max_votes=max_votes, window_seconds=window_seconds, clock=clock)
    heuristics = heuristics or HeuristicEngine(store, thresholds, clock=clock)
    channel_settings = ChannelSettingsService(store, ttl=30.0, clock=clock)
    coordinator = VoteCoordinator(
        store,
        rate_limiter,
        heuristics,
        channel_settings,
        cache=cache,
        rate_limit_failure_policy=rate_limit_failure_policy,
        suspension_check_failure_policy=suspension_check_failure_policy,
        clock=clock,
    )
    admin = AdminService(store, rate_limiter, cache=cache, clock=clock)
    return Services(store, clock, rate_limiter, heuristics, channel_settings, coordinator, admin)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> MemoryVoteStore:
    return MemoryVoteStore(make_clips())


@pytest.fixture
def services(store, clock) -> Services:
    return build_services(store, clock)
