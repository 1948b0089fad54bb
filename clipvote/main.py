import asyncio
import re
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from clipvote.config import settings
from clipvote.db.database import create_pool, init_schema
from clipvote.middleware.logging import StructuredLoggingMiddleware, configure_logging
from clipvote.routers import admin, health, metrics, votes
from clipvote.services import housekeeping
from clipvote.services.admin_service import AdminService
from clipvote.services.cache_service import create_cache_service
from clipvote.services.channel_settings import ChannelSettingsService, GatePolicy
from clipvote.services.heuristics import HeuristicEngine, HeuristicThresholds
from clipvote.services.identity import IdentityProvider
from clipvote.services.rate_limiter import RateLimiter
from clipvote.services.vote_service import VoteCoordinator
from clipvote.stores.base import VoteStore
from clipvote.stores.memory import MemoryVoteStore
from clipvote.stores.postgres import PostgresVoteStore

# Initialize structured logging (must be before any logger usage)
configure_logging(log_level=settings.log_level, service="clipvote")
logger = structlog.get_logger()


async def create_store() -> VoteStore:
    if settings.storage_backend == "memory":
        logger.warning("using in-memory vote store, votes are not persisted")
        return MemoryVoteStore()

    pool = await create_pool(settings.database_url)
    await init_schema(pool)
    return PostgresVoteStore(pool)


def wire_services(app: FastAPI, store: VoteStore, cache_service) -> None:
    """Build the vote services over ``store`` and attach them to ``app.state``."""
    rate_limiter = RateLimiter(
        store,
        max_votes=settings.rate_limit_votes,
        window_seconds=settings.rate_limit_window,
    )
    heuristics = HeuristicEngine(
        store,
        HeuristicThresholds(
            min_votes=settings.flag_min_votes,
            downvote_ratio=settings.flag_downvote_ratio,
            votes_per_hour=settings.flag_votes_per_hour,
            new_account_seconds=settings.flag_new_account_seconds,
            new_account_min_votes=settings.flag_new_account_min_votes,
        ),
    )
    channel_settings = ChannelSettingsService(
        store,
        ttl=settings.settings_cache_ttl,
        failure_policy=GatePolicy(settings.settings_failure_policy),
    )

    app.state.store = store
    app.state.cache_service = cache_service
    app.state.rate_limiter = rate_limiter
    app.state.channel_settings = channel_settings
    app.state.coordinator = VoteCoordinator(
        store,
        rate_limiter,
        heuristics,
        channel_settings,
        cache=cache_service,
        rate_limit_failure_policy=GatePolicy(settings.rate_limit_failure_policy),
        suspension_check_failure_policy=GatePolicy(settings.suspension_check_failure_policy),
    )
    app.state.admin_service = AdminService(store, rate_limiter, cache=cache_service)
    app.state.identity = IdentityProvider(
        identity_secret=settings.identity_secret,
        bot_key=settings.bot_key,
        admin_key=settings.admin_key,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    store = await create_store()
    cache_service = await create_cache_service(settings.redis_url if settings.cache_enabled else "")
    wire_services(app, store, cache_service)

    if not settings.admin_key:
        logger.warning("ADMIN_KEY is not set, admin endpoints will reject every request")

    purge_task = asyncio.create_task(
        housekeeping.run(app.state.rate_limiter, interval=settings.rate_limit_purge_interval)
    )

    yield

    # Shutdown
    purge_task.cancel()
    try:
        await purge_task
    except asyncio.CancelledError:
        pass

    await cache_service.close()
    logger.info("redis connection closed")
    await store.close()


def cors_options(origins: str) -> dict:
    """Split CORS_ORIGINS into exact origins and a wildcard regex.

    ``*`` alone allows every origin. Entries ending in ``*``, such as
    ``http://localhost:*``, become prefix patterns.
    """
    exact: list[str] = []
    patterns: list[str] = []
    for origin in (o.strip() for o in origins.split(",")):
        if not origin or origin == "*":
            continue
        if origin.endswith("*"):
            patterns.append(re.escape(origin.removesuffix("*")) + ".*")
        else:
            exact.append(origin)

    if origins.strip() == "*":
        exact = ["*"]
    return {"allow_origins": exact, "allow_origin_regex": "|".join(patterns) or None}


app = FastAPI(title="Clipvote API", version="0.1.0", lifespan=lifespan)

# Middleware stack (last added is outermost).
app.add_middleware(
    CORSMiddleware,
    **cors_options(settings.cors_origins),
    allow_methods=["GET", "POST", "PUT", "OPTIONS"],
    allow_headers=[
        "Origin",
        "Content-Type",
        "Accept",
        "X-Voter",
        "X-Voter-Token",
        "X-Bot-Key",
        "X-Admin-Key",
    ],
    expose_headers=[
        "X-RateLimit-Limit",
        "X-RateLimit-Remaining",
        "X-RateLimit-Reset",
        "Retry-After",
        "X-Request-ID",
    ],
    max_age=86400,
)
app.add_middleware(StructuredLoggingMiddleware)
app.add_middleware(metrics.PrometheusMiddleware)

if settings.environment == "production" and settings.cors_origins == "*":
    logger.warning("CORS_ORIGINS is set to '*' in production, any website can call the vote API")

app.include_router(health.router)
app.include_router(votes.router)
app.include_router(admin.router)
app.include_router(metrics.router)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "clipvote.main:app",
        host="0.0.0.0",
        port=settings.port,
        reload=(settings.environment == "development"),
    )
