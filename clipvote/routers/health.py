"""Liveness and readiness probes."""

import time
from collections.abc import Awaitable, Callable

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

router = APIRouter(tags=["health"])

_started = time.monotonic()


async def _probe(check: Callable[[], Awaitable[object]]) -> dict:
    start = time.perf_counter()
    try:
        await check()
    except Exception as e:
        result = {"status": "down", "error": str(e)}
    else:
        result = {"status": "up"}
    result["latency_ms"] = int((time.perf_counter() - start) * 1000)
    return result


@router.get("/health/live")
async def live():
    return {"status": "ok"}


@router.get("/health/ready")
async def ready(request: Request):
    """The vote store must answer. Redis only counts when it is configured."""
    store = getattr(request.app.state, "store", None)
    cache = getattr(request.app.state, "cache_service", None)
    rdb = cache.client if cache is not None else None

    checks = {
        "store": await _probe(store.ping) if store is not None else {"status": "down", "error": "no store"},
        "redis": await _probe(rdb.ping) if rdb is not None else {"status": "disabled"},
    }
    healthy = all(check["status"] in ("up", "disabled") for check in checks.values())

    body = {
        "status": "healthy" if healthy else "degraded",
        "checks": checks,
        "uptime_seconds": int(time.monotonic() - _started),
        "version": request.app.version,
    }
    return JSONResponse(content=body, status_code=200 if healthy else 503)
