"""Prometheus collectors, the /metrics endpoint, and request instrumentation.

Vote path:
  clipvote_votes_total{action}                  committed votes
  clipvote_votes_rejected_total{reason}         disabled / suspended / rate_limited
  clipvote_flagged_voters_total                 voters suspended by a recompute
  clipvote_heuristic_failures_total             recomputes that raised
  clipvote_undo_votes_removed_total             votes reversed by admin undo

HTTP and infrastructure:
  clipvote_api_request_duration_seconds{endpoint,method,status}
  clipvote_requests_in_flight
  clipvote_cache_hits_total / clipvote_cache_misses_total
  clipvote_db_connection_pool_active / _idle    sampled on scrape
"""

import time

from fastapi import APIRouter, Request
from fastapi.responses import PlainTextResponse
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

router = APIRouter(tags=["metrics"])

votes_total = Counter("clipvote_votes_total", "Committed vote requests, by action.", ["action"])
votes_rejected = Counter(
    "clipvote_votes_rejected_total", "Vote requests rejected by a gate, by reason.", ["reason"]
)
flagged_voters = Counter("clipvote_flagged_voters_total", "Voters suspended by the abuse heuristics.")
heuristic_failures = Counter(
    "clipvote_heuristic_failures_total", "Heuristic recomputes that failed after a committed vote."
)
undo_votes_removed = Counter("clipvote_undo_votes_removed_total", "Votes reversed by admin undo.")

request_duration = Histogram(
    "clipvote_api_request_duration_seconds",
    "HTTP request duration in seconds, by route template and method.",
    ["endpoint", "method", "status"],
)
requests_in_flight = Gauge("clipvote_requests_in_flight", "HTTP requests currently being served.")
cache_hits = Counter("clipvote_cache_hits_total", "Vote-count cache hits.")
cache_misses = Counter("clipvote_cache_misses_total", "Vote-count cache misses.")
db_pool_active = Gauge("clipvote_db_connection_pool_active", "Busy database connections.")
db_pool_idle = Gauge("clipvote_db_connection_pool_idle", "Idle database connections.")


@router.get("/metrics")
async def metrics_endpoint(request: Request):
    pool = getattr(getattr(request.app.state, "store", None), "pool", None)
    if pool is not None:
        idle = pool.get_idle_size()
        db_pool_active.set(pool.get_size() - idle)
        db_pool_idle.set(idle)

    return PlainTextResponse(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


def _endpoint_label(request: Request) -> str:
    # Route templates keep voter handles and channel logins out of label values.
    route = request.scope.get("route")
    return getattr(route, "path", None) or "unmatched"


class PrometheusMiddleware(BaseHTTPMiddleware):
    """Observes request latency per route template and tracks in-flight requests."""

    async def dispatch(self, request: Request, call_next) -> Response:
        if request.url.path == "/metrics":
            return await call_next(request)

        start = time.perf_counter()
        requests_in_flight.inc()
        try:
            response = await call_next(request)
        finally:
            requests_in_flight.dec()

        request_duration.labels(
            endpoint=_endpoint_label(request),
            method=request.method,
            status=str(response.status_code),
        ).observe(time.perf_counter() - start)
        return response
