"""structlog setup and per-request access logging.

structlog loggers and the stdlib ``logging`` loggers used by services and
stores render through the same JSON pipeline. Every request gets a short
request id bound into the structlog context, so service log lines emitted
while the request is served carry it too.

Privacy: client IPs and voter handles are hashed before logging; voter and
channel segments of the path are replaced with placeholders.
"""

import hashlib
import logging
import sys
import time
import uuid

import structlog
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

_SHARED_PROCESSORS = [
    structlog.contextvars.merge_contextvars,
    structlog.processors.add_log_level,
    structlog.processors.TimeStamper(fmt="iso", utc=True),
]


def configure_logging(log_level: str = "info", service: str = "clipvote") -> None:
    """Configure structlog and route stdlib logging through the same renderer."""
    level = getattr(logging, log_level.upper(), logging.INFO)

    structlog.configure(
        processors=[
            *_SHARED_PROCESSORS,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=[*_SHARED_PROCESSORS, structlog.stdlib.add_logger_name],
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                structlog.processors.format_exc_info,
                structlog.processors.JSONRenderer(),
            ],
        )
    )
    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(level)

    structlog.contextvars.bind_contextvars(service=service)


def _short_hash(value: str) -> str:
    """Irreversible 12-hex-char digest, enough to correlate log lines."""
    return hashlib.sha256(value.encode()).hexdigest()[:12]


# Path segment -> placeholder for the segment that follows it.
_PLACEHOLDERS = {"voters": ":voter", "channels": ":channel"}
_LITERAL_SEGMENTS = {"flagged", ""}


def sanitize_path(path: str) -> str:
    parts = path.split("/")
    for i in range(1, len(parts)):
        placeholder = _PLACEHOLDERS.get(parts[i - 1])
        if placeholder and parts[i] not in _LITERAL_SEGMENTS:
            parts[i] = placeholder
    return "/".join(parts)


class StructuredLoggingMiddleware(BaseHTTPMiddleware):
    """Writes one structured line per request and tags it with a request id.

    - IPs and ``X-Voter`` handles are logged only as short SHA-256 digests.
    - Voter and channel path segments become placeholders
      (``/api/admin/voters/:voter/undo``).
    - Request bodies and credential headers are never logged.
    """

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:16]
        logger = structlog.get_logger()
        start = time.perf_counter()

        with structlog.contextvars.bound_contextvars(request_id=request_id):
            response = await call_next(request)

            fields = {
                "method": request.method,
                "path": sanitize_path(request.url.path),
                "status": response.status_code,
                "duration_ms": round((time.perf_counter() - start) * 1000),
                "ip_hash": _short_hash(request.client.host if request.client else "unknown"),
            }
            voter = request.headers.get("X-Voter")
            if voter:
                fields["voter_hash"] = _short_hash(voter.strip().lower())

            if response.status_code >= 500:
                logger.error("request", **fields)
            elif response.status_code >= 400:
                logger.warning("request", **fields)
            else:
                logger.info("request", **fields)

        response.headers["X-Request-ID"] = request_id
        return response
