"""structlog setup and per-request access logging.

Each request gets an ``X-Request-ID`` (the caller's, or a fresh UUID) that
is bound into structlog contextvars, so ledger, CRM client and status
bridge log lines emitted while handling the request carry it. Inbound
notification routes also bind ``source`` (axcelerate / hubspot) so a
single delivery can be traced end to end.

Health and metrics probes are logged at debug to keep access logs to
real traffic. Query strings are never logged: the OAuth callback carries
the authorization code there.
"""

from __future__ import annotations

import logging
import time
import uuid

import structlog
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from src.enrollsync.config import get_settings

logger = structlog.get_logger(__name__)

_QUIET_PATHS = frozenset({"/health", "/health/ready", "/metrics"})

_SOURCES = {
    "/api/v1/hubspot/webhook": "axcelerate",
    "/api/v1/hubspot/status/external": "axcelerate",
    "/api/v1/hubspot/status/crm": "hubspot",
}


def configure_structlog() -> None:
    """Route structlog through stdlib logging at LOG_LEVEL.

    JSON lines in production, colored console output elsewhere.
    """
    settings = get_settings()
    level = settings.LOG_LEVEL.upper()

    logging.basicConfig(format="%(message)s", level=level)
    # httpx logs every outbound request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)

    renderer = (
        structlog.processors.JSONRenderer()
        if settings.is_production
        else structlog.dev.ConsoleRenderer()
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _route_path(request: Request) -> str:
    route = request.scope.get("route")
    return getattr(route, "path", request.url.path)


class LoggingMiddleware(BaseHTTPMiddleware):
    """Access log with request id propagation."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        path = request.url.path
        started = time.monotonic()

        structlog.contextvars.clear_contextvars()
        context = {"request_id": request_id}
        if path in _SOURCES:
            context["source"] = _SOURCES[path]
        structlog.contextvars.bind_contextvars(**context)

        try:
            response = await call_next(request)
        except Exception:
            logger.exception(
                "http.unhandled_error",
                method=request.method,
                route=_route_path(request),
                duration_ms=round((time.monotonic() - started) * 1000, 2),
            )
            raise

        response.headers["X-Request-ID"] = request_id
        fields = {
            "method": request.method,
            "route": _route_path(request),
            "status_code": response.status_code,
            "duration_ms": round((time.monotonic() - started) * 1000, 2),
        }

        if path in _QUIET_PATHS and response.status_code < 400:
            logger.debug("http.request", **fields)
        elif response.status_code >= 500:
            logger.error("http.request", **fields)
        elif response.status_code >= 400:
            logger.warning("http.request", **fields)
        else:
            logger.info("http.request", **fields)
        return response
