"""Prometheus metrics and Sentry setup for the sync service.

All series live under the ``enrollsync_`` namespace:

- http_requests_total / http_request_duration_seconds: per route template
- enrollment_sync_total{outcome}: created, duplicate, failed, rejected, in_progress
- crm_api_requests_total{operation, status}: HubSpot calls by HTTP status
- status_bridge_total{direction, result}: bridged status changes
- webhooks_in_flight: inbound notifications currently being handled

Sentry drops client-side domain errors (4xx SyncErrors) and, in production,
request bodies and cookies, which carry student details.
"""

from __future__ import annotations

import time

import sentry_sdk
from prometheus_client import REGISTRY, Counter, Gauge, Histogram, generate_latest
from prometheus_client.exposition import CONTENT_TYPE_LATEST
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.starlette import StarletteIntegration
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

_NAMESPACE = "enrollsync"

# ── HTTP Metrics ─────────────────────────────────────────────────────────────

http_requests_total = Counter(
    "http_requests_total",
    "HTTP requests by route template and status",
    ["method", "endpoint", "status_code"],
    namespace=_NAMESPACE,
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency; webhook requests include the HubSpot round trips",
    ["method", "endpoint"],
    namespace=_NAMESPACE,
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0),
)

webhooks_in_flight = Gauge(
    "webhooks_in_flight",
    "Inbound webhook and status notifications being processed",
    namespace=_NAMESPACE,
)

# ── Sync Metrics ─────────────────────────────────────────────────────────────

enrollment_sync_total = Counter(
    "enrollment_sync_total",
    "Enrollment webhooks processed, by outcome",
    ["outcome"],
    namespace=_NAMESPACE,
)

crm_api_requests_total = Counter(
    "crm_api_requests_total",
    "HubSpot API calls, by operation and HTTP status",
    ["operation", "status"],
    namespace=_NAMESPACE,
)

status_bridge_total = Counter(
    "status_bridge_total",
    "Status changes bridged between systems",
    ["direction", "result"],
    namespace=_NAMESPACE,
)


# ── Metrics Middleware ───────────────────────────────────────────────────────


_NOTIFICATION_SUFFIXES = ("/webhook", "/status/crm", "/status/external")


def _is_notification(path: str) -> bool:
    return path.endswith(_NOTIFICATION_SUFFIXES)


class MetricsMiddleware(BaseHTTPMiddleware):
    """Counts and times requests, labelled by route template.

    Enrollment ids in paths would explode label cardinality, so unmatched
    paths are labelled ``unmatched`` rather than by raw URL.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        path = request.url.path
        if path == "/metrics":
            return await call_next(request)

        notification = request.method == "POST" and _is_notification(path)
        if notification:
            webhooks_in_flight.inc()
        started = time.perf_counter()
        try:
            response = await call_next(request)
        finally:
            if notification:
                webhooks_in_flight.dec()

        route = request.scope.get("route")
        endpoint = getattr(route, "path", None) or "unmatched"
        http_requests_total.labels(
            method=request.method,
            endpoint=endpoint,
            status_code=str(response.status_code),
        ).inc()
        http_request_duration_seconds.labels(method=request.method, endpoint=endpoint).observe(
            time.perf_counter() - started
        )
        return response


# ── Sentry ───────────────────────────────────────────────────────────────────


def _drop_client_errors(event: dict, hint: dict) -> dict | None:
    exc_info = hint.get("exc_info")
    if exc_info:
        status_code = getattr(exc_info[1], "status_code", None)
        if isinstance(status_code, int) and 400 <= status_code < 500:
            return None
    return event


def _scrub_request_data(event: dict, hint: dict) -> dict | None:
    event = _drop_client_errors(event, hint)
    if event is None:
        return None
    request = event.get("request")
    if isinstance(request, dict):
        request.pop("data", None)
        request.pop("cookies", None)
        request.pop("query_string", None)
    return event


def init_sentry(dsn: str, environment: str) -> None:
    """Initialize the Sentry SDK with the FastAPI integrations.

    Args:
        dsn: Sentry DSN string.
        environment: Deployment environment (development, staging, production).
    """
    production = environment == "production"
    sentry_sdk.init(
        dsn=dsn,
        environment=environment,
        traces_sample_rate=0.1 if production else 1.0,
        send_default_pii=False,
        integrations=[StarletteIntegration(), FastApiIntegration()],
        before_send=_scrub_request_data if production else _drop_client_errors,
    )
    sentry_sdk.set_tag("service", "enrollment-crm-sync")


# ── Metrics Endpoint ─────────────────────────────────────────────────────────


def get_metrics_response() -> Response:
    """Prometheus exposition of the default registry."""
    return Response(content=generate_latest(REGISTRY), media_type=CONTENT_TYPE_LATEST)
