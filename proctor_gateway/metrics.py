"""Prometheus metrics for the proctor gateway.

Metrics goals:
- low-cardinality labels (never subject ids, tokens or digests)
- visibility into gateway outcomes, durable-write failures and dropped
  ephemeral broadcasts
"""
from __future__ import annotations

import time
from typing import Callable, Optional

from fastapi import Request
from fastapi.responses import PlainTextResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest

HTTP_REQUESTS_TOTAL = Counter(
    "pg_http_requests_total",
    "Total HTTP requests received",
    ["method", "route", "status"],
)
HTTP_REQUEST_LATENCY_SECONDS = Histogram(
    "pg_http_request_latency_seconds",
    "HTTP request latency in seconds",
    ["method", "route"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2, 5),
)
GATEWAY_CALLS_TOTAL = Counter(
    "pg_gateway_calls_total",
    "Gateway calls by final state",
    ["gateway", "action", "outcome"],
)
CAPABILITIES_ISSUED_TOTAL = Counter(
    "pg_capabilities_issued_total",
    "Capability tokens issued",
    ["kind"],
)
DURABLE_WRITE_FAILURES_TOTAL = Counter(
    "pg_durable_write_failures_total",
    "Durable writes that failed and were surfaced to the caller",
    ["operation"],
)
BROADCAST_FAILURES_TOTAL = Counter(
    "pg_broadcast_failures_total",
    "Ephemeral broadcasts that could not be sent (swallowed)",
)


def record_gateway_call(gateway: str, action: str, outcome: str) -> None:
    GATEWAY_CALLS_TOTAL.labels(gateway=str(gateway), action=str(action), outcome=str(outcome)).inc()


def record_capability_issued(kind: str) -> None:
    CAPABILITIES_ISSUED_TOTAL.labels(kind=str(kind)).inc()


def record_durable_failure(operation: str) -> None:
    DURABLE_WRITE_FAILURES_TOTAL.labels(operation=str(operation)).inc()


def record_broadcast_failure() -> None:
    BROADCAST_FAILURES_TOTAL.inc()


def instrument_fastapi(app, authorize: Optional[Callable] = None) -> None:
    """Attach /metrics endpoint and request middleware to a FastAPI app.

    authorize: callable(request) -> bool. If provided and returns False, /metrics returns 403.
    """
    @app.middleware("http")
    async def _metrics_middleware(request: Request, call_next):
        start = time.time()
        status = 500
        try:
            response = await call_next(request)
            status = response.status_code
            return response
        finally:
            route = request.scope.get("route")
            route_path = getattr(route, "path", None) or request.url.path
            HTTP_REQUESTS_TOTAL.labels(method=request.method, route=route_path, status=str(status)).inc()
            HTTP_REQUEST_LATENCY_SECONDS.labels(method=request.method, route=route_path).observe(time.time() - start)

    @app.get("/metrics", include_in_schema=False)
    async def metrics_endpoint(request: Request):
        if authorize is not None and not authorize(request):
            # avoid leaking existence details
            return PlainTextResponse("FORBIDDEN", status_code=403)
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
