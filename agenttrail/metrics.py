"""Prometheus metrics for AgentTrail.

Metrics goals:
- low-cardinality labels (never record ids, hashes or tx ids)
- anchor attempt outcomes, verification verdicts, HTTP request latency
"""
from __future__ import annotations

import os
import time
from typing import Callable, Optional

from fastapi import Request
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest


def _env_bool(name: str, default: bool = True) -> bool:
    v = (os.getenv(name, "") or "").strip().lower()
    if not v:
        return default
    return v in ("1", "true", "yes", "on")


HTTP_REQUESTS_TOTAL = Counter(
    "agenttrail_http_requests_total",
    "Total HTTP requests received",
    ["method", "route", "status"],
)
HTTP_REQUEST_LATENCY_SECONDS = Histogram(
    "agenttrail_http_request_latency_seconds",
    "HTTP request latency in seconds",
    ["method", "route"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10),
)
RECORDS_CREATED_TOTAL = Counter(
    "agenttrail_records_created_total",
    "Total execution records created",
)
ANCHOR_ATTEMPTS_TOTAL = Counter(
    "agenttrail_anchor_attempts_total",
    "Total anchor attempts by final outcome",
    ["outcome"],
)
ANCHOR_ATTEMPT_SECONDS = Histogram(
    "agenttrail_anchor_attempt_seconds",
    "Wall time of one anchor attempt (submit + confirmation)",
    buckets=(0.1, 0.5, 1, 2, 5, 10, 30, 60, 120, 300),
)
VERIFICATIONS_TOTAL = Counter(
    "agenttrail_verifications_total",
    "Total verifications by verdict",
    ["verdict"],
)
ANCHOR_QUEUE_DEPTH = Gauge(
    "agenttrail_anchor_queue_depth",
    "Anchor attempts waiting for a worker",
)


def record_created() -> None:
    RECORDS_CREATED_TOTAL.inc()


def record_anchor_attempt(outcome: str, elapsed_s: Optional[float] = None) -> None:
    ANCHOR_ATTEMPTS_TOTAL.labels(outcome=str(outcome)).inc()
    if elapsed_s is not None:
        ANCHOR_ATTEMPT_SECONDS.observe(float(elapsed_s))


def record_verification(verdict: str) -> None:
    VERIFICATIONS_TOTAL.labels(verdict=str(verdict)).inc()


def set_queue_depth(depth: int) -> None:
    ANCHOR_QUEUE_DEPTH.set(float(depth))


def instrument_fastapi(app, authorize: Optional[Callable] = None) -> None:
    """Attach /metrics endpoint and request middleware to a FastAPI app.

    authorize: callable(request) -> bool. If provided and returns False, /metrics returns 403.
    """
    if not _env_bool("AGENTTRAIL_METRICS_ENABLED", True):
        return

    @app.middleware("http")
    async def _metrics_middleware(request, call_next):
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
            return Response(status_code=403, content="FORBIDDEN")
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
