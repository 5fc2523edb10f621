"""Prometheus metrics for Wallet Guard.

Metrics goals:
- low-cardinality labels (never user ids)
- observability for encryption, rate limiting, verification, events and
  emergency mode
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


# ---------------------------
# Core metric objects
# ---------------------------
HTTP_REQUESTS_TOTAL = Counter(
    "wg_http_requests_total",
    "Total admin HTTP requests received",
    ["method", "route", "status"],
)
HTTP_REQUEST_LATENCY_SECONDS = Histogram(
    "wg_http_request_latency_seconds",
    "Admin HTTP request latency in seconds",
    ["method", "route"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2, 5),
)
CRYPTO_OPERATIONS_TOTAL = Counter(
    "wg_crypto_operations_total",
    "Encrypt/decrypt operations",
    ["operation", "outcome"],
)
RATE_LIMIT_DECISIONS_TOTAL = Counter(
    "wg_rate_limit_decisions_total",
    "Rate limiter decisions",
    ["operation", "outcome", "tier"],
)
RATE_LIMIT_FAIL_OPEN_TOTAL = Counter(
    "wg_rate_limit_fail_open_total",
    "Rate limiter decisions taken while the store was unavailable",
)
VERIFICATIONS_TOTAL = Counter(
    "wg_verifications_total",
    "Sensitive operation verifications",
    ["operation", "outcome"],
)
SECURITY_EVENTS_TOTAL = Counter(
    "wg_security_events_total",
    "Security events emitted",
    ["severity"],
)
EMERGENCY_MODE_ACTIVE = Gauge(
    "wg_emergency_mode_active",
    "1 if emergency mode was active at the last check",
)


def record_crypto(operation: str, outcome: str) -> None:
    CRYPTO_OPERATIONS_TOTAL.labels(operation=str(operation), outcome=str(outcome)).inc()


def record_rate_limit(operation: str, outcome: str, tier: str) -> None:
    RATE_LIMIT_DECISIONS_TOTAL.labels(operation=str(operation), outcome=str(outcome), tier=str(tier)).inc()


def record_fail_open() -> None:
    RATE_LIMIT_FAIL_OPEN_TOTAL.inc()


def record_verification(operation: str, outcome: str) -> None:
    VERIFICATIONS_TOTAL.labels(operation=str(operation), outcome=str(outcome)).inc()


def record_security_event(severity: str) -> None:
    SECURITY_EVENTS_TOTAL.labels(severity=str(severity)).inc()


def set_emergency_mode(active: bool) -> None:
    EMERGENCY_MODE_ACTIVE.set(1.0 if active else 0.0)


def instrument_fastapi(app, authorize: Optional[Callable] = None) -> None:
    """Attach /metrics endpoint and request middleware to a FastAPI app.

    authorize: callable(request) -> bool. If provided and returns False, /metrics returns 403.
    """
    if not _env_bool("WG_METRICS_ENABLED", True):
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

    @app.get("/metrics")
    async def metrics_endpoint(request: Request):
        if authorize is not None and not authorize(request):
            # avoid leaking existence details
            return Response(status_code=403, content="FORBIDDEN")
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
