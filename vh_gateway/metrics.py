"""Prometheus metrics for the VanderHub gateway.

Metrics goals:
- low-cardinality labels (never device ids, credentials, IPs or file names)
- internal observability for admissions, transforms, firewall bans, rate limits
"""
from __future__ import annotations

import os
import time
from typing import Callable, Optional

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest


def _env_bool(name: str, default: bool = True) -> bool:
    v = (os.getenv(name, "") or "").strip().lower()
    if not v:
        return default
    return v in ("1", "true", "yes", "on")


HTTP_REQUESTS_TOTAL = Counter(
    "vh_http_requests_total",
    "Total HTTP requests received",
    ["method", "route", "status"],
)
HTTP_REQUEST_LATENCY_SECONDS = Histogram(
    "vh_http_request_latency_seconds",
    "HTTP request latency in seconds",
    ["method", "route"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10),
)
ADMISSIONS_TOTAL = Counter(
    "vh_admissions_total",
    "Admission filter outcomes",
    ["outcome", "reason"],
)
TRANSFORMS_TOTAL = Counter(
    "vh_transforms_total",
    "Protected script artifacts produced",
    ["tier"],
)
RATE_LIMIT_REJECT_TOTAL = Counter(
    "vh_rate_limit_reject_total",
    "Total rate-limit rejections",
    ["endpoint"],
)
FIREWALL_BANS_TOTAL = Counter(
    "vh_firewall_bans_total",
    "IPs banned by the firewall",
)
LOCKDOWN_ACTIVE = Gauge(
    "vh_lockdown_active",
    "1 if the store is in lockdown / fail-closed mode",
)


def record_admission(outcome: str, reason: str) -> None:
    ADMISSIONS_TOTAL.labels(outcome=str(outcome), reason=str(reason or "none")).inc()


def record_transform(tier: str) -> None:
    TRANSFORMS_TOTAL.labels(tier=str(tier)).inc()


def record_rate_limited(endpoint: str) -> None:
    RATE_LIMIT_REJECT_TOTAL.labels(endpoint=str(endpoint)).inc()


def record_firewall_ban() -> None:
    FIREWALL_BANS_TOTAL.inc()


def set_lockdown_active(active: bool) -> None:
    LOCKDOWN_ACTIVE.set(1.0 if active else 0.0)


def instrument_fastapi(app, authorize: Optional[Callable] = None) -> None:
    """Attach /metrics endpoint and request middleware to a FastAPI app.

    authorize: callable(request) -> bool. If provided and returns False, /metrics returns 403.
    """
    if not _env_bool("VH_METRICS_ENABLED", True):
        return

    from fastapi import Request
    from fastapi.responses import Response

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
            # avoid leaking existence details
            return Response(status_code=403, content="FORBIDDEN")
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
