"""Prometheus metrics for the impact gateway.

Metrics goals:
- low-cardinality labels (never content hashes, addresses or URLs)
- pipeline outcomes, lookup outcomes, ledger claims, contract reverts
"""
from __future__ import annotations

import os
import time
from typing import Callable, Optional

from fastapi import Request
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest


def _env_bool(name: str, default: bool = True) -> bool:
    v = (os.getenv(name, "") or "").strip().lower()
    if not v:
        return default
    return v in ("1", "true", "yes", "on")


HTTP_REQUESTS_TOTAL = Counter(
    "impact_http_requests_total",
    "Total HTTP requests received",
    ["method", "route", "status"],
)
HTTP_REQUEST_LATENCY_SECONDS = Histogram(
    "impact_http_request_latency_seconds",
    "HTTP request latency in seconds",
    ["method", "route"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10),
)
PIPELINE_OUTCOMES_TOTAL = Counter(
    "impact_pipeline_outcomes_total",
    "Pipeline runs by outcome",
    ["status"],
)
PIPELINE_LATENCY_SECONDS = Histogram(
    "impact_pipeline_latency_seconds",
    "End-to-end pipeline latency in seconds",
    buckets=(0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, 30, 60),
)
LOOKUP_OUTCOMES_TOTAL = Counter(
    "impact_lookup_outcomes_total",
    "Context lookups by collaborator and status",
    ["lookup", "status"],
)
LEDGER_CLAIMS_TOTAL = Counter(
    "impact_ledger_claims_total",
    "Dedup ledger claim attempts",
    ["result"],
)
CONTRACT_REVERTS_TOTAL = Counter(
    "impact_contract_reverts_total",
    "Governance transactions reverted",
    ["reason"],
)


def record_outcome(status: str, elapsed_s: Optional[float] = None) -> None:
    PIPELINE_OUTCOMES_TOTAL.labels(status=str(status)).inc()
    if elapsed_s is not None:
        PIPELINE_LATENCY_SECONDS.observe(max(0.0, float(elapsed_s)))


def record_lookup(lookup: str, status: str) -> None:
    LOOKUP_OUTCOMES_TOTAL.labels(lookup=str(lookup), status=str(status)).inc()


def record_claim(result: str) -> None:
    LEDGER_CLAIMS_TOTAL.labels(result=str(result)).inc()


def record_revert(reason: str) -> None:
    CONTRACT_REVERTS_TOTAL.labels(reason=str(reason)).inc()


def instrument_fastapi(app, authorize: Optional[Callable] = None) -> None:
    """Attach /metrics endpoint and request middleware to a FastAPI app.

    authorize: callable(request) -> bool. If provided and returns False, /metrics returns 403.
    """
    if not _env_bool("IMPACT_METRICS_ENABLED", True):
        return

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

    @app.get("/metrics")
    async def metrics_endpoint(request: Request):
        if authorize is not None and not authorize(request):
            # avoid leaking existence details
            return Response(status_code=403, content="FORBIDDEN")
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
