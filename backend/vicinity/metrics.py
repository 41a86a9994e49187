"""Prometheus metrics for the search path and the extraction pipeline."""

from __future__ import annotations

import re
import time
from collections.abc import Callable

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

# ==============================================================================
# HTTP METRICS
# ==============================================================================

http_requests_total = Counter(
    "vicinity_http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status"],
)

http_request_duration_seconds = Histogram(
    "vicinity_http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

# ==============================================================================
# SEARCH METRICS
# ==============================================================================

search_duration_seconds = Histogram(
    "vicinity_search_duration_seconds",
    "End-to-end search latency by stage",
    ["stage"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 3.0),
)

search_degraded_total = Counter(
    "vicinity_search_degraded_total",
    "Searches served on a fallback path",
    ["reason"],
)

retrieval_widenings_total = Counter(
    "vicinity_retrieval_widenings_total",
    "Bounding-box widenings and full-index fallbacks",
    ["stage"],
)

# ==============================================================================
# CACHE METRICS
# ==============================================================================

cache_hits_total = Counter(
    "vicinity_cache_hits_total",
    "Cache hits",
    ["namespace", "tier"],
)

cache_misses_total = Counter(
    "vicinity_cache_misses_total",
    "Cache misses (both tiers)",
    ["namespace"],
)

cache_errors_total = Counter(
    "vicinity_cache_errors_total",
    "Shared cache tier errors treated as misses",
    ["operation"],
)

# ==============================================================================
# UPSTREAM METRICS
# ==============================================================================

upstream_calls_total = Counter(
    "vicinity_upstream_calls_total",
    "Embedding/completion provider calls",
    ["upstream", "outcome"],
)

circuit_breaker_state = Gauge(
    "vicinity_circuit_breaker_state",
    "Circuit breaker state (0=closed, 1=open, 2=half_open)",
    ["circuit_name"],
)

# ==============================================================================
# PIPELINE METRICS
# ==============================================================================

extraction_jobs_total = Counter(
    "vicinity_extraction_jobs_total",
    "Review extraction jobs by outcome",
    ["outcome"],
)

extraction_attempts_total = Counter(
    "vicinity_extraction_attempts_total",
    "Individual extraction attempts by outcome",
    ["outcome"],
)

pipeline_last_completion_timestamp = Gauge(
    "vicinity_pipeline_last_completion_timestamp",
    "Unix time of the last completed extraction job",
)

dead_letter_size = Gauge(
    "vicinity_dead_letter_size",
    "Jobs currently held in the dead-letter area",
)


def normalize_endpoint(path: str) -> str:
    path = re.sub(r"/\d+", "/{id}", path)
    return re.sub(r"/[a-zA-Z0-9_-]{20,}", "/{id}", path)


class PrometheusMiddleware(BaseHTTPMiddleware):
    """Track request counts and latency per normalized endpoint."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.url.path == "/metrics":
            return await call_next(request)

        method = request.method
        endpoint = normalize_endpoint(request.url.path)
        start_time = time.perf_counter()
        status = "500"
        try:
            response = await call_next(request)
            status = str(response.status_code)
            return response
        finally:
            http_request_duration_seconds.labels(method=method, endpoint=endpoint).observe(
                time.perf_counter() - start_time
            )
            http_requests_total.labels(method=method, endpoint=endpoint, status=status).inc()


def get_metrics() -> Response:
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


__all__ = [
    "PrometheusMiddleware",
    "get_metrics",
    "cache_hits_total",
    "cache_misses_total",
    "search_duration_seconds",
    "extraction_jobs_total",
    "normalize_endpoint",
]
