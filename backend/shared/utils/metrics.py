"""
Metrics collection for the Scorefeed worker.
Wraps prometheus_client with async-safe patterns.
"""
from __future__ import annotations

import time
from contextlib import asynccontextmanager
from typing import AsyncIterator

from prometheus_client import Counter, Gauge, Histogram, start_http_server

from shared.config import get_settings
from shared.utils.logging import get_logger

logger = get_logger(__name__)

# ── Counters ────────────────────────────────────────────────────────────
PROVIDER_REQUESTS = Counter(
    "sf_provider_requests_total",
    "Total upstream provider HTTP requests",
    ["provider", "endpoint", "status"],
)
RETRY_ATTEMPTS = Counter(
    "sf_retry_attempts_total",
    "Retries scheduled by the retry executor",
    ["outcome"],
)
CACHE_REQUESTS = Counter(
    "sf_cache_requests_total",
    "Read-through cache lookups by result",
    ["result"],
)
CACHE_BACKEND_ERRORS = Counter(
    "sf_cache_backend_errors_total",
    "Cache backend failures absorbed by the read-through cache",
    ["operation"],
)
INGEST_CYCLES = Counter(
    "sf_ingest_cycles_total",
    "Completed ingestion cycles by outcome",
    ["source", "outcome"],
)
CHANGES_DETECTED = Counter(
    "sf_changes_detected_total",
    "Records whose observed fields changed between polls",
    ["source"],
)
DETECTION_FAILURES = Counter(
    "sf_change_detection_failures_total",
    "Records skipped because change detection failed",
    ["source"],
)
POLLER_SKIPPED = Counter(
    "sf_poller_skipped_total",
    "Poll triggers dropped because the poller was already running",
    ["poller"],
)

# ── Histograms ──────────────────────────────────────────────────────────
PROVIDER_LATENCY = Histogram(
    "sf_provider_latency_seconds",
    "Provider request latency in seconds",
    ["provider"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)
INGEST_CYCLE_SECONDS = Histogram(
    "sf_ingest_cycle_seconds",
    "Wall time of one ingestion cycle, retries included",
    ["source"],
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 15.0, 30.0),
)

# ── Gauges ──────────────────────────────────────────────────────────────
POLLERS_RUNNING = Gauge(
    "sf_pollers_running",
    "Recurring pollers started and not yet stopped",
)


@asynccontextmanager
async def atrack_latency(histogram: Histogram, **labels: str) -> AsyncIterator[None]:
    """Async context manager to track operation latency."""
    start = time.perf_counter()
    try:
        yield
    finally:
        histogram.labels(**labels).observe(time.perf_counter() - start)


def start_metrics_server(port: int | None = None) -> None:
    """Start the Prometheus metrics HTTP server."""
    settings = get_settings()
    if not settings.metrics_enabled:
        return
    metrics_port = port or settings.metrics_port
    try:
        start_http_server(metrics_port)
        logger.info("metrics_server_started", port=metrics_port)
    except OSError as exc:
        logger.warning("metrics_server_failed", error=str(exc), port=metrics_port)
