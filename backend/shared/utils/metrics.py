"""
Lightweight metrics collection for oddsfeed.
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
    "of_provider_requests_total",
    "Total provider HTTP requests",
    ["provider", "status"],
)
RATE_LIMIT_DENIALS = Counter(
    "of_rate_limit_denials_total",
    "Requests refused by the local limiter or throttled by the provider",
    ["provider", "source"],
)
EVENTS_RECONCILED = Counter(
    "of_events_reconciled_total",
    "Provider events reconciled into canonical events",
    ["provider", "action"],
)
RECORDS_SKIPPED = Counter(
    "of_records_skipped_total",
    "Provider records or entities skipped after an isolated failure",
    ["provider", "reason"],
)
ODDS_CHANGES = Counter(
    "of_odds_changes_total",
    "Selections whose odds moved beyond the change threshold",
    ["provider"],
)
EVENTS_SETTLED = Counter(
    "of_events_settled_total",
    "Events passed through the settlement engine",
    ["source"],
)
MARKETS_SETTLED = Counter(
    "of_markets_settled_total",
    "Markets marked SETTLED",
    ["market_type"],
)
MARKETS_UNRESOLVED = Counter(
    "of_markets_unresolved_total",
    "Markets left OPEN because their type cannot be settled",
    ["market_type"],
)
SWEEP_TRANSITIONS = Counter(
    "of_sweep_transitions_total",
    "Events moved by a recovery sweep",
    ["sweep"],
)

# ── Histograms ──────────────────────────────────────────────────────────
PROVIDER_LATENCY = Histogram(
    "of_provider_latency_seconds",
    "Provider request latency in seconds",
    ["provider"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)
SYNC_DURATION = Histogram(
    "of_sync_duration_seconds",
    "Duration of one live or full sync pass",
    ["provider", "kind"],
    buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 300.0),
)

# ── Gauges ──────────────────────────────────────────────────────────────
LIVE_EVENTS = Gauge(
    "of_live_events",
    "Live events currently held in a provider's cache",
    ["provider", "sport"],
)
RATE_LIMIT_AVAILABLE = Gauge(
    "of_rate_limit_available_slots",
    "Requests still admissible by a provider's limiter",
    ["provider"],
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
