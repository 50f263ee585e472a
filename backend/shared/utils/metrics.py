"""
Prometheus metrics for SweatProof.
Module-level collectors; services call start_metrics_server() once at startup.
"""
from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram, start_http_server

from shared.config import get_settings
from shared.utils.logging import get_logger

logger = get_logger(__name__)

# ── Verification ────────────────────────────────────────────────────────
VERIFIER_CALLS = Counter(
    "sp_verifier_calls_total",
    "Chain verifier calls by outcome",
    ["source", "status"],
)
VERIFIER_LATENCY = Histogram(
    "sp_verifier_latency_seconds",
    "Chain verifier call latency in seconds",
    ["source"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)
AGGREGATION_CONFIDENCE = Histogram(
    "sp_aggregation_confidence",
    "Confidence of computed aggregation results",
    ["exercise_type"],
    buckets=(0.1, 0.3, 0.5, 0.8, 0.9, 1.0),
)
CACHE_LOOKUPS = Counter(
    "sp_resolution_cache_lookups_total",
    "Resolution cache lookups",
    ["result"],
)
DISPUTES = Counter(
    "sp_challenge_disputes_total",
    "Disputes submitted against challenge windows",
    ["material"],
)
WINDOWS_FINALIZED = Counter(
    "sp_challenge_windows_finalized_total",
    "Challenge windows finalized",
)

# ── Notification queue ──────────────────────────────────────────────────
QUEUE_ENQUEUED = Counter(
    "sp_queue_enqueued_total",
    "Notification items enqueued",
    ["deduplicated"],
)
QUEUE_DELIVERIES = Counter(
    "sp_queue_deliveries_total",
    "Delivery attempts by outcome",
    ["status"],
)
QUEUE_DEPTH = Gauge(
    "sp_queue_items",
    "Notification items by state",
    ["state"],
)


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
