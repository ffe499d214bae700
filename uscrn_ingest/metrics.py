"""Prometheus metrics for ingestion cycles."""
import logging

from prometheus_client import Counter, Histogram, start_http_server

logger = logging.getLogger(__name__)

FILES_PROCESSED = Counter(
    "uscrn_ingest_files_total",
    "Files handled per cycle by outcome",
    ["outcome"]
)
OBSERVATIONS_WRITTEN = Counter(
    "uscrn_ingest_observations_total",
    "Observation rows written",
    ["operation"]
)
PARSE_FAILURES = Counter(
    "uscrn_ingest_parse_failures_total",
    "Lines that could not be parsed"
)
TICKS_SKIPPED = Counter(
    "uscrn_ingest_ticks_skipped_total",
    "Scheduler ticks skipped because a cycle was still running"
)
CYCLE_DURATION = Histogram(
    "uscrn_ingest_cycle_duration_seconds",
    "Ingestion cycle duration in seconds",
    buckets=(1, 5, 15, 30, 60, 120, 300, 600, 1800, 3600)
)


def record_cycle(summary, duration_seconds: float) -> None:
    """Publish a finished cycle's counters."""
    FILES_PROCESSED.labels(outcome="succeeded").inc(summary.succeeded)
    FILES_PROCESSED.labels(outcome="failed").inc(summary.failed)
    FILES_PROCESSED.labels(outcome="skipped").inc(summary.skipped)
    FILES_PROCESSED.labels(outcome="rejected").inc(summary.rejected)
    OBSERVATIONS_WRITTEN.labels(operation="inserted").inc(summary.observations_inserted)
    OBSERVATIONS_WRITTEN.labels(operation="updated").inc(summary.observations_updated)
    PARSE_FAILURES.inc(summary.parse_failures)
    CYCLE_DURATION.observe(duration_seconds)


def start_metrics_server(port: int) -> None:
    """Expose /metrics on the given port in a background thread."""
    start_http_server(port)
    logger.info(f"Metrics server listening on port {port}")
