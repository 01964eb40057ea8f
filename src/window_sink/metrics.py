"""
Prometheus metrics for the windowed sink.

Dropped-late counts and per-shard write failures are surfaced here rather
than through logs so that high drop rates cannot blow up log volume.
"""

from prometheus_client import Counter, Gauge, Histogram

RECORDS_INGESTED_TOTAL = Counter(
    "wsink_records_ingested_total",
    "Records accepted into a window buffer",
)

LATE_RECORDS_DROPPED_TOTAL = Counter(
    "wsink_late_records_dropped_total",
    "Records dropped because their window's grace deadline had passed",
)

WINDOWS_TOTAL = Counter(
    "wsink_windows_total",
    "Closed windows by emission outcome",
    ["outcome"],  # emitted|skipped_empty|flagged|write_failed
)

SHARD_WRITES_TOTAL = Counter(
    "wsink_shard_writes_total",
    "Shard commits by format and status",
    ["format", "status"],
)

SHARD_WRITE_LATENCY = Histogram(
    "wsink_shard_write_latency_seconds",
    "Shard commit latency including retries",
    ["format"],
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30],
)

WRITE_RETRIES_TOTAL = Counter(
    "wsink_write_retries_total",
    "Storage write attempts that were retried",
)

WINDOWS_TRACKED = Gauge(
    "wsink_windows_tracked",
    "Windows currently held by the tracker",
    ["state"],
)

WATERMARK_SECONDS = Gauge(
    "wsink_watermark_seconds",
    "Current event-time watermark as epoch seconds",
)


class MetricsRegistry:
    """Centralized access to the sink's metrics."""

    records_ingested_total = RECORDS_INGESTED_TOTAL
    late_records_dropped_total = LATE_RECORDS_DROPPED_TOTAL
    windows_total = WINDOWS_TOTAL
    shard_writes_total = SHARD_WRITES_TOTAL
    shard_write_latency = SHARD_WRITE_LATENCY
    write_retries_total = WRITE_RETRIES_TOTAL
    windows_tracked = WINDOWS_TRACKED
    watermark_seconds = WATERMARK_SECONDS


# Singleton instance
metrics_registry = MetricsRegistry()
