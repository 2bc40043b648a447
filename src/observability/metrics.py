"""
Prometheus metrics collection for the activity warehouse sync

This module provides metrics instrumentation for monitoring publication,
warehouse delivery, retries and the dead letter store.
"""
import os
from typing import Optional

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

# Global registry for metrics
REGISTRY = CollectorRegistry()


# =======================
# PUBLICATION METRICS
# =======================

events_published_total = Counter(
    name="sync_events_published_total",
    documentation="Total number of canonical events enqueued on the transport",
    labelnames=["transport"],
    registry=REGISTRY,
)

publish_failures_total = Counter(
    name="sync_publish_failures_total",
    documentation="Enqueue attempts that failed",
    labelnames=["transport", "final"],  # final: "true" once retries are exhausted
    registry=REGISTRY,
)

# =======================
# DELIVERY METRICS
# =======================

deliveries_total = Counter(
    name="sync_deliveries_total",
    documentation="Events processed by the delivery pipeline",
    labelnames=["outcome"],  # outcome: delivered, duplicate, dead_lettered
    registry=REGISTRY,
)

delivery_attempts_total = Counter(
    name="sync_delivery_attempts_total",
    documentation="Warehouse write attempts made by the retry controller",
    labelnames=["result"],  # result: success, retryable, terminal
    registry=REGISTRY,
)

retry_delay_seconds = Histogram(
    name="sync_retry_delay_seconds",
    documentation="Backoff delay scheduled before a retry",
    buckets=[0.1, 0.5, 1.0, 2.0, 4.0, 8.0, 16.0, 32.0, 64.0, 128.0, 300.0],
    registry=REGISTRY,
)

ledger_duplicates_total = Counter(
    name="sync_ledger_duplicates_total",
    documentation="Ledger writes for event IDs that were already done",
    registry=REGISTRY,
)

payload_fields_dropped_total = Counter(
    name="sync_payload_fields_dropped_total",
    documentation="Payload fields removed by the pseudonymization allowlist",
    registry=REGISTRY,
)

# =======================
# WAREHOUSE METRICS
# =======================

warehouse_writes_total = Counter(
    name="sync_warehouse_writes_total",
    documentation="Total number of records written to the warehouse",
    labelnames=["table", "mode"],  # mode: bulk, single
    registry=REGISTRY,
)

warehouse_write_duration_seconds = Histogram(
    name="sync_warehouse_write_duration_seconds",
    documentation="Time spent writing to the warehouse in seconds",
    labelnames=["table"],
    buckets=[0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 10.0, 30.0],
    registry=REGISTRY,
)

upsert_conflicts_total = Counter(
    name="sync_upsert_conflicts_total",
    documentation="Writes that hit an existing row (duplicate delivery)",
    labelnames=["table"],
    registry=REGISTRY,
)

# =======================
# DEAD LETTER METRICS
# =======================

dead_letter_appends_total = Counter(
    name="sync_dead_letter_appends_total",
    documentation="Events handed to the dead letter store",
    labelnames=["kind"],  # kind: retryable, terminal
    registry=REGISTRY,
)

dead_letter_transitions_total = Counter(
    name="sync_dead_letter_transitions_total",
    documentation="Dead letter status transitions",
    labelnames=["status"],  # status: resolved, abandoned
    registry=REGISTRY,
)

dead_letter_pending = Gauge(
    name="sync_dead_letter_pending",
    documentation="Dead letter entries currently pending",
    registry=REGISTRY,
)

reprocess_sweeps_total = Counter(
    name="sync_reprocess_sweeps_total",
    documentation="Dead letter reprocessing sweeps",
    labelnames=["result"],  # result: completed, budget_exhausted, lease_lost, skipped
    registry=REGISTRY,
)

# =======================
# ERROR METRICS
# =======================

errors_total = Counter(
    name="sync_errors_total",
    documentation="Total number of errors",
    labelnames=["error_type", "component"],
    registry=REGISTRY,
)


# =======================
# HELPER FUNCTIONS
# =======================

def generate_metrics() -> bytes:
    """
    Generate Prometheus metrics in text format

    Returns:
        Metrics in Prometheus text format
    """
    return generate_latest(REGISTRY)


def get_content_type() -> str:
    return CONTENT_TYPE_LATEST


def start_metrics_server(port: Optional[int] = None) -> None:
    """
    Start HTTP server for Prometheus metrics

    Args:
        port: Port to listen on (defaults to env var METRICS_PORT or 8000)
    """
    # Lazy import: only bind a port when the endpoint is actually wanted
    from prometheus_client import start_http_server

    metrics_port = port or int(os.getenv("METRICS_PORT", "8000"))
    start_http_server(metrics_port, registry=REGISTRY)


class track_duration:
    """
    Context manager for tracking operation duration

    Usage:
        with track_duration(warehouse_write_duration_seconds, table="activity_records"):
            # do work
            pass
    """

    def __init__(self, histogram: Histogram, **labels):
        self.histogram = histogram
        self.labels = labels
        self.timer = None

    def __enter__(self):
        child = self.histogram.labels(**self.labels) if self.labels else self.histogram
        self.timer = child.time()
        self.timer.__enter__()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.timer.__exit__(exc_type, exc_val, exc_tb)
        return False


def increment_counter(counter: Counter, value: float = 1.0, **labels) -> None:
    """
    Increment a counter metric

    Args:
        counter: Prometheus Counter metric
        value: Amount to increment (default: 1.0)
        **labels: Label values for the metric
    """
    if labels:
        counter.labels(**labels).inc(value)
    else:
        counter.inc(value)


def set_gauge(gauge: Gauge, value: float, **labels) -> None:
    if labels:
        gauge.labels(**labels).set(value)
    else:
        gauge.set(value)


def observe_histogram(histogram: Histogram, value: float, **labels) -> None:
    if labels:
        histogram.labels(**labels).observe(value)
    else:
        histogram.observe(value)


def record_error(error: Exception, component: str) -> None:
    """Count an error by exception type and component."""
    increment_counter(errors_total, 1, error_type=type(error).__name__, component=component)
