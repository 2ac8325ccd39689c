"""
Prometheus metrics collection for tiered-pipeline

This module provides metrics instrumentation for monitoring run outcomes,
tier throughput, data quality and anomalies, plus the metrics sink the
orchestrator publishes quality scores and anomaly records through.
"""
import os
import threading
from abc import ABC, abstractmethod
from datetime import datetime

from prometheus_client import (
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

from tiered_pipeline.core.models import AnomalyRecord, QualityScore, RunSummary

# Global registry for metrics
REGISTRY = CollectorRegistry()


# =======================
# RUN METRICS
# =======================

runs_total = Counter(
    name="pipeline_runs_total",
    documentation="Total number of pipeline runs",
    labelnames=["source_id", "status"],  # status: SUCCEEDED, SKIPPED, BLOCKED, CONFLICT, FAILED
    registry=REGISTRY,
)

run_duration_seconds = Histogram(
    name="pipeline_run_duration_seconds",
    documentation="Wall-clock duration of pipeline runs in seconds",
    labelnames=["source_id"],
    buckets=[1.0, 5.0, 15.0, 30.0, 60.0, 300.0, 900.0, 1800.0, 3600.0],
    registry=REGISTRY,
)

watermark_timestamp_seconds = Gauge(
    name="pipeline_watermark_timestamp_seconds",
    documentation="Committed watermark per source as a unix timestamp",
    labelnames=["source_id"],
    registry=REGISTRY,
)

# =======================
# TIER METRICS
# =======================

rows_processed_total = Counter(
    name="pipeline_rows_processed_total",
    documentation="Total number of rows written per tier",
    labelnames=["source_id", "tier"],
    registry=REGISTRY,
)

partitions_written_total = Counter(
    name="pipeline_partitions_written_total",
    documentation="Total number of partitions written per tier",
    labelnames=["source_id", "tier"],
    registry=REGISTRY,
)

partition_bytes = Histogram(
    name="pipeline_partition_bytes",
    documentation="Payload size of written partitions in bytes",
    labelnames=["source_id", "tier"],
    buckets=[1e3, 1e4, 1e5, 1e6, 1e7, 1e8, 1e9],
    registry=REGISTRY,
)

retries_total = Counter(
    name="pipeline_retries_total",
    documentation="Total number of retry attempts",
    labelnames=["source_id", "operation"],  # operation: extract, write, validate
    registry=REGISTRY,
)

# =======================
# DATA QUALITY METRICS
# =======================

validation_results_total = Counter(
    name="pipeline_validation_results_total",
    documentation="Rule evaluations by outcome",
    labelnames=["source_id", "tier", "rule_name", "outcome", "severity"],
    registry=REGISTRY,
)

quality_score = Gauge(
    name="pipeline_quality_score",
    documentation="Latest quality score per component (0-100)",
    labelnames=["source_id", "component"],  # completeness, accuracy, consistency, overall
    registry=REGISTRY,
)

anomalies_total = Counter(
    name="pipeline_anomalies_total",
    documentation="Total number of anomalies detected",
    labelnames=["source_id", "detector", "severity"],
    registry=REGISTRY,
)

anomaly_z_score = Gauge(
    name="pipeline_anomaly_z_score",
    documentation="Latest z-score of a volume anomaly",
    labelnames=["source_id", "metric_name"],
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


def start_metrics_server(port: int | None = None) -> None:
    """
    Start HTTP server for Prometheus metrics

    Args:
        port: Port to listen on (defaults to env var METRICS_PORT or 8000)
    """
    # Lazy import: avoids port binding on import
    from prometheus_client import start_http_server

    metrics_port = port or int(os.getenv("METRICS_PORT", "8000"))
    start_http_server(metrics_port, registry=REGISTRY)


def increment_counter(counter: Counter, value: float = 1.0, **labels) -> None:
    counter.labels(**labels).inc(value)


def set_gauge(gauge: Gauge, value: float, **labels) -> None:
    gauge.labels(**labels).set(value)


def observe_histogram(histogram: Histogram, value: float, **labels) -> None:
    histogram.labels(**labels).observe(value)


def record_partition_write(source_id: str, tier: str, row_count: int, byte_size: int) -> None:
    """
    Record a tier write.

    Args:
        source_id: Data source ID
        tier: Tier written
        row_count: Rows in the partition
        byte_size: Payload size in bytes
    """
    increment_counter(rows_processed_total, row_count, source_id=source_id, tier=tier)
    increment_counter(partitions_written_total, 1, source_id=source_id, tier=tier)
    observe_histogram(partition_bytes, byte_size, source_id=source_id, tier=tier)


def record_retry(source_id: str, operation: str) -> None:
    increment_counter(retries_total, 1, source_id=source_id, operation=operation)


# =======================
# METRICS SINKS
# =======================

class MetricsSink(ABC):
    """
    Accepts quality score and anomaly time series for later querying.

    Querying and visualization live outside the pipeline.
    """

    @abstractmethod
    def record_quality_score(self, source_id: str, as_of: datetime, score: QualityScore) -> None:
        pass

    @abstractmethod
    def record_anomaly(self, source_id: str, as_of: datetime, anomaly: AnomalyRecord) -> None:
        pass

    def record_run(self, summary: RunSummary) -> None:
        """Optional hook for run-level counters."""


class PrometheusMetricsSink(MetricsSink):
    """Publishes to the module-level Prometheus registry."""

    def record_quality_score(self, source_id: str, as_of: datetime, score: QualityScore) -> None:
        for component in ("completeness", "accuracy", "consistency", "overall"):
            set_gauge(quality_score, getattr(score, component), source_id=source_id, component=component)

    def record_anomaly(self, source_id: str, as_of: datetime, anomaly: AnomalyRecord) -> None:
        increment_counter(
            anomalies_total, 1,
            source_id=source_id, detector=anomaly.detector, severity=anomaly.severity.value,
        )
        if anomaly.z_score is not None:
            set_gauge(anomaly_z_score, anomaly.z_score, source_id=source_id, metric_name=anomaly.metric_name)

    def record_run(self, summary: RunSummary) -> None:
        increment_counter(runs_total, 1, source_id=summary.source_id, status=summary.status.value)
        observe_histogram(run_duration_seconds, summary.duration_seconds, source_id=summary.source_id)
        if summary.succeeded and summary.watermark_after is not None:
            set_gauge(watermark_timestamp_seconds, summary.watermark_after.timestamp(), source_id=summary.source_id)


class InMemoryMetricsSink(MetricsSink):
    """Keeps every data point in memory; used by tests and dry runs."""

    def __init__(self):
        self._lock = threading.Lock()
        self.quality_scores: list[tuple[str, datetime, QualityScore]] = []
        self.anomalies: list[tuple[str, datetime, AnomalyRecord]] = []
        self.runs: list[RunSummary] = []

    def record_quality_score(self, source_id: str, as_of: datetime, score: QualityScore) -> None:
        with self._lock:
            self.quality_scores.append((source_id, as_of, score))

    def record_anomaly(self, source_id: str, as_of: datetime, anomaly: AnomalyRecord) -> None:
        with self._lock:
            self.anomalies.append((source_id, as_of, anomaly))

    def record_run(self, summary: RunSummary) -> None:
        with self._lock:
            self.runs.append(summary)
