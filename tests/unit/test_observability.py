"""
Unit tests for logging, metrics and notification sinks.
"""

import json
import logging
from datetime import date, datetime, timezone

from prometheus_client import CollectorRegistry

from tiered_pipeline.core.models import AnomalyRecord, AnomalySeverity, QualityScore, RunStatus, RunSummary
from tiered_pipeline.observability.logger import get_logger, log_operation, set_level, setup_logger
from tiered_pipeline.observability.metrics import (
    REGISTRY,
    InMemoryMetricsSink,
    PrometheusMetricsSink,
    generate_metrics,
    record_partition_write,
)
from tiered_pipeline.observability.notifications import (
    CollectingNotificationSink,
    LoggingNotificationSink,
    NotificationSeverity,
)

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)
SCORE = QualityScore(completeness=100.0, accuracy=98.0, consistency=100.0, overall=99.3)


def _anomaly() -> AnomalyRecord:
    return AnomalyRecord(
        metric_name="row_count",
        observed_value=10.0,
        baseline_mean=100.0,
        baseline_stddev=10.0,
        z_score=-9.0,
        severity=AnomalySeverity.HIGH,
        detector="volume",
        source_id="orders",
        partition_date=date(2024, 1, 1),
    )


class TestLogger:
    """Tests for structured logging"""

    def test_json_output(self, capsys):
        logger = setup_logger("tiered_pipeline.test_json", level="INFO", format_type="json")

        logger.info("hello", extra={"source_id": "orders"})

        line = capsys.readouterr().out.strip().splitlines()[-1]
        payload = json.loads(line)
        assert payload["message"] == "hello"
        assert payload["level"] == "INFO"
        assert payload["source_id"] == "orders"
        assert payload["logger"] == "tiered_pipeline.test_json"

    def test_get_logger_reuses_handlers(self):
        first = get_logger("tiered_pipeline.test_reuse")
        second = get_logger("tiered_pipeline.test_reuse")

        assert first is second
        assert len(second.handlers) == 1

    def test_set_level(self):
        logger = setup_logger("tiered_pipeline.test_level", level="INFO")

        set_level("ERROR")
        try:
            assert logger.level == logging.ERROR
        finally:
            set_level("INFO")

    def test_log_operation_reports_failure(self, capsys):
        logger = setup_logger("tiered_pipeline.test_operation", level="INFO", format_type="json")

        try:
            with log_operation("write raw tier", logger=logger, source_id="orders"):
                raise RuntimeError("disk full")
        except RuntimeError:
            pass

        lines = [json.loads(line) for line in capsys.readouterr().out.strip().splitlines()]
        assert lines[-1]["message"] == "Failed: write raw tier"
        assert lines[-1]["error_type"] == "RuntimeError"
        assert lines[-1]["status"] == "error"


class TestMetrics:
    """Tests for Prometheus metrics"""

    def test_registry_is_private(self):
        assert isinstance(REGISTRY, CollectorRegistry)

    def test_partition_write_counters(self):
        before = REGISTRY.get_sample_value(
            "pipeline_rows_processed_total", {"source_id": "metrics-test", "tier": "raw"}
        ) or 0.0

        record_partition_write("metrics-test", "raw", 25, 1024)

        after = REGISTRY.get_sample_value("pipeline_rows_processed_total", {"source_id": "metrics-test", "tier": "raw"})
        assert after - before == 25
        assert b"pipeline_partitions_written_total" in generate_metrics()

    def test_prometheus_sink(self):
        sink = PrometheusMetricsSink()

        sink.record_quality_score("metrics-sink", T0, SCORE)
        sink.record_anomaly("metrics-sink", T0, _anomaly().model_copy(update={"source_id": "metrics-sink"}))
        sink.record_run(RunSummary(
            run_id="r", source_id="metrics-sink", as_of=T0, status=RunStatus.SUCCEEDED, watermark_after=T0
        ))

        assert REGISTRY.get_sample_value(
            "pipeline_quality_score", {"source_id": "metrics-sink", "component": "accuracy"}
        ) == 98.0
        assert REGISTRY.get_sample_value(
            "pipeline_anomaly_z_score", {"source_id": "metrics-sink", "metric_name": "row_count"}
        ) == -9.0
        assert REGISTRY.get_sample_value(
            "pipeline_watermark_timestamp_seconds", {"source_id": "metrics-sink"}
        ) == T0.timestamp()

    def test_in_memory_sink(self):
        sink = InMemoryMetricsSink()

        sink.record_quality_score("orders", T0, SCORE)
        sink.record_anomaly("orders", T0, _anomaly())

        assert sink.quality_scores == [("orders", T0, SCORE)]
        assert sink.anomalies[0][2].severity == AnomalySeverity.HIGH


class TestNotifications:
    """Tests for notification sinks"""

    def test_collecting_sink(self):
        sink = CollectingNotificationSink()

        sink.send(NotificationSeverity.CRITICAL, "run blocked", source_id="orders")
        sink.send(NotificationSeverity.WARNING, "volume dip")

        critical = sink.by_severity(NotificationSeverity.CRITICAL)
        assert len(critical) == 1
        assert critical[0].context == {"source_id": "orders"}

    def test_logging_sink_maps_severity(self, caplog):
        logger = logging.getLogger("tiered_pipeline.test_notifications")
        logger.propagate = True
        sink = LoggingNotificationSink(logger)

        with caplog.at_level(logging.INFO, logger="tiered_pipeline.test_notifications"):
            sink.send(NotificationSeverity.HIGH, "volume anomaly", source_id="orders")
            sink.send(NotificationSeverity.CRITICAL, "run failed")

        assert [r.levelno for r in caplog.records] == [logging.ERROR, logging.CRITICAL]
        assert caplog.records[0].notification_severity == "HIGH"
