"""
Incremental pipeline orchestration.

Coordinates one run for one source:
read watermark → extract → write raw → validate raw → write cleaned →
validate cleaned → write aggregated → validate aggregated → detect anomalies
→ commit watermark.

The watermark is committed only when every gate passed. Any failure leaves
it untouched; the partitions already written stay in place and are
overwritten by the next attempt.
"""

import time
import uuid
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import date, datetime

from tiered_pipeline.core.anomaly import AnomalyDetector
from tiered_pipeline.core.exceptions import (
    PipelineError,
    ValidationBlocked,
    WatermarkConflict,
)
from tiered_pipeline.core.models import (
    AnomalyRecord,
    AnomalySeverity,
    Batch,
    DailySummary,
    ManifestEntry,
    PipelineSettings,
    QualityScore,
    Record,
    RunStatus,
    RunSummary,
    SourceConfig,
    Tier,
    TierValidationReport,
    ValidationResult,
    Watermark,
)
from tiered_pipeline.core.quality import compute_quality_score
from tiered_pipeline.core.rules import ValidationEngine
from tiered_pipeline.core.validators import TierSnapshot
from tiered_pipeline.observability.logger import get_logger, log_operation
from tiered_pipeline.observability.metrics import MetricsSink, PrometheusMetricsSink
from tiered_pipeline.observability.notifications import (
    LoggingNotificationSink,
    NotificationSeverity,
    NotificationSink,
)
from tiered_pipeline.utils.timeutil import ensure_utc, utc_now
from tiered_pipeline.warehouse.watermark_store import WatermarkStore

from .extractor import ChangeExtractor, TimeWindow
from .readers import ChangeSource
from .writers import PartitionedObjectSink, TieredWriter

logger = get_logger(__name__)

_ANOMALY_NOTIFICATIONS = {
    AnomalySeverity.MEDIUM: NotificationSeverity.WARNING,
    AnomalySeverity.HIGH: NotificationSeverity.HIGH,
}


class _RunState:
    """Mutable bookkeeping for a run in progress."""

    def __init__(self, run_id: str, source_id: str, as_of: datetime):
        self.run_id = run_id
        self.source_id = source_id
        self.as_of = as_of
        self.reports: list[TierValidationReport] = []
        self.anomalies: list[AnomalyRecord] = []
        self.partitions: list[str] = []
        self.rows_processed = 0
        self.window_count = 0
        self.quality_score: QualityScore | None = None
        self.watermark_before: Watermark | None = None
        self.watermark_after: Watermark | None = None

    @property
    def results(self) -> list[ValidationResult]:
        return [result for report in self.reports for result in report.results]


class IncrementalPipeline:
    """
    Runs the tiered pipeline for configured sources.
    """

    def __init__(
        self,
        settings: PipelineSettings,
        watermark_store: WatermarkStore,
        sink: PartitionedObjectSink,
        sources: dict[str, ChangeSource],
        notifications: NotificationSink | None = None,
        metrics: MetricsSink | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = utc_now,
        spark=None,
    ):
        """
        Initialize pipeline.

        Args:
            settings: Pipeline and per-source configuration
            watermark_store: Store holding each source's committed watermark
            sink: Object sink receiving every tier
            sources: Change source per source_id
            notifications: Sink for CRITICAL run failures and anomalies
            metrics: Sink for quality scores and anomaly time series
            sleep: Sleep function used between retries
            clock: Current-time function used when no ``as_of`` is given
            spark: SparkSession the cleaned tier deduplicates on (in-process when None)
        """
        self.settings = settings
        self.watermark_store = watermark_store
        self.sink = sink
        self.sources = sources
        self.notifications = notifications or LoggingNotificationSink()
        self.metrics = metrics or PrometheusMetricsSink()
        self.sleep = sleep
        self.clock = clock
        self.spark = spark
        self.detector = AnomalyDetector(settings.anomaly)

    def run(self, source_id: str, as_of: datetime | None = None) -> RunSummary:
        """
        Process everything that changed since the committed watermark.

        Never raises for run-level failures: the returned summary carries the
        status, the blocking results and the error.

        Args:
            source_id: Source to process
            as_of: Logical run time (defaults to now); the run reads up to
                ``as_of`` minus the configured safety lag

        Returns:
            RunSummary describing the outcome
        """
        state = _RunState(
            run_id=uuid.uuid4().hex,
            source_id=source_id,
            as_of=ensure_utc(as_of) if as_of is not None else self.clock(),
        )
        started = time.monotonic()
        status = RunStatus.FAILED
        error: str | None = None
        blocking: list[ValidationResult] = []

        try:
            with log_operation("pipeline run", logger=logger, source_id=source_id, run_id=state.run_id):
                status = self._run(state)
        except ValidationBlocked as e:
            status, error, blocking = RunStatus.BLOCKED, str(e), list(e.results)
        except WatermarkConflict as e:
            status, error = RunStatus.CONFLICT, str(e)
        except PipelineError as e:
            status, error = RunStatus.FAILED, str(e)
        except Exception as e:
            logger.exception(f"Unexpected error in run {state.run_id} for {source_id}")
            status, error = RunStatus.FAILED, f"{type(e).__name__}: {e}"

        if status not in (RunStatus.SUCCEEDED, RunStatus.SKIPPED) and state.quality_score is None and state.reports:
            state.quality_score = compute_quality_score(state.results, self.settings.quality_weights)

        before = state.watermark_before.last_extracted_at if state.watermark_before else None
        after = state.watermark_after.last_extracted_at if state.watermark_after else before
        summary = RunSummary(
            run_id=state.run_id,
            source_id=source_id,
            as_of=state.as_of,
            status=status,
            rows_processed=state.rows_processed,
            quality_score=state.quality_score,
            anomalies=state.anomalies,
            validation_reports=state.reports,
            blocking_failures=blocking,
            watermark_before=before,
            watermark_after=after,
            window_count=state.window_count,
            partitions_written=state.partitions,
            duration_seconds=round(time.monotonic() - started, 3),
            error=error,
        )

        if status in (RunStatus.BLOCKED, RunStatus.CONFLICT, RunStatus.FAILED):
            self.notifications.send(
                NotificationSeverity.CRITICAL,
                f"Pipeline run for {source_id} {status.value}: {error}",
                source_id=source_id,
                run_id=state.run_id,
                status=status.value,
                blocking_rules=[r.rule_name for r in blocking],
            )
        self.metrics.record_run(summary)
        return summary

    # ------------------------------------------------------------------

    def _run(self, state: _RunState) -> RunStatus:
        source_id = state.source_id
        try:
            source_config = self.settings.source(source_id)
            source = self.sources[source_id]
        except KeyError as e:
            raise PipelineError(f"No source configured for '{source_id}'") from e

        state.watermark_before = self.watermark_store.get(source_id)
        from_ts = state.watermark_before.last_extracted_at

        extractor = ChangeExtractor(source, source_id, self.settings.extractor, sleep=self.sleep, clock=self.clock)
        upper = extractor.upper_bound(state.as_of)
        windows = extractor.plan(from_ts, upper)
        state.window_count = len(windows)
        if not windows:
            logger.info(
                f"Nothing to extract for {source_id}: watermark {from_ts.isoformat()} is not before {upper.isoformat()}",
                extra={"source_id": source_id, "run_id": state.run_id},
            )
            return RunStatus.SKIPPED

        writer = TieredWriter(self.sink, source_config, self.settings.writer, sleep=self.sleep, spark=self.spark)
        engine = ValidationEngine.for_source(source_config, self.settings.validation, sleep=self.sleep)

        # Raw tier
        batches, raw_manifests = self._extract_raw(extractor, writer, windows, state)
        raw_records = [record for batch in batches for record in batch.rows]
        state.rows_processed = len(raw_records)
        state.partitions.extend(m.partition_key for m in raw_manifests)
        self._gate(engine, self._snapshot(Tier.RAW, source_config, raw_manifests, records=raw_records), state)

        # Cleaned tier
        dates = sorted({record.event_time.date() for record in raw_records})
        cleaned = []
        with log_operation("write cleaned tier", logger=logger, source_id=source_id, dates=len(dates)):
            for partition_date in dates:
                cleaned.append(writer.write_cleaned(partition_date, up_to=upper))
        state.partitions.extend(c.manifest.partition_key for c in cleaned)
        self._gate(
            engine,
            self._snapshot(
                Tier.CLEANED,
                source_config,
                [c.manifest for c in cleaned],
                records=[record for c in cleaned for record in c.records],
            ),
            state,
        )

        # Aggregated tier
        aggregated = []
        with log_operation("write aggregated tier", logger=logger, source_id=source_id, dates=len(dates)):
            for partition_date, partition in zip(dates, cleaned, strict=True):
                aggregated.append(writer.write_aggregated(partition_date, records=partition.records, written_at=state.as_of))
        state.partitions.extend(a.manifest.partition_key for a in aggregated)
        self._gate(
            engine,
            self._snapshot(
                Tier.AGGREGATED,
                source_config,
                [a.manifest for a in aggregated],
                summaries=[a.summary for a in aggregated],
            ),
            state,
        )

        # Anomalies never block
        for partition in aggregated:
            self._detect_anomalies(writer, partition.summary.partition_date, partition.summary, state)

        state.quality_score = compute_quality_score(state.results, self.settings.quality_weights)
        self.metrics.record_quality_score(source_id, state.as_of, state.quality_score)

        state.watermark_after = self.watermark_store.commit(
            source_id,
            upper,
            state.watermark_before,
            run_id=state.run_id,
            quality_score=state.quality_score,
        )
        logger.info(
            f"Committed watermark for {source_id} at {upper.isoformat()}",
            extra={
                "source_id": source_id,
                "run_id": state.run_id,
                "rows": state.rows_processed,
                "quality_overall": state.quality_score.overall,
            },
        )
        return RunStatus.SUCCEEDED

    def _extract_raw(
        self,
        extractor: ChangeExtractor,
        writer: TieredWriter,
        windows: list[TimeWindow],
        state: _RunState,
    ) -> tuple[list[Batch], list[ManifestEntry]]:
        """
        Extract and persist every window on a bounded worker pool.

        Windows are disjoint and raw writes are keyed by window, so they
        can run in any order. Results come back in window order. The first
        failing window (in window order) is raised once the pool drains.
        """
        def work(window: TimeWindow) -> tuple[Batch, ManifestEntry]:
            batch = extractor.extract_window(window, state.as_of)
            return batch, writer.write_raw(batch)

        with log_operation(
            "extract raw tier", logger=logger, source_id=state.source_id, windows=len(windows)
        ):
            with ThreadPoolExecutor(
                max_workers=self.settings.max_workers, thread_name_prefix=f"extract-{state.source_id}"
            ) as executor:
                futures: list[Future] = [executor.submit(work, window) for window in windows]
                results = []
                try:
                    for future in futures:
                        results.append(future.result())
                except Exception:
                    for future in futures:
                        future.cancel()
                    raise

        return [batch for batch, _ in results], [manifest for _, manifest in results]

    def _gate(self, engine: ValidationEngine, snapshot: TierSnapshot, state: _RunState) -> None:
        report = engine.validate(snapshot)
        state.reports.append(report)
        if not report.passed:
            raise ValidationBlocked(snapshot.tier.value, report.blocking_failures)

    @staticmethod
    def _snapshot(
        tier: Tier,
        source_config: SourceConfig,
        manifests: list[ManifestEntry],
        records: list[Record] | None = None,
        summaries: list[DailySummary] | None = None,
    ) -> TierSnapshot:
        return TierSnapshot(
            tier=tier,
            source_id=source_config.source_id,
            manifests=manifests,
            records=records or [],
            summaries=summaries or [],
            schema=source_config.declared_schema,
            thresholds=source_config.thresholds,
        )

    def _detect_anomalies(self, writer: TieredWriter, partition_date: date, summary: DailySummary, state: _RunState) -> None:
        baseline = writer.read_summaries(partition_date, self.settings.anomaly.baseline_days)
        for anomaly in self.detector.detect(summary, baseline):
            state.anomalies.append(anomaly)
            self.metrics.record_anomaly(state.source_id, state.as_of, anomaly)
            self.notifications.send(
                _ANOMALY_NOTIFICATIONS[anomaly.severity],
                anomaly.message,
                source_id=state.source_id,
                run_id=state.run_id,
                metric_name=anomaly.metric_name,
                detector=anomaly.detector,
                partition_date=partition_date.isoformat(),
                z_score=anomaly.z_score,
            )
