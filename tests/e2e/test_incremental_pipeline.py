"""
End-to-end tests for the incremental pipeline.

Each test drives full runs (watermark -> raw -> cleaned -> aggregated ->
anomalies -> commit) against in-memory collaborators.
"""

from datetime import date, datetime, timedelta, timezone

import pytest

from tiered_pipeline.batch import IncrementalPipeline
from tiered_pipeline.batch.readers import InMemoryChangeSource
from tiered_pipeline.batch.writers import TieredWriter, aggregated_partition_key
from tiered_pipeline.core.exceptions import SinkUnavailable, SourceUnavailable
from tiered_pipeline.core.models import (
    AnomalySeverity,
    DailySummary,
    ManifestEntry,
    RunStatus,
    Tier,
    WatermarkStatus,
)
from tiered_pipeline.observability.notifications import NotificationSeverity

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)
HOUR = timedelta(hours=1)
LAG = timedelta(minutes=5)


class DownSource(InMemoryChangeSource):
    """Source that can never be reached."""

    def count_changes(self, since, until):
        raise SourceUnavailable("connection refused")


class RacingWatermarkStore:
    """Wraps a store and commits on behalf of another run just before ours."""

    def __init__(self, inner):
        self.inner = inner

    def __getattr__(self, name):
        return getattr(self.inner, name)

    def commit(self, source_id, new_timestamp, expected, **kwargs):
        self.inner.commit(source_id, new_timestamp, expected, run_id="other-run")
        return self.inner.commit(source_id, new_timestamp, expected, **kwargs)


class CleanedTierOutage:
    """Wraps a sink whose cleaned-tier writes always fail."""

    def __init__(self, inner):
        self.inner = inner
        self.failed_writes = 0

    def __getattr__(self, name):
        return getattr(self.inner, name)

    def write(self, partition_key, payload, manifest):
        if partition_key.startswith("cleaned/"):
            self.failed_writes += 1
            raise SinkUnavailable("object store unreachable")
        self.inner.write(partition_key, payload, manifest)


@pytest.fixture
def pipeline_factory(pipeline_settings, watermark_store, object_sink, notifications, metrics_sink, no_sleep):
    """Builds pipelines sharing one store, sink and set of observers"""
    def _build(source, store=None, settings=None, sink=None):
        return IncrementalPipeline(
            settings=settings or pipeline_settings,
            watermark_store=store or watermark_store,
            sink=sink or object_sink,
            sources={"orders": source},
            notifications=notifications,
            metrics=metrics_sink,
            sleep=no_sleep,
        )

    return _build


@pytest.mark.e2e
class TestSuccessfulRuns:
    """Runs where every gate passes"""

    def test_first_run_extracts_everything(
        self, pipeline_factory, watermark_store, object_sink, metrics_sink, make_orders
    ):
        """Test 1000 rows after a midnight watermark flow through every tier"""
        watermark_store.initialize("orders", T0)
        source = InMemoryChangeSource(make_orders(T0, 1000, spacing=timedelta(seconds=30)))
        as_of = T0 + timedelta(hours=9)

        summary = pipeline_factory(source).run("orders", as_of=as_of)

        assert summary.status == RunStatus.SUCCEEDED, summary.error
        assert summary.exit_code == 0
        assert summary.rows_processed == 1000
        assert summary.window_count == 9
        assert summary.watermark_before == T0
        assert summary.watermark_after == as_of - LAG
        assert [r.tier for r in summary.validation_reports] == [Tier.RAW, Tier.CLEANED, Tier.AGGREGATED]
        assert summary.quality_score.overall == 100.0
        assert summary.anomalies == []

        watermark = watermark_store.get("orders")
        assert watermark.last_extracted_at == as_of - LAG
        assert watermark.status == WatermarkStatus.COMMITTED
        assert watermark_store.history("orders")[0].quality_score == summary.quality_score

        assert len(object_sink.list("raw/source_id=orders/")) == 9
        assert object_sink.list("cleaned/") == ["cleaned/source_id=orders/date=2024-01-01"]
        assert object_sink.list("aggregated/") == ["aggregated/source_id=orders/date=2024-01-01"]
        assert metrics_sink.quality_scores[0][2] == summary.quality_score
        assert metrics_sink.runs == [summary]

    def test_rerun_is_idempotent(self, pipeline_factory, watermark_store, object_sink, make_orders):
        """Test replaying the same delta rewrites identical partitions"""
        source = InMemoryChangeSource(make_orders(T0, 500))
        as_of = T0 + timedelta(hours=10)

        watermark_store.initialize("orders", T0)
        first = pipeline_factory(source).run("orders", as_of=as_of)
        snapshot = {key: object_sink.read(key) for key in object_sink.list()}

        replay_store = type(watermark_store)()
        replay_store.initialize("orders", T0)
        second = pipeline_factory(source, store=replay_store).run("orders", as_of=as_of)

        assert first.status == second.status == RunStatus.SUCCEEDED
        assert {key: object_sink.read(key) for key in object_sink.list()} == snapshot

    def test_consecutive_runs_leave_no_gaps(self, pipeline_factory, watermark_store, object_sink, make_orders):
        """Test each row is extracted by exactly one of several runs"""
        records = make_orders(T0, 600, spacing=timedelta(minutes=2))  # through 20:00
        source = InMemoryChangeSource(records)
        watermark_store.initialize("orders", T0)
        pipeline = pipeline_factory(source)

        totals = 0
        for hours in (3, 7, 8, 15, 21):
            summary = pipeline.run("orders", as_of=T0 + timedelta(hours=hours, minutes=17))
            assert summary.status == RunStatus.SUCCEEDED, summary.error
            totals += summary.rows_processed

        assert totals == 600
        writer = TieredWriter(object_sink, pipeline.settings.source("orders"))
        cleaned = writer.read_cleaned(date(2024, 1, 1))
        assert sorted(r.record_id for r in cleaned) == sorted(r.record_id for r in records)

    def test_nothing_to_extract_is_skipped(self, pipeline_factory, watermark_store, notifications):
        watermark_store.initialize("orders", T0)

        summary = pipeline_factory(InMemoryChangeSource()).run("orders", as_of=T0 + LAG)

        assert summary.status == RunStatus.SKIPPED
        assert summary.exit_code == 0
        assert summary.watermark_after == T0
        assert watermark_store.get("orders").version == 0
        assert notifications.by_severity(NotificationSeverity.CRITICAL) == []

    def test_empty_windows_still_commit(self, pipeline_factory, watermark_store):
        """Test a quiet period advances the watermark"""
        watermark_store.initialize("orders", T0)

        summary = pipeline_factory(InMemoryChangeSource()).run("orders", as_of=T0 + 3 * HOUR)

        assert summary.status == RunStatus.SUCCEEDED
        assert summary.rows_processed == 0
        assert watermark_store.get("orders").last_extracted_at == T0 + 3 * HOUR - LAG

    def test_duplicates_removed_in_cleaned_tier(self, pipeline_factory, watermark_store, object_sink, make_orders):
        """Test 10 rows with 3 repeated identifiers land as 7 cleaned rows"""
        records = make_orders(T0, 7)
        repeats = [r.model_copy(update={"event_time": r.event_time + timedelta(minutes=20)}) for r in records[:3]]
        watermark_store.initialize("orders", T0)

        summary = pipeline_factory(InMemoryChangeSource(records + repeats)).run("orders", as_of=T0 + HOUR + LAG)

        assert summary.status == RunStatus.SUCCEEDED, summary.error
        raw_unique = next(r for r in summary.validation_reports[0].results if r.rule_name == "unique_identifiers")
        assert raw_unique.passed is False
        manifest = object_sink.read_manifest("cleaned/source_id=orders/date=2024-01-01")
        assert manifest.row_count == 7
        assert manifest.extra["duplicates_removed"] == 3


@pytest.mark.e2e
class TestBlockedRuns:
    """Runs stopped by a BLOCKING rule"""

    def test_null_rate_blocks_and_keeps_watermark(
        self, pipeline_factory, watermark_store, object_sink, notifications, make_orders
    ):
        """Test 2% missing required values blocks the raw tier"""
        records = [
            r.model_copy(update={"fields": {**r.fields, "customer_id": None}}) if i % 50 == 0 else r
            for i, r in enumerate(make_orders(T0, 1000, spacing=timedelta(seconds=30)))
        ]
        watermark_store.initialize("orders", T0)

        summary = pipeline_factory(InMemoryChangeSource(records)).run("orders", as_of=T0 + 9 * HOUR)

        assert summary.status == RunStatus.BLOCKED
        assert summary.exit_code == 2
        assert [r.rule_name for r in summary.blocking_failures] == ["null_rate"]
        assert summary.blocking_failures[0].details["null_counts"]["customer_id"] == 20
        assert summary.watermark_after == T0
        assert watermark_store.get("orders").last_extracted_at == T0
        assert watermark_store.get("orders").version == 0
        assert object_sink.list("cleaned/") == []

        critical = notifications.by_severity(NotificationSeverity.CRITICAL)
        assert len(critical) == 1
        assert critical[0].context["blocking_rules"] == ["null_rate"]
        assert summary.quality_score is not None
        assert summary.quality_score.completeness < 100.0

    def test_unexpected_category_blocks(self, pipeline_factory, watermark_store, make_orders, make_record):
        records = make_orders(T0, 100) + [make_record("drift", T0 + timedelta(minutes=30), channel="kiosk")]
        watermark_store.initialize("orders", T0)

        summary = pipeline_factory(InMemoryChangeSource(records)).run("orders", as_of=T0 + 3 * HOUR)

        assert summary.status == RunStatus.BLOCKED
        assert [r.rule_name for r in summary.blocking_failures] == ["allowed_values"]

    def test_short_extraction_blocks(self, pipeline_factory, watermark_store, make_orders):
        """Test rows lost between count and fetch trip the row count tolerance"""
        class LossySource(InMemoryChangeSource):
            def fetch_changes(self, since, until):
                rows = super().fetch_changes(since, until)
                return rows[: int(len(rows) * 0.9)]

        watermark_store.initialize("orders", T0)

        summary = pipeline_factory(LossySource(make_orders(T0, 600))).run("orders", as_of=T0 + 11 * HOUR)

        assert summary.status == RunStatus.BLOCKED
        assert summary.blocking_failures[0].rule_name == "row_count_tolerance"
        assert watermark_store.get("orders").last_extracted_at == T0

    def test_blocked_run_recovers_once_fixed(self, pipeline_factory, watermark_store, make_orders, make_record):
        """Test the next run re-extracts the same delta after a block"""
        good = make_orders(T0, 100)
        bad = make_record("bad", T0 + timedelta(minutes=30), channel="kiosk")
        source = InMemoryChangeSource(good + [bad])
        watermark_store.initialize("orders", T0)
        pipeline = pipeline_factory(source)

        assert pipeline.run("orders", as_of=T0 + 3 * HOUR).status == RunStatus.BLOCKED

        fixed = InMemoryChangeSource(good + [bad.model_copy(update={"fields": {**bad.fields, "channel": "web"}})])
        summary = pipeline_factory(fixed).run("orders", as_of=T0 + 3 * HOUR)

        assert summary.status == RunStatus.SUCCEEDED
        assert summary.rows_processed == 101


@pytest.mark.e2e
class TestFailedRuns:
    """Runs ending in FAILED or CONFLICT"""

    def test_unreachable_source_fails(self, pipeline_factory, watermark_store, notifications):
        watermark_store.initialize("orders", T0)

        summary = pipeline_factory(DownSource()).run("orders", as_of=T0 + 3 * HOUR)

        assert summary.status == RunStatus.FAILED
        assert summary.exit_code == 1
        assert "connection refused" in summary.error
        assert watermark_store.get("orders").last_extracted_at == T0
        assert len(notifications.by_severity(NotificationSeverity.CRITICAL)) == 1

    def test_sink_outage_fails_run_and_keeps_watermark(
        self, pipeline_factory, watermark_store, object_sink, notifications, make_orders
    ):
        """Test a cleaned-tier write failing on every attempt ends the run FAILED"""
        watermark_store.initialize("orders", T0)
        version = watermark_store.get("orders").version
        sink = CleanedTierOutage(object_sink)

        summary = pipeline_factory(InMemoryChangeSource(make_orders(T0, 150)), sink=sink).run(
            "orders", as_of=T0 + 3 * HOUR
        )

        assert summary.status == RunStatus.FAILED
        assert summary.exit_code == 1
        assert "cleaned/source_id=orders/date=2024-01-01" in summary.error
        assert sink.failed_writes == 3
        assert len(notifications.by_severity(NotificationSeverity.CRITICAL)) == 1
        assert watermark_store.get("orders").version == version
        assert watermark_store.get("orders").last_extracted_at == T0
        assert len(object_sink.list("raw/source_id=orders/")) == 3
        assert object_sink.list("cleaned/") == []

    def test_uninitialized_watermark_fails(self, pipeline_factory):
        summary = pipeline_factory(InMemoryChangeSource()).run("orders", as_of=T0)

        assert summary.status == RunStatus.FAILED
        assert "No watermark" in summary.error

    def test_unknown_source_fails(self, pipeline_factory):
        summary = pipeline_factory(InMemoryChangeSource()).run("users", as_of=T0)

        assert summary.status == RunStatus.FAILED
        assert "users" in summary.error

    def test_concurrent_commit_conflicts(self, pipeline_factory, watermark_store, make_orders):
        """Test a run whose watermark moved underneath it reports CONFLICT"""
        watermark_store.initialize("orders", T0)
        racing = RacingWatermarkStore(watermark_store)

        summary = pipeline_factory(InMemoryChangeSource(make_orders(T0, 60)), store=racing).run(
            "orders", as_of=T0 + 2 * HOUR
        )

        assert summary.status == RunStatus.CONFLICT
        assert summary.exit_code == 3
        assert watermark_store.get("orders").version == 1
        assert watermark_store.history("orders")[0].run_id == "other-run"


@pytest.mark.e2e
class TestAnomalies:
    """Anomalies flagged on the aggregated tier"""

    @staticmethod
    def _seed_summary(sink, partition_date: date, total_rows: int) -> None:
        summary = DailySummary(source_id="orders", partition_date=partition_date, total_rows=total_rows)
        key = aggregated_partition_key("orders", partition_date)
        payload = summary.model_dump_json().encode("utf-8")
        sink.write(key, payload, ManifestEntry(
            tier=Tier.AGGREGATED,
            partition_key=key,
            row_count=0,
            byte_size=len(payload),
            checksum="",
            source_id="orders",
            partition_date=partition_date,
        ))

    def test_volume_drop_flagged_without_blocking(
        self, pipeline_factory, watermark_store, object_sink, notifications, metrics_sink, make_orders
    ):
        """Test a day far below a 30-day baseline raises a HIGH anomaly but still commits"""
        start = datetime(2024, 1, 31, tzinfo=timezone.utc)
        for offset in range(30, 0, -1):
            self._seed_summary(object_sink, start.date() - timedelta(days=offset), 1150 if offset % 2 else 1250)
        watermark_store.initialize("orders", start)

        result = pipeline_factory(InMemoryChangeSource(make_orders(start, 500))).run(
            "orders", as_of=start + 10 * HOUR
        )

        assert result.status == RunStatus.SUCCEEDED, result.error
        volume = [a for a in result.anomalies if a.detector == "volume"]
        assert len(volume) == 1
        assert volume[0].severity == AnomalySeverity.HIGH
        assert volume[0].z_score < -3
        assert volume[0].baseline_mean == pytest.approx(1200)
        assert watermark_store.get("orders").last_extracted_at == start + 10 * HOUR - LAG
        assert len(notifications.by_severity(NotificationSeverity.HIGH)) == 1
        assert metrics_sink.anomalies[0][2] == volume[0]

    def test_normal_volume_not_flagged(self, pipeline_factory, watermark_store, object_sink, make_orders):
        start = datetime(2024, 1, 31, tzinfo=timezone.utc)
        for offset in range(10, 0, -1):
            self._seed_summary(object_sink, start.date() - timedelta(days=offset), 490 if offset % 2 else 510)
        watermark_store.initialize("orders", start)

        result = pipeline_factory(InMemoryChangeSource(make_orders(start, 500))).run(
            "orders", as_of=start + 10 * HOUR
        )

        assert result.status == RunStatus.SUCCEEDED, result.error
        assert result.anomalies == []
