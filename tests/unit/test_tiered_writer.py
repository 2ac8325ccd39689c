"""
Unit tests for the tiered writer: raw, cleaned and aggregated partitions.
"""

from datetime import date, datetime, timedelta, timezone

import pytest

from tiered_pipeline.batch.writers import (
    InMemoryObjectSink,
    TieredWriter,
    aggregated_partition_key,
    build_daily_summary,
    cleaned_partition_key,
    deduplicate,
    percentile,
    quantile_sketch,
    raw_partition_key,
)
from tiered_pipeline.core.exceptions import SinkUnavailable, WriteFailed
from tiered_pipeline.core.models import Batch, Record, Tier, WriterSettings

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)
HOUR = timedelta(hours=1)
DAY1 = date(2024, 1, 1)


class FailingSink(InMemoryObjectSink):
    """Sink that rejects a fixed number of writes."""

    def __init__(self, failures: int):
        super().__init__()
        self.failures = failures
        self.attempts = 0

    def write(self, partition_key, payload, manifest):
        self.attempts += 1
        if self.attempts <= self.failures:
            raise SinkUnavailable("bucket unreachable")
        super().write(partition_key, payload, manifest)


def _batch(records, start=T0, end=T0 + HOUR, extracted_at=T0 + 2 * HOUR, expected=None) -> Batch:
    rows = tuple(r.model_copy(update={"extracted_at": extracted_at}) for r in records)
    return Batch(
        source_id="orders",
        window_start=start,
        window_end=end,
        rows=rows,
        extracted_at=extracted_at,
        expected_count=len(rows) if expected is None else expected,
    )


@pytest.fixture
def writer(object_sink, orders_config, no_sleep) -> TieredWriter:
    return TieredWriter(
        object_sink,
        orders_config,
        WriterSettings(max_attempts=3, base_delay=0.0, max_delay=0.0),
        sleep=no_sleep,
    )


class TestPartitionKeys:
    """Tests for partition key layout"""

    def test_raw_key(self):
        key = raw_partition_key("orders", T0 + 5 * HOUR)

        assert key == "raw/source_id=orders/date=2024-01-01/hour=05/window=20240101T050000Z"

    def test_raw_key_normalizes_offsets(self):
        """Test the same instant yields the same key whatever its offset"""
        plus_two = timezone(timedelta(hours=2))

        assert raw_partition_key("orders", datetime(2024, 1, 1, 7, tzinfo=plus_two)) == \
            raw_partition_key("orders", T0 + 5 * HOUR)

    def test_date_keys(self):
        assert cleaned_partition_key("orders", DAY1) == "cleaned/source_id=orders/date=2024-01-01"
        assert aggregated_partition_key("orders", DAY1) == "aggregated/source_id=orders/date=2024-01-01"


class TestRawTier:
    """Tests for raw writes"""

    def test_manifest_describes_partition(self, writer, object_sink, make_orders):
        batch = _batch(make_orders(T0, 60))

        manifest = writer.write_raw(batch)

        assert manifest.tier == Tier.RAW
        assert manifest.row_count == 60
        assert manifest.expected_count == 60
        assert manifest.window_start == T0
        assert manifest.window_end == T0 + HOUR
        assert manifest.byte_size == len(object_sink.read(manifest.partition_key))
        assert object_sink.read_manifest(manifest.partition_key) == manifest

    def test_rewrite_is_byte_identical(self, writer, object_sink, make_orders):
        """Test re-writing the same batch leaves the same bytes under the same key"""
        batch = _batch(make_orders(T0, 60))

        first = writer.write_raw(batch)
        payload = object_sink.read(first.partition_key)
        second = writer.write_raw(batch)

        assert second == first
        assert object_sink.read(second.partition_key) == payload
        assert object_sink.list("raw/") == [first.partition_key]

    def test_read_raw_returns_records(self, writer, make_orders):
        batch = _batch(make_orders(T0, 5))
        manifest = writer.write_raw(batch)

        assert writer.read_raw(manifest.partition_key) == list(batch.rows)

    def test_empty_window_still_written(self, writer, object_sink):
        """Test an empty window leaves a zero-row partition"""
        manifest = writer.write_raw(_batch([]))

        assert manifest.row_count == 0
        assert object_sink.read(manifest.partition_key) == b""

    def test_transient_sink_failures_retried(self, orders_config, make_orders, no_sleep):
        sink = FailingSink(failures=2)
        writer = TieredWriter(sink, orders_config, WriterSettings(max_attempts=3, base_delay=0.0), sleep=no_sleep)

        manifest = writer.write_raw(_batch(make_orders(T0, 3)))

        assert sink.attempts == 3
        assert sink.exists(manifest.partition_key)

    def test_persistent_sink_failure_raises_write_failed(self, orders_config, make_orders, no_sleep):
        sink = FailingSink(failures=100)
        writer = TieredWriter(sink, orders_config, WriterSettings(max_attempts=3, base_delay=0.0), sleep=no_sleep)

        with pytest.raises(WriteFailed) as exc_info:
            writer.write_raw(_batch(make_orders(T0, 3)))

        assert exc_info.value.attempts == 3
        assert exc_info.value.partition_key.startswith("raw/source_id=orders/")


class TestCleanedTier:
    """Tests for cleaned writes"""

    def test_duplicates_keep_earliest_extraction(self, writer, make_record):
        """Test a row re-extracted later does not replace the first copy"""
        original = make_record("r1", T0 + timedelta(minutes=10), amount=5.0)
        updated = make_record("r1", T0 + HOUR + timedelta(minutes=10), amount=7.0)
        writer.write_raw(_batch([original], extracted_at=T0 + 2 * HOUR))
        writer.write_raw(_batch([updated], start=T0 + HOUR, end=T0 + 2 * HOUR, extracted_at=T0 + 3 * HOUR))

        partition = writer.write_cleaned(DAY1)

        assert [r.get("amount") for r in partition.records] == [5.0]
        assert partition.manifest.extra["duplicates_removed"] == 1
        assert partition.manifest.extra["input_rows"] == 2
        assert partition.manifest.row_count == 1

    def test_duplicate_ids_within_one_batch(self, writer, make_orders):
        """Test 10 rows with 3 repeated identifiers clean to 7 unique rows"""
        records = make_orders(T0, 7)
        duplicates = [r.model_copy(update={"event_time": r.event_time + timedelta(minutes=30)}) for r in records[:3]]
        writer.write_raw(_batch(records + duplicates))

        partition = writer.write_cleaned(DAY1)

        assert partition.manifest.row_count == 7
        assert partition.manifest.extra["duplicates_removed"] == 3
        assert len({r.record_id for r in partition.records}) == 7

    def test_types_normalized(self, writer, make_record):
        """Test coercible strings are converted and bad values nulled"""
        writer.write_raw(_batch([
            make_record("r1", T0 + timedelta(minutes=1), amount="12.5"),
            make_record("r2", T0 + timedelta(minutes=2), amount="n/a"),
        ]))

        partition = writer.write_cleaned(DAY1)

        assert [r.get("amount") for r in partition.records] == [12.5, None]
        assert partition.manifest.extra["coercion_failures"] == {"amount": 1}

    def test_midnight_boundary(self, writer, make_record):
        """Test an event exactly at midnight lands in the new day's partition"""
        midnight = T0 + timedelta(days=1)
        writer.write_raw(_batch(
            [make_record("late", midnight - timedelta(minutes=1)), make_record("midnight", midnight)],
            start=midnight - HOUR,
            end=midnight,
            extracted_at=midnight + HOUR,
        ))
        writer.write_raw(_batch(
            [make_record("early", midnight + timedelta(minutes=1))],
            start=midnight,
            end=midnight + HOUR,
            extracted_at=midnight + HOUR,
        ))

        day1 = writer.write_cleaned(DAY1)
        day2 = writer.write_cleaned(date(2024, 1, 2))

        assert [r.record_id for r in day1.records] == ["late"]
        assert [r.record_id for r in day2.records] == ["midnight", "early"]

    def test_up_to_ignores_later_windows(self, writer, make_record):
        """Test partitions beyond the run's upper bound are left out"""
        writer.write_raw(_batch([make_record("a", T0 + timedelta(minutes=5))]))
        writer.write_raw(_batch(
            [make_record("b", T0 + HOUR + timedelta(minutes=5))], start=T0 + HOUR, end=T0 + 2 * HOUR
        ))

        partition = writer.write_cleaned(DAY1, up_to=T0 + HOUR)

        assert [r.record_id for r in partition.records] == ["a"]
        assert len(partition.manifest.extra["raw_partitions"]) == 1

    def test_rebuild_is_deterministic(self, writer, object_sink, make_orders):
        writer.write_raw(_batch(make_orders(T0, 30)))

        first = writer.write_cleaned(DAY1, up_to=T0 + HOUR)
        payload = object_sink.read(first.manifest.partition_key)
        second = writer.write_cleaned(DAY1, up_to=T0 + HOUR)

        assert second.manifest == first.manifest
        assert object_sink.read(second.manifest.partition_key) == payload
        assert writer.read_cleaned(DAY1) == first.records


class TestAggregatedTier:
    """Tests for aggregated writes"""

    def test_summary_groups_by_dimension(self, writer, make_orders):
        writer.write_raw(_batch(make_orders(T0, 30)))
        cleaned = writer.write_cleaned(DAY1)

        partition = writer.write_aggregated(DAY1, records=cleaned.records)
        summary = partition.summary

        assert summary.total_rows == 30
        assert [g.dimension_value for g in summary.groups] == ["mobile", "store", "web"]
        assert sum(g.row_count for g in summary.groups) == 30
        assert partition.manifest.row_count == 3
        assert partition.manifest.expected_count == 30
        assert len(summary.distributions["latency_ms"]) == 101

    def test_reads_cleaned_when_records_omitted(self, writer, make_orders):
        writer.write_raw(_batch(make_orders(T0, 12)))
        writer.write_cleaned(DAY1)

        partition = writer.write_aggregated(DAY1)

        assert partition.summary.total_rows == 12
        assert writer.read_summary(DAY1) == partition.summary

    def test_read_summaries_skips_gaps(self, writer, make_record):
        """Test baselines are returned oldest first without missing dates"""
        for day in (date(2024, 1, 1), date(2024, 1, 3)):
            start = datetime(day.year, day.month, day.day, tzinfo=timezone.utc)
            writer.write_aggregated(day, records=[make_record(f"r{day.day}", start + HOUR)])

        summaries = writer.read_summaries(date(2024, 1, 4), days=5)

        assert [s.partition_date for s in summaries] == [date(2024, 1, 1), date(2024, 1, 3)]
        assert writer.read_summary(date(2024, 1, 2)) is None


class TestAggregationHelpers:
    """Tests for deduplication and percentile helpers"""

    def test_percentile_interpolates(self):
        values = [10.0, 20.0, 30.0, 40.0]

        assert percentile(values, 0) == 10.0
        assert percentile(values, 50) == 25.0
        assert percentile(values, 100) == 40.0

    def test_percentile_of_one_value(self):
        assert percentile([7.0], 99) == 7.0

    def test_percentile_rejects_bad_input(self):
        with pytest.raises(ValueError):
            percentile([], 50)
        with pytest.raises(ValueError):
            percentile([1.0], 101)

    def test_quantile_sketch(self):
        sketch = quantile_sketch(range(101))

        assert sketch == [float(i) for i in range(101)]
        assert quantile_sketch([]) == []

    def test_metric_summary(self, make_record):
        records = [make_record(f"r{i}", T0 + timedelta(minutes=i), latency_ms=float(i)) for i in range(1, 101)]

        summary = build_daily_summary("orders", DAY1, records, metric_fields=["latency_ms"], error_field="failed")
        metrics = summary.groups[0].metrics["latency_ms"]

        assert summary.groups[0].dimension_value == "__all__"
        assert metrics.count == 100
        assert metrics.mean == pytest.approx(50.5)
        assert metrics.p50 == pytest.approx(50.5)
        assert metrics.p95 == pytest.approx(95.05)
        assert metrics.p99 == pytest.approx(99.01)
        assert (metrics.min, metrics.max) == (1.0, 100.0)
        assert summary.error_rate == 0.0

    def test_null_dimension_and_errors(self, make_record):
        records = [
            make_record("a", T0, channel=None, failed=True),
            make_record("b", T0, channel="web", failed="true"),
            make_record("c", T0, channel="web", failed=False),
        ]

        summary = build_daily_summary("orders", DAY1, records, dimension_field="channel", error_field="failed")

        assert [(g.dimension_value, g.row_count, g.error_count) for g in summary.groups] == [
            ("__null__", 1, 1),
            ("web", 2, 1),
        ]
        assert summary.error_count == 2

    def test_deduplicate_prefers_earliest_extraction(self):
        late = Record(record_id="x", event_time=T0, extracted_at=T0 + 2 * HOUR, fields={"v": "late"})
        early = Record(record_id="x", event_time=T0 + HOUR, extracted_at=T0 + HOUR, fields={"v": "early"})

        unique, removed = deduplicate([late, early])

        assert removed == 1
        assert unique[0].get("v") == "early"
