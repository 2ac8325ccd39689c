"""
Tiered writer: persists raw, cleaned and aggregated partitions.

Every write is idempotent. Partition keys are derived only from the source
and the window or date, and payloads are serialized deterministically, so
re-running the same delta overwrites each partition with identical bytes.
"""

import hashlib
import json
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Any

from tiered_pipeline.core.exceptions import PartitionNotFound, SinkUnavailable, WriteFailed
from tiered_pipeline.core.models import (
    Batch,
    DailySummary,
    ManifestEntry,
    Record,
    SourceConfig,
    Tier,
    WriterSettings,
)
from tiered_pipeline.observability.logger import get_logger
from tiered_pipeline.observability.metrics import record_partition_write, record_retry
from tiered_pipeline.utils.retry import MaxRetriesExceeded, RetryPolicy, retry_with_backoff
from tiered_pipeline.utils.timeutil import compact, day_bounds, ensure_utc

from .aggregation import build_daily_summary
from .cleaning import clean
from .object_sink import PartitionedObjectSink

logger = get_logger(__name__)


def raw_partition_key(source_id: str, window_start: datetime) -> str:
    start = ensure_utc(window_start)
    return (
        f"raw/source_id={source_id}/date={start.date().isoformat()}"
        f"/hour={start.hour:02d}/window={compact(start)}"
    )


def cleaned_partition_key(source_id: str, partition_date: date) -> str:
    return f"cleaned/source_id={source_id}/date={partition_date.isoformat()}"


def aggregated_partition_key(source_id: str, partition_date: date) -> str:
    return f"aggregated/source_id={source_id}/date={partition_date.isoformat()}"


def encode_rows(rows: Iterable[dict[str, Any]]) -> bytes:
    """JSON lines with sorted keys and no insignificant whitespace."""
    lines = [json.dumps(row, sort_keys=True, separators=(",", ":")) for row in rows]
    return ("\n".join(lines) + "\n").encode("utf-8") if lines else b""


def decode_rows(payload: bytes) -> list[dict[str, Any]]:
    return [json.loads(line) for line in payload.decode("utf-8").splitlines() if line]


def checksum(payload: bytes) -> str:
    return hashlib.sha256(payload).hexdigest()


@dataclass
class CleanedPartition:
    manifest: ManifestEntry
    records: list[Record]


@dataclass
class AggregatedPartition:
    manifest: ManifestEntry
    summary: DailySummary


class TieredWriter:
    """
    Writes the three tiers for one source.
    """

    def __init__(
        self,
        sink: PartitionedObjectSink,
        source_config: SourceConfig,
        settings: WriterSettings | None = None,
        sleep: Callable[[float], None] = time.sleep,
        spark=None,
    ):
        """
        Initialize writer.

        Args:
            sink: Object sink receiving the partitions
            source_config: Schema, dimension and metric fields of the source
            settings: Retry settings for sink writes
            sleep: Sleep function used between retries
            spark: SparkSession used to deduplicate the cleaned tier (in-process when None)
        """
        self.sink = sink
        self.spark = spark
        self.source_config = source_config
        self.source_id = source_config.source_id
        self.settings = settings or WriterSettings()
        self.sleep = sleep
        self.retry_policy = RetryPolicy(
            max_attempts=self.settings.max_attempts,
            base_delay=self.settings.base_delay,
            max_delay=self.settings.max_delay,
        )

    # ------------------------------------------------------------------
    # Raw tier
    # ------------------------------------------------------------------

    def write_raw(self, batch: Batch) -> ManifestEntry:
        """
        Persist a batch as-is under its window's partition key.

        Raises:
            WriteFailed: If the sink rejects the write after all retries
        """
        payload = encode_rows(record.to_row() for record in batch.rows)
        key = raw_partition_key(batch.source_id, batch.window_start)
        manifest = ManifestEntry(
            tier=Tier.RAW,
            partition_key=key,
            row_count=batch.row_count,
            byte_size=len(payload),
            checksum=checksum(payload),
            source_id=batch.source_id,
            window_start=batch.window_start,
            window_end=batch.window_end,
            expected_count=batch.expected_count,
            written_at=batch.extracted_at,
        )
        self._put(key, payload, manifest)
        return manifest

    def read_raw(self, partition_key: str) -> list[Record]:
        return [Record.from_row(row) for row in decode_rows(self.sink.read(partition_key))]

    def raw_manifests_for_date(self, partition_date: date, up_to: datetime | None = None) -> list[ManifestEntry]:
        """
        Raw partitions whose window can hold events of ``partition_date``.

        A window ending exactly at midnight is keyed by the previous day but
        contains the boundary instant, so the previous day is scanned too.
        Partitions ending after ``up_to`` are ignored; they belong to a run
        that never committed.
        """
        day_start, day_end = day_bounds(partition_date)
        manifests = []
        for day in (partition_date - timedelta(days=1), partition_date):
            prefix = f"raw/source_id={self.source_id}/date={day.isoformat()}/"
            for key in self.sink.list(prefix):
                manifest = self.sink.read_manifest(key)
                if manifest.window_start is None or manifest.window_end is None:
                    continue
                if not (manifest.window_start < day_end and manifest.window_end >= day_start):
                    continue
                if up_to is not None and manifest.window_end > up_to:
                    continue
                manifests.append(manifest)
        return manifests

    # ------------------------------------------------------------------
    # Cleaned tier
    # ------------------------------------------------------------------

    def write_cleaned(self, partition_date: date, up_to: datetime | None = None) -> CleanedPartition:
        """
        Rebuild the cleaned partition for a date from every raw partition
        covering it: deduplicate by identifier, then normalize types.

        Args:
            partition_date: Date to rebuild
            up_to: Ignore raw partitions whose window ends after this instant

        Raises:
            WriteFailed: If the sink rejects the write after all retries
        """
        day_start, day_end = day_bounds(partition_date)
        raw_manifests = self.raw_manifests_for_date(partition_date, up_to)

        records = []
        for manifest in raw_manifests:
            for record in self.read_raw(manifest.partition_key):
                if day_start <= record.event_time < day_end:
                    records.append(record)

        result = clean(records, self.source_config.declared_schema, spark=self.spark)
        payload = encode_rows(record.to_row() for record in result.records)
        key = cleaned_partition_key(self.source_id, partition_date)
        manifest = ManifestEntry(
            tier=Tier.CLEANED,
            partition_key=key,
            row_count=len(result.records),
            byte_size=len(payload),
            checksum=checksum(payload),
            source_id=self.source_id,
            partition_date=partition_date,
            expected_count=result.input_rows,
            written_at=up_to or day_end,
            extra={
                "input_rows": result.input_rows,
                "duplicates_removed": result.duplicates_removed,
                "coercion_failures": result.coercion_failures,
                "raw_partitions": [m.partition_key for m in raw_manifests],
            },
        )
        self._put(key, payload, manifest)

        if result.duplicates_removed:
            logger.info(
                f"Removed {result.duplicates_removed} duplicate rows from {key}",
                extra={"source_id": self.source_id, "duplicates": result.duplicates_removed},
            )
        return CleanedPartition(manifest=manifest, records=result.records)

    def read_cleaned(self, partition_date: date) -> list[Record]:
        payload = self.sink.read(cleaned_partition_key(self.source_id, partition_date))
        return [Record.from_row(row) for row in decode_rows(payload)]

    # ------------------------------------------------------------------
    # Aggregated tier
    # ------------------------------------------------------------------

    def write_aggregated(
        self,
        partition_date: date,
        records: list[Record] | None = None,
        written_at: datetime | None = None,
    ) -> AggregatedPartition:
        """
        Summarize the cleaned partition for a date.

        Args:
            partition_date: Date to summarize
            records: Cleaned rows (read back from the sink when omitted)
            written_at: Timestamp stored in the manifest

        Raises:
            WriteFailed: If the sink rejects the write after all retries
        """
        if records is None:
            records = self.read_cleaned(partition_date)

        config = self.source_config
        summary = build_daily_summary(
            self.source_id,
            partition_date,
            records,
            dimension_field=config.dimension_field,
            metric_fields=config.metric_fields,
            error_field=config.error_field,
        )
        payload = json.dumps(
            summary.model_dump(mode="json"), sort_keys=True, separators=(",", ":")
        ).encode("utf-8")
        key = aggregated_partition_key(self.source_id, partition_date)
        manifest = ManifestEntry(
            tier=Tier.AGGREGATED,
            partition_key=key,
            row_count=len(summary.groups),
            byte_size=len(payload),
            checksum=checksum(payload),
            source_id=self.source_id,
            partition_date=partition_date,
            expected_count=len(records),
            written_at=written_at or day_bounds(partition_date)[1],
            extra={"total_rows": summary.total_rows},
        )
        self._put(key, payload, manifest)
        return AggregatedPartition(manifest=manifest, summary=summary)

    def read_summary(self, partition_date: date) -> DailySummary | None:
        """Stored summary for a date, or None if that date was never aggregated."""
        try:
            payload = self.sink.read(aggregated_partition_key(self.source_id, partition_date))
        except PartitionNotFound:
            return None
        return DailySummary.model_validate_json(payload)

    def read_summaries(self, before: date, days: int) -> list[DailySummary]:
        """Summaries of the ``days`` dates preceding ``before``, oldest first. Gaps are skipped."""
        summaries = []
        for offset in range(days, 0, -1):
            summary = self.read_summary(before - timedelta(days=offset))
            if summary is not None:
                summaries.append(summary)
        return summaries

    # ------------------------------------------------------------------

    def _put(self, key: str, payload: bytes, manifest: ManifestEntry) -> None:
        def on_retry(attempt: int, error: BaseException) -> None:
            record_retry(self.source_id, "write")
            logger.warning(
                f"Retrying write of {key} (attempt {attempt} failed: {error})",
                extra={"source_id": self.source_id, "attempt": attempt},
            )

        try:
            retry_with_backoff(
                lambda: self.sink.write(key, payload, manifest),
                policy=self.retry_policy,
                retry_on=(SinkUnavailable, OSError, TimeoutError),
                on_retry=on_retry,
                sleep=self.sleep,
            )
        except MaxRetriesExceeded as e:
            raise WriteFailed(key, f"sink unavailable: {e.last_error}", attempts=e.attempts) from e

        record_partition_write(self.source_id, manifest.tier.value, manifest.row_count, manifest.byte_size)
        logger.debug(
            f"Wrote {manifest.tier.value} partition {key} ({manifest.row_count} rows, {manifest.byte_size} bytes)",
            extra={"source_id": self.source_id, "tier": manifest.tier.value},
        )
