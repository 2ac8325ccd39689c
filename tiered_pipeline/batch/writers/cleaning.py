"""
Cleaned-tier transformation: deduplicate and normalize raw records.
"""

from collections import Counter
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone

from tiered_pipeline.core.models import Record
from tiered_pipeline.core.schema import DeclaredSchema

_FAR_FUTURE = datetime.max.replace(tzinfo=timezone.utc)


@dataclass
class CleaningResult:
    """Cleaned rows plus the counters stored in the cleaned manifest."""

    records: list[Record]
    input_rows: int
    duplicates_removed: int
    coercion_failures: dict[str, int] = field(default_factory=dict)


def deduplicate(records: Iterable[Record]) -> tuple[list[Record], int]:
    """
    Keep one record per identifier.

    The surviving copy is the one extracted earliest; ties fall back to the
    earliest event time, then to input order.

    Returns:
        Tuple of (unique records sorted by event time then identifier, duplicates removed)
    """
    indexed = list(enumerate(records))
    indexed.sort(key=lambda item: (
        item[1].extracted_at or _FAR_FUTURE,
        item[1].event_time,
        item[0],
    ))

    kept: dict[str, Record] = {}
    for _, record in indexed:
        kept.setdefault(record.record_id, record)

    unique = sorted(kept.values(), key=lambda r: (r.event_time, r.record_id))
    return unique, len(indexed) - len(unique)


def normalize(records: Iterable[Record], schema: DeclaredSchema) -> tuple[list[Record], dict[str, int]]:
    """
    Coerce declared fields to their declared types.

    Values that cannot be coerced become null and are counted per field;
    the completeness rules then see them as missing.
    """
    failures: Counter = Counter()
    normalized = []
    for record in records:
        values, failed = schema.normalize(record.fields)
        failures.update(failed)
        normalized.append(record.model_copy(update={"fields": values}))
    return normalized, dict(sorted(failures.items()))


def clean(records: Iterable[Record], schema: DeclaredSchema, spark=None) -> CleaningResult:
    """Deduplicate (on Spark when a session is given) and normalize."""
    records = list(records)
    if spark is not None:
        from .spark_dedup import deduplicate_with_spark

        unique, removed = deduplicate_with_spark(spark, records)
    else:
        unique, removed = deduplicate(records)
    normalized, failures = normalize(unique, schema)
    return CleaningResult(
        records=normalized,
        input_rows=len(records),
        duplicates_removed=removed,
        coercion_failures=failures,
    )
