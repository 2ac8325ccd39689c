"""Tier writers and the object sinks they persist to."""

from .aggregation import build_daily_summary, percentile, quantile_sketch
from .cleaning import CleaningResult, clean, deduplicate
from .object_sink import InMemoryObjectSink, LocalFileObjectSink, PartitionedObjectSink
from .tiered_writer import (
    AggregatedPartition,
    CleanedPartition,
    TieredWriter,
    aggregated_partition_key,
    cleaned_partition_key,
    raw_partition_key,
)

__all__ = [
    "AggregatedPartition",
    "CleanedPartition",
    "CleaningResult",
    "InMemoryObjectSink",
    "LocalFileObjectSink",
    "PartitionedObjectSink",
    "TieredWriter",
    "aggregated_partition_key",
    "build_daily_summary",
    "clean",
    "cleaned_partition_key",
    "deduplicate",
    "percentile",
    "quantile_sketch",
    "raw_partition_key",
]
