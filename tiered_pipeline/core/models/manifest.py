"""
ManifestEntry model: the side record emitted by every tier write.
"""

from datetime import date, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from tiered_pipeline.utils.timeutil import utc_now


class Tier(str, Enum):
    """Storage stages, in pipeline order."""

    RAW = "raw"
    CLEANED = "cleaned"
    AGGREGATED = "aggregated"


class ManifestEntry(BaseModel):
    """
    Describes one written partition. Consumed by the validation engine.

    Attributes:
        tier: Tier the partition belongs to
        partition_key: Sink key of the partition
        row_count: Rows (or groups, for the aggregated tier) written
        byte_size: Payload size in bytes
        checksum: SHA-256 of the payload
        source_id: Source the partition belongs to
        window_start: Raw tier only: window lower bound
        window_end: Raw tier only: window upper bound
        partition_date: Cleaned/aggregated tiers: calendar date
        expected_count: Raw tier only: count reported by the source
        written_at: When the partition was written
        extra: Tier-specific counters (duplicates removed, coercion failures, ...)
    """

    tier: Tier
    partition_key: str = Field(..., min_length=1)
    row_count: int = Field(..., ge=0)
    byte_size: int = Field(..., ge=0)
    checksum: str
    source_id: str
    window_start: datetime | None = None
    window_end: datetime | None = None
    partition_date: date | None = None
    expected_count: int | None = None
    written_at: datetime = Field(default_factory=utc_now)
    extra: dict[str, Any] = Field(default_factory=dict)
