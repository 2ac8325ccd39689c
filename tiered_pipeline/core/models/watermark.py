"""
Watermark model: the last successfully extracted point of a source.
"""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field, field_validator

from tiered_pipeline.utils.timeutil import ensure_utc, utc_now

from .quality_score import QualityScore


class WatermarkStatus(str, Enum):
    """PENDING until the first full successful run commits it."""

    PENDING = "PENDING"
    COMMITTED = "COMMITTED"


class Watermark(BaseModel):
    """
    Extraction boundary of one source.

    Attributes:
        source_id: Source table identifier (PK)
        last_extracted_at: Everything up to and including this point is extracted
        last_commit_at: Wall-clock time of the last commit (or initialization)
        status: PENDING or COMMITTED
        version: Optimistic concurrency token, incremented on every commit
    """

    source_id: str = Field(..., min_length=1, max_length=255)
    last_extracted_at: datetime
    last_commit_at: datetime = Field(default_factory=utc_now)
    status: WatermarkStatus = WatermarkStatus.PENDING
    version: int = Field(0, ge=0)

    @field_validator("last_extracted_at", "last_commit_at")
    @classmethod
    def normalize_timestamps(cls, v: datetime) -> datetime:
        return ensure_utc(v)

    class Config:
        json_schema_extra = {
            "example": {
                "source_id": "orders",
                "last_extracted_at": "2025-11-17T00:00:00Z",
                "last_commit_at": "2025-11-17T00:07:12Z",
                "status": "COMMITTED",
                "version": 42
            }
        }


class WatermarkCommit(BaseModel):
    """
    Audit entry written alongside every watermark commit.

    Holds the run's quality score so trends can be queried per source.
    """

    source_id: str
    run_id: str | None = None
    version: int
    previous_extracted_at: datetime
    last_extracted_at: datetime
    committed_at: datetime = Field(default_factory=utc_now)
    quality_score: QualityScore | None = None

    @field_validator("previous_extracted_at", "last_extracted_at", "committed_at")
    @classmethod
    def normalize_timestamps(cls, v: datetime) -> datetime:
        return ensure_utc(v)
