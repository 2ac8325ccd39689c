"""
Batch model: the rows extracted for one time window.
"""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from tiered_pipeline.utils.timeutil import ensure_utc

from .record import Record


class Batch(BaseModel):
    """
    Rows changed in ``(window_start, window_end]`` for a single source.

    Immutable once built; the raw tier stores it keyed by
    ``(source_id, window_start)``.

    Attributes:
        source_id: Source the rows came from
        window_start: Exclusive lower bound of the window
        window_end: Inclusive upper bound of the window
        rows: Records in source order
        extracted_at: Logical extraction time of the run
        expected_count: Row count reported by the source's count query
    """

    model_config = ConfigDict(frozen=True)

    source_id: str = Field(..., min_length=1)
    window_start: datetime
    window_end: datetime
    rows: tuple[Record, ...] = ()
    extracted_at: datetime
    expected_count: int = Field(..., ge=0)

    @field_validator("window_start", "window_end", "extracted_at")
    @classmethod
    def normalize_timestamps(cls, v: datetime) -> datetime:
        return ensure_utc(v)

    @model_validator(mode="after")
    def check_window(self) -> "Batch":
        if self.window_end <= self.window_start:
            raise ValueError("window_end must be after window_start")
        return self

    @property
    def row_count(self) -> int:
        return len(self.rows)
