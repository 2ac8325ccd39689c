"""
Aggregated-tier artifact: one compact summary per source and date.
"""

from datetime import date

from pydantic import BaseModel, Field


class MetricSummary(BaseModel):
    """Distribution summary of one numeric metric within a group."""

    count: int = Field(..., ge=0)
    mean: float | None = None
    p50: float | None = None
    p95: float | None = None
    p99: float | None = None
    min: float | None = None
    max: float | None = None


class GroupSummary(BaseModel):
    """Counts and metrics for one value of the dimension field."""

    dimension_value: str
    row_count: int = Field(..., ge=0)
    error_count: int = Field(0, ge=0)
    error_rate: float | None = None
    metrics: dict[str, MetricSummary] = Field(default_factory=dict)


class DailySummary(BaseModel):
    """
    Summary of a cleaned partition.

    ``distributions`` holds a 101-point quantile sketch per numeric metric
    (q0, q1, ..., q100) so the day-over-day distributional check does not
    need the cleaned rows.
    """

    source_id: str
    partition_date: date
    dimension_field: str | None = None
    total_rows: int = Field(..., ge=0)
    error_count: int = Field(0, ge=0)
    error_rate: float | None = None
    groups: list[GroupSummary] = Field(default_factory=list)
    distributions: dict[str, list[float]] = Field(default_factory=dict)
