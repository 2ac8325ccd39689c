"""
RunSummary model: the structured outcome of one pipeline run.
"""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field

from .anomaly import AnomalyRecord
from .quality_score import QualityScore
from .validation_result import TierValidationReport, ValidationResult


class RunStatus(str, Enum):
    SUCCEEDED = "SUCCEEDED"
    SKIPPED = "SKIPPED"  # nothing to extract
    BLOCKED = "BLOCKED"  # a BLOCKING rule failed
    CONFLICT = "CONFLICT"  # watermark moved under us
    FAILED = "FAILED"  # extraction/write failure


EXIT_CODES = {
    RunStatus.SUCCEEDED: 0,
    RunStatus.SKIPPED: 0,
    RunStatus.FAILED: 1,
    RunStatus.BLOCKED: 2,
    RunStatus.CONFLICT: 3,
}


class RunSummary(BaseModel):
    """
    Produced for every run regardless of outcome.

    Attributes:
        run_id: Unique run identifier
        source_id: Source that was processed
        as_of: Logical run time
        status: Final status
        rows_processed: Rows extracted into the raw tier
        quality_score: Quality score (None if the run stopped before scoring)
        anomalies: Anomalies detected on the aggregated tier
        validation_reports: One report per tier gate that ran
        blocking_failures: Rules that blocked, with their details
        watermark_before: Watermark read at run start
        watermark_after: Watermark after the run (equal to before unless committed)
        window_count: Extraction windows planned
        duration_seconds: Wall-clock duration
        error: Error message for non-successful runs
    """

    run_id: str
    source_id: str
    as_of: datetime
    status: RunStatus
    rows_processed: int = 0
    quality_score: QualityScore | None = None
    anomalies: list[AnomalyRecord] = Field(default_factory=list)
    validation_reports: list[TierValidationReport] = Field(default_factory=list)
    blocking_failures: list[ValidationResult] = Field(default_factory=list)
    watermark_before: datetime | None = None
    watermark_after: datetime | None = None
    window_count: int = 0
    partitions_written: list[str] = Field(default_factory=list)
    duration_seconds: float = 0.0
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == RunStatus.SUCCEEDED

    @property
    def exit_code(self) -> int:
        return EXIT_CODES[self.status]
