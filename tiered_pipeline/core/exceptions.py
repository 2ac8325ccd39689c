"""
Error taxonomy for the incremental pipeline.

Window-, partition- and rule-level failures are retried where they occur;
the errors below are what remains once retries are exhausted and are
handled by the orchestrator at run level.
"""

from datetime import datetime
from typing import Any


class PipelineError(Exception):
    """Base class for all pipeline errors."""


class SourceUnavailable(PipelineError):
    """Raised by a change source when the store cannot be reached. Retryable."""


class SinkUnavailable(PipelineError):
    """Raised by an object sink when storage cannot be reached. Retryable."""


class ExtractionFailed(PipelineError):
    """Raised when a window could not be extracted after all retries."""

    def __init__(
        self,
        source_id: str,
        message: str,
        window_start: datetime | None = None,
        window_end: datetime | None = None,
        attempts: int = 0,
    ):
        self.source_id = source_id
        self.window_start = window_start
        self.window_end = window_end
        self.attempts = attempts
        window = ""
        if window_start is not None:
            window = f" window [{window_start.isoformat()}, {window_end.isoformat() if window_end else '?'}]"
        super().__init__(f"[{source_id}]{window}: {message}")


class WriteFailed(PipelineError):
    """Raised when the object sink rejects a partition write after all retries."""

    def __init__(self, partition_key: str, message: str, attempts: int = 0):
        self.partition_key = partition_key
        self.attempts = attempts
        super().__init__(f"[{partition_key}] {message}")


class PartitionNotFound(PipelineError, KeyError):
    """Raised when a partition key does not exist in the sink."""

    def __init__(self, partition_key: str):
        self.partition_key = partition_key
        super().__init__(f"Partition not found: {partition_key}")

    def __str__(self) -> str:
        return self.args[0]


class ValidationBlocked(PipelineError):
    """Raised when a BLOCKING rule failed at a tier boundary."""

    def __init__(self, tier: str, results: list[Any]):
        self.tier = tier
        self.results = results
        names = ", ".join(r.rule_name for r in results) or "unknown"
        super().__init__(f"Validation blocked at {tier} tier by: {names}")


class WatermarkNotFound(PipelineError, LookupError):
    """Raised when a source has never been initialized in the watermark store."""

    def __init__(self, source_id: str):
        self.source_id = source_id
        super().__init__(f"No watermark for source '{source_id}'")


class WatermarkConflict(PipelineError):
    """Raised when a compare-and-set commit finds the watermark has moved."""

    def __init__(self, source_id: str, expected_version: int, actual_version: int | None):
        self.source_id = source_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"Watermark for '{source_id}' changed concurrently "
            f"(expected version {expected_version}, found {actual_version})"
        )
