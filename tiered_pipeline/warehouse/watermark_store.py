"""
Watermark store: the single source of truth for what has been extracted.

``commit`` is a compare-and-set on the watermark's version, so two runs that
read the same watermark cannot both advance it.
"""

import threading
from abc import ABC, abstractmethod
from datetime import datetime

from tiered_pipeline.core.exceptions import WatermarkConflict, WatermarkNotFound
from tiered_pipeline.core.models import (
    QualityScore,
    Watermark,
    WatermarkCommit,
    WatermarkStatus,
)
from tiered_pipeline.utils.timeutil import ensure_utc, utc_now
from tiered_pipeline.utils.validation import validate_limit, validate_source_id


class WatermarkStore(ABC):
    """Narrow interface over durable per-source watermark state."""

    @abstractmethod
    def get(self, source_id: str) -> Watermark:
        """
        Return the current watermark.

        Raises:
            WatermarkNotFound: If the source was never initialized
        """

    @abstractmethod
    def initialize(self, source_id: str, initial_timestamp: datetime) -> Watermark:
        """
        Create a PENDING watermark. Returns the existing one if already present.
        """

    @abstractmethod
    def commit(
        self,
        source_id: str,
        new_timestamp: datetime,
        expected: Watermark,
        *,
        run_id: str | None = None,
        quality_score: QualityScore | None = None,
    ) -> Watermark:
        """
        Advance the watermark if it still matches ``expected``.

        Args:
            source_id: Source to commit
            new_timestamp: New ``last_extracted_at``
            expected: Watermark the caller read before running
            run_id: Run identifier recorded in the commit history
            quality_score: Run quality score persisted with the commit

        Returns:
            The committed watermark

        Raises:
            WatermarkNotFound: If the source was never initialized
            WatermarkConflict: If another commit happened since ``expected`` was read
            ValueError: If new_timestamp is earlier than the expected watermark
        """

    @abstractmethod
    def history(self, source_id: str, limit: int = 100) -> list[WatermarkCommit]:
        """Commit history, newest first."""

    @staticmethod
    def _check_commit(source_id: str, new_timestamp: datetime, expected: Watermark) -> datetime:
        validate_source_id(source_id)
        if expected.source_id != source_id:
            raise ValueError(
                f"Expected watermark belongs to '{expected.source_id}', not '{source_id}'"
            )
        new_timestamp = ensure_utc(new_timestamp)
        if new_timestamp < expected.last_extracted_at:
            raise ValueError(
                f"Watermark for '{source_id}' cannot move backwards "
                f"({new_timestamp.isoformat()} < {expected.last_extracted_at.isoformat()})"
            )
        return new_timestamp


class InMemoryWatermarkStore(WatermarkStore):
    """Thread-safe in-process store, used by tests and local runs."""

    def __init__(self):
        self._lock = threading.Lock()
        self._watermarks: dict[str, Watermark] = {}
        self._history: dict[str, list[WatermarkCommit]] = {}

    def get(self, source_id: str) -> Watermark:
        with self._lock:
            try:
                return self._watermarks[source_id].model_copy()
            except KeyError:
                raise WatermarkNotFound(source_id) from None

    def initialize(self, source_id: str, initial_timestamp: datetime) -> Watermark:
        source_id = validate_source_id(source_id)
        with self._lock:
            existing = self._watermarks.get(source_id)
            if existing is not None:
                return existing.model_copy()
            watermark = Watermark(
                source_id=source_id,
                last_extracted_at=initial_timestamp,
                status=WatermarkStatus.PENDING,
            )
            self._watermarks[source_id] = watermark
            self._history[source_id] = []
            return watermark.model_copy()

    def commit(
        self,
        source_id: str,
        new_timestamp: datetime,
        expected: Watermark,
        *,
        run_id: str | None = None,
        quality_score: QualityScore | None = None,
    ) -> Watermark:
        new_timestamp = self._check_commit(source_id, new_timestamp, expected)
        with self._lock:
            current = self._watermarks.get(source_id)
            if current is None:
                raise WatermarkNotFound(source_id)
            if current.version != expected.version:
                raise WatermarkConflict(source_id, expected.version, current.version)

            committed = Watermark(
                source_id=source_id,
                last_extracted_at=new_timestamp,
                last_commit_at=utc_now(),
                status=WatermarkStatus.COMMITTED,
                version=current.version + 1,
            )
            self._watermarks[source_id] = committed
            self._history[source_id].append(
                WatermarkCommit(
                    source_id=source_id,
                    run_id=run_id,
                    version=committed.version,
                    previous_extracted_at=current.last_extracted_at,
                    last_extracted_at=new_timestamp,
                    committed_at=committed.last_commit_at,
                    quality_score=quality_score,
                )
            )
            return committed.model_copy()

    def history(self, source_id: str, limit: int = 100) -> list[WatermarkCommit]:
        validate_limit(limit)
        with self._lock:
            if source_id not in self._watermarks:
                raise WatermarkNotFound(source_id)
            return list(reversed(self._history[source_id]))[:limit]
