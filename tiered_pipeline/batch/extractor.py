"""
Change extractor: pulls records modified after the watermark, one time
window at a time.

Windows are aligned to multiples of the window size so that re-running the
same delta always produces the same raw partition keys. Each window is the
unit of retry: a failed window is retried on its own, windows already
written stay valid.
"""

import time
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from tiered_pipeline.core.exceptions import ExtractionFailed, SourceUnavailable
from tiered_pipeline.core.models import Batch, ExtractorSettings
from tiered_pipeline.observability.logger import get_logger
from tiered_pipeline.observability.metrics import record_retry
from tiered_pipeline.utils.retry import MaxRetriesExceeded, RetryPolicy, retry_with_backoff
from tiered_pipeline.utils.timeutil import ensure_utc, utc_now

from .readers import ChangeSource

logger = get_logger(__name__)

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass(frozen=True)
class TimeWindow:
    """Half-open on the left: covers ``(start, end]``."""

    start: datetime
    end: datetime

    def __post_init__(self):
        if self.end <= self.start:
            raise ValueError(f"Empty window: {self.start} -> {self.end}")


def next_boundary(moment: datetime, window_size: timedelta) -> datetime:
    """First aligned boundary strictly after ``moment``."""
    elapsed = ensure_utc(moment) - _EPOCH
    return _EPOCH + (elapsed // window_size + 1) * window_size


def plan_windows(from_ts: datetime, to_ts: datetime, window_size: timedelta) -> list[TimeWindow]:
    """
    Split ``(from_ts, to_ts]`` into aligned windows.

    The first and last windows may be shorter than ``window_size``.
    Returns an empty list when ``to_ts <= from_ts``.
    """
    from_ts, to_ts = ensure_utc(from_ts), ensure_utc(to_ts)
    windows = []
    start = from_ts
    while start < to_ts:
        end = min(next_boundary(start, window_size), to_ts)
        windows.append(TimeWindow(start, end))
        start = end
    return windows


class ChangeExtractor:
    """
    Produces Batches for a source, one per time window.
    """

    def __init__(
        self,
        source: ChangeSource,
        source_id: str,
        settings: ExtractorSettings | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = utc_now,
    ):
        """
        Initialize extractor.

        Args:
            source: Change source to read from
            source_id: Source identifier stamped on every batch
            settings: Window size, safety lag, retry and timeout settings
            sleep: Sleep function used between retries
            clock: Current-time function used for the default upper bound
        """
        self.source = source
        self.source_id = source_id
        self.settings = settings or ExtractorSettings()
        self.sleep = sleep
        self.clock = clock
        self.retry_policy = RetryPolicy(
            max_attempts=self.settings.max_attempts,
            base_delay=self.settings.base_delay,
            max_delay=self.settings.max_delay,
            timeout=self.settings.window_timeout,
        )

    def upper_bound(self, as_of: datetime | None = None) -> datetime:
        """Latest timestamp safe to read: ``as_of`` (default now) minus the safety lag."""
        reference = ensure_utc(as_of) if as_of is not None else self.clock()
        return reference - self.settings.safety_lag

    def plan(self, from_ts: datetime, to_ts: datetime | None = None) -> list[TimeWindow]:
        return plan_windows(from_ts, to_ts if to_ts is not None else self.upper_bound(), self.settings.window_size)

    def extract(
        self,
        from_ts: datetime,
        to_ts: datetime | None = None,
        extracted_at: datetime | None = None,
    ) -> Iterator[Batch]:
        """
        Lazily yield one Batch per window of ``(from_ts, to_ts]``.

        The sequence is finite and restartable: calling ``extract`` again
        with the same arguments replays the same windows.

        Args:
            from_ts: Exclusive lower bound (normally the committed watermark)
            to_ts: Inclusive upper bound (defaults to now minus the safety lag)
            extracted_at: Logical extraction time stamped on the records

        Raises:
            ExtractionFailed: If a window cannot be read after all retries
        """
        extracted_at = ensure_utc(extracted_at) if extracted_at is not None else self.clock()
        for window in self.plan(from_ts, to_ts):
            yield self.extract_window(window, extracted_at)

    def extract_window(self, window: TimeWindow, extracted_at: datetime) -> Batch:
        """
        Extract a single window with retries.

        Raises:
            ExtractionFailed: If the window cannot be read after all retries
        """
        def on_retry(attempt: int, error: BaseException) -> None:
            record_retry(self.source_id, "extract")
            logger.warning(
                f"Retrying window {window.start.isoformat()} for {self.source_id} "
                f"(attempt {attempt} failed: {error})",
                extra={"source_id": self.source_id, "attempt": attempt},
            )

        try:
            return retry_with_backoff(
                lambda: self._read_window(window, extracted_at),
                policy=self.retry_policy,
                retry_on=(SourceUnavailable, TimeoutError),
                on_retry=on_retry,
                sleep=self.sleep,
            )
        except MaxRetriesExceeded as e:
            raise ExtractionFailed(
                self.source_id,
                f"source unavailable after {e.attempts} attempts: {e.last_error}",
                window_start=window.start,
                window_end=window.end,
                attempts=e.attempts,
            ) from e

    def _read_window(self, window: TimeWindow, extracted_at: datetime) -> Batch:
        expected_count = self.source.count_changes(window.start, window.end)
        rows = []
        outside = 0
        for record in self.source.fetch_changes(window.start, window.end):
            if not window.start < record.event_time <= window.end:
                outside += 1
                continue
            rows.append(record.model_copy(update={"extracted_at": extracted_at}))

        if outside:
            logger.warning(
                f"Dropped {outside} rows outside window {window.start.isoformat()} for {self.source_id}",
                extra={"source_id": self.source_id, "dropped": outside},
            )

        return Batch(
            source_id=self.source_id,
            window_start=window.start,
            window_end=window.end,
            rows=tuple(rows),
            extracted_at=extracted_at,
            expected_count=expected_count,
        )
