"""
In-memory change source.
"""

import threading
from collections.abc import Iterable
from datetime import datetime

from tiered_pipeline.core.models import Record
from tiered_pipeline.utils.timeutil import ensure_utc

from .base import ChangeSource


class InMemoryChangeSource(ChangeSource):
    """
    Change source over a list of records held in memory.

    Used for tests, demos and replaying exported change sets.
    """

    def __init__(self, records: Iterable[Record] = ()):
        self._lock = threading.Lock()
        self._records: list[Record] = list(records)

    def add(self, records: Iterable[Record]) -> None:
        with self._lock:
            self._records.extend(records)

    def _select(self, since: datetime, until: datetime) -> list[Record]:
        since, until = ensure_utc(since), ensure_utc(until)
        with self._lock:
            selected = [r for r in self._records if since < r.event_time <= until]
        return sorted(selected, key=lambda r: (r.event_time, r.record_id))

    def fetch_changes(self, since: datetime, until: datetime) -> list[Record]:
        return self._select(since, until)

    def count_changes(self, since: datetime, until: datetime) -> int:
        return len(self._select(since, until))
