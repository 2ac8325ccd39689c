"""
Change source interface.

A source answers exactly two questions for a time range ``(since, until]``:
which rows changed, and how many. The extractor needs nothing else.
"""

from abc import ABC, abstractmethod
from collections.abc import Iterable
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from tiered_pipeline.core.models import FieldValue, Record
from tiered_pipeline.utils.timeutil import ensure_utc, parse_timestamp


class ChangeSource(ABC):
    """
    Queryable store exposing change capture for one source table.

    Implementations raise ``SourceUnavailable`` when the store cannot be
    reached; the extractor retries those.
    """

    @abstractmethod
    def fetch_changes(self, since: datetime, until: datetime) -> Iterable[Record]:
        """
        Rows whose change timestamp is in ``(since, until]``, ordered by
        timestamp then identifier.
        """

    @abstractmethod
    def count_changes(self, since: datetime, until: datetime) -> int:
        """Number of rows whose change timestamp is in ``(since, until]``."""

    def close(self) -> None:
        """Release any resources held by the source."""


def to_field_value(value: Any) -> FieldValue:
    """
    Map driver-native values onto the coarse record value types.

    Integral ``Decimal`` values (NUMERIC columns with no fractional part)
    become exact ints. Fractional ones become floats and keep about 15
    significant digits; NaN and infinities are kept as their string form.
    """
    if value is None or isinstance(value, str | bool | int | float):
        return value
    if isinstance(value, Decimal):
        if not value.is_finite():
            return str(value)
        if value == value.to_integral_value():
            return int(value)
        return float(value)
    if isinstance(value, datetime):
        return ensure_utc(value).isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, bytes):
        return value.hex()
    return str(value)


def row_to_record(row: dict[str, Any], identifier_field: str, timestamp_field: str) -> Record:
    """
    Build a Record from a source row.

    The identifier and timestamp columns become the record's fixed fields;
    every other column goes into the field map.

    Raises:
        ValueError: If the identifier or timestamp column is missing or null
    """
    record_id = row.get(identifier_field)
    if record_id is None or record_id == "":
        raise ValueError(f"Row is missing identifier column '{identifier_field}'")

    timestamp = row.get(timestamp_field)
    if timestamp is None:
        raise ValueError(f"Row {record_id} is missing timestamp column '{timestamp_field}'")
    if isinstance(timestamp, str):
        event_time = parse_timestamp(timestamp)
    elif isinstance(timestamp, datetime):
        event_time = ensure_utc(timestamp)
    else:
        raise ValueError(f"Row {record_id}: unsupported timestamp type {type(timestamp).__name__}")

    fields = {
        name: to_field_value(value)
        for name, value in row.items()
        if name not in (identifier_field, timestamp_field)
    }
    return Record(record_id=str(record_id), event_time=event_time, fields=fields)
