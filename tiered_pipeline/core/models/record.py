"""
Record model: one changed row pulled from a source store.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from tiered_pipeline.utils.timeutil import ensure_utc

# Coarse value types a record field may hold
FieldValue = str | int | float | bool | None


class Record(BaseModel):
    """
    A domain-agnostic structured row.

    The fixed part (identifier, event timestamp, extraction time) is typed;
    everything else lives in ``fields``, an open map checked against the
    source's declared schema at validation time. Unknown fields are kept.

    Attributes:
        record_id: Unique business identifier (uniqueness enforced at the cleaned tier)
        event_time: Change timestamp the watermark is compared against
        extracted_at: When the record was pulled from the source
        fields: Named field values
    """

    model_config = ConfigDict(frozen=True)

    record_id: str = Field(..., min_length=1)
    event_time: datetime
    extracted_at: datetime | None = None
    fields: dict[str, FieldValue] = Field(default_factory=dict)

    @field_validator("event_time", "extracted_at")
    @classmethod
    def normalize_timestamps(cls, v: datetime | None) -> datetime | None:
        return ensure_utc(v) if v is not None else None

    def get(self, name: str, default: Any = None) -> Any:
        return self.fields.get(name, default)

    def has_field(self, name: str) -> bool:
        return name in self.fields

    def to_row(self) -> dict[str, Any]:
        """JSON-safe dictionary form used in tier payloads."""
        return self.model_dump(mode="json")

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "Record":
        return cls.model_validate(row)
