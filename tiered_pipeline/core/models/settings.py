"""
Pipeline configuration models.

Loaded from YAML by ``RuleConfigLoader``; every threshold has a default so a
source only declares what differs.
"""

from datetime import timedelta
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

from tiered_pipeline.core.schema import DeclaredSchema

from .validation_result import Severity


class ValidationThresholds(BaseModel):
    """
    Tolerances applied by the validation rules. All are fractions of rows.

    Boundaries are inclusive: a deviation exactly equal to the tolerance passes.
    """

    row_count_tolerance: float = Field(0.05, ge=0.0)
    null_threshold: float = Field(0.001, ge=0.0, le=1.0)
    schema_threshold: float = Field(0.001, ge=0.0, le=1.0)
    range_tolerance: float = Field(0.001, ge=0.0, le=1.0)


class RuleOverride(BaseModel):
    """Per-source override of a rule's severity or enabled flag."""

    severity: Severity | None = None
    enabled: bool = True


class SourceConfig(BaseModel):
    """
    Everything the pipeline needs to know about one source table.

    Attributes:
        source_id: Source identifier
        identifier_field: Source column holding the record identifier
        timestamp_field: Source column holding the change timestamp
        schema: Declared record fields
        dimension_field: Categorical field the aggregated tier groups by
        metric_fields: Numeric (latency-like) fields summarized per group
        error_field: Boolean (error-like) field turned into error rates
        thresholds: Validation tolerances
        rules: Severity / enabled overrides keyed by rule name
        connection: Source collaborator settings (type plus its parameters)
    """

    model_config = ConfigDict(populate_by_name=True)

    source_id: str = Field(..., min_length=1)
    identifier_field: str = "id"
    timestamp_field: str = "updated_at"
    declared_schema: DeclaredSchema = Field(default_factory=DeclaredSchema, alias="schema")
    dimension_field: str | None = None
    metric_fields: list[str] = Field(default_factory=list)
    error_field: str | None = None
    thresholds: ValidationThresholds = Field(default_factory=ValidationThresholds)
    rules: dict[str, RuleOverride] = Field(default_factory=dict)
    connection: dict[str, Any] = Field(default_factory=dict)


class ExtractorSettings(BaseModel):
    window_size: timedelta = timedelta(hours=1)
    safety_lag: timedelta = timedelta(minutes=5)
    max_attempts: int = Field(3, ge=1)
    base_delay: float = Field(1.0, ge=0.0)
    max_delay: float = Field(30.0, ge=0.0)
    window_timeout: float | None = Field(300.0, gt=0.0)

    @model_validator(mode="after")
    def check_window_size(self) -> "ExtractorSettings":
        if self.window_size <= timedelta(0) or self.window_size > timedelta(days=1):
            raise ValueError("window_size must be positive and at most one day")
        if timedelta(days=1) % self.window_size:
            raise ValueError("window_size must divide a day evenly")
        return self


class WriterSettings(BaseModel):
    max_attempts: int = Field(3, ge=1)
    base_delay: float = Field(0.5, ge=0.0)
    max_delay: float = Field(10.0, ge=0.0)


class ValidationSettings(BaseModel):
    rule_timeout: float | None = Field(60.0, gt=0.0)
    max_attempts: int = Field(2, ge=1)
    base_delay: float = Field(0.5, ge=0.0)


class AnomalySettings(BaseModel):
    """
    Attributes:
        baseline_days: Trailing daily summaries used as the volume baseline
        z_threshold: |z| above this flags a volume anomaly
        high_z_threshold: |z| above this escalates it to HIGH
        similarity_floor: Distributions less similar than this (1 - KS) are flagged
        min_baseline_points: Fewer baseline points than this skips the volume check
    """

    baseline_days: int = Field(30, ge=1)
    z_threshold: float = Field(2.0, gt=0.0)
    high_z_threshold: float = Field(3.0, gt=0.0)
    similarity_floor: float = Field(0.8, ge=0.0, le=1.0)
    min_baseline_points: int = Field(2, ge=2)


class QualityWeights(BaseModel):
    completeness: float = Field(0.4, ge=0.0)
    accuracy: float = Field(0.35, ge=0.0)
    consistency: float = Field(0.25, ge=0.0)

    @model_validator(mode="after")
    def check_total(self) -> "QualityWeights":
        total = self.completeness + self.accuracy + self.consistency
        if abs(total - 1.0) > 1e-9:
            raise ValueError(f"Quality weights must sum to 1.0, got {total}")
        return self


class PipelineSettings(BaseModel):
    """Top-level configuration."""

    max_workers: int = Field(4, ge=1)
    extractor: ExtractorSettings = Field(default_factory=ExtractorSettings)
    writer: WriterSettings = Field(default_factory=WriterSettings)
    validation: ValidationSettings = Field(default_factory=ValidationSettings)
    anomaly: AnomalySettings = Field(default_factory=AnomalySettings)
    quality_weights: QualityWeights = Field(default_factory=QualityWeights)
    sources: dict[str, SourceConfig] = Field(default_factory=dict)

    def source(self, source_id: str) -> SourceConfig:
        try:
            return self.sources[source_id]
        except KeyError:
            raise KeyError(f"Source '{source_id}' is not configured") from None
