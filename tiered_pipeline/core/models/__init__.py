"""
Core data models for the incremental extraction pipeline.

All models use Pydantic for runtime validation and type safety.
"""

from .anomaly import AnomalyRecord, AnomalySeverity
from .batch import Batch
from .manifest import ManifestEntry, Tier
from .quality_score import QualityScore
from .record import FieldValue, Record
from .run_summary import RunStatus, RunSummary
from .settings import (
    AnomalySettings,
    ExtractorSettings,
    PipelineSettings,
    QualityWeights,
    RuleOverride,
    SourceConfig,
    ValidationSettings,
    ValidationThresholds,
    WriterSettings,
)
from .summary import DailySummary, GroupSummary, MetricSummary
from .validation_result import (
    GateState,
    RuleCategory,
    Severity,
    TierValidationReport,
    ValidationResult,
)
from .watermark import Watermark, WatermarkCommit, WatermarkStatus

__all__ = [
    "AnomalyRecord",
    "AnomalySeverity",
    "AnomalySettings",
    "Batch",
    "DailySummary",
    "ExtractorSettings",
    "FieldValue",
    "GateState",
    "GroupSummary",
    "ManifestEntry",
    "MetricSummary",
    "PipelineSettings",
    "QualityScore",
    "QualityWeights",
    "Record",
    "RuleCategory",
    "RuleOverride",
    "RunStatus",
    "RunSummary",
    "Severity",
    "SourceConfig",
    "Tier",
    "TierValidationReport",
    "ValidationResult",
    "ValidationSettings",
    "ValidationThresholds",
    "Watermark",
    "WatermarkCommit",
    "WatermarkStatus",
    "WriterSettings",
]
