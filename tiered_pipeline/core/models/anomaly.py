"""
AnomalyRecord model: an informative, non-blocking finding on the aggregated tier.
"""

from datetime import date
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class AnomalySeverity(str, Enum):
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


class AnomalyRecord(BaseModel):
    """
    Created by the anomaly detector; never mutated.

    Attributes:
        metric_name: Metric that looked unusual (e.g. "row_count", "latency_ms")
        observed_value: Today's value
        baseline_mean: Mean of the baseline
        baseline_stddev: Standard deviation of the baseline
        z_score: Standard score (volume detector only)
        severity: MEDIUM or HIGH
        detector: "volume" or "distribution"
        statistic: KS statistic (distribution detector only)
    """

    model_config = ConfigDict(frozen=True)

    metric_name: str
    observed_value: float
    baseline_mean: float
    baseline_stddev: float = Field(..., ge=0.0)
    z_score: float | None = None
    severity: AnomalySeverity
    detector: str
    source_id: str
    partition_date: date
    statistic: float | None = None
    message: str = ""
