"""
QualityScore model: per-run data quality summary.
"""

from pydantic import BaseModel, Field


class QualityScore(BaseModel):
    """
    Completeness, accuracy and consistency of a run, each in [0, 100].

    Attributes:
        completeness: Share of expected data that arrived intact
        accuracy: Share of values within declared types and ranges
        consistency: Share of identifiers/categories consistent across tiers
        overall: Weighted combination of the three
    """

    completeness: float = Field(..., ge=0.0, le=100.0)
    accuracy: float = Field(..., ge=0.0, le=100.0)
    consistency: float = Field(..., ge=0.0, le=100.0)
    overall: float = Field(..., ge=0.0, le=100.0)

    class Config:
        json_schema_extra = {
            "example": {
                "completeness": 99.8,
                "accuracy": 100.0,
                "consistency": 97.5,
                "overall": 99.2
            }
        }
