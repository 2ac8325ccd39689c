"""
Validation outcomes: per-rule results and the per-tier gate report.
"""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from tiered_pipeline.utils.timeutil import utc_now

from .manifest import Tier


class Severity(str, Enum):
    """BLOCKING failures halt tier advancement; the others are recorded only."""

    BLOCKING = "BLOCKING"
    WARNING = "WARNING"
    INFO = "INFO"


class RuleCategory(str, Enum):
    """Rule categories. Declaration order is evaluation order."""

    SCHEMA = "schema"
    COMPLETENESS = "completeness"
    RANGE = "range"
    UNIQUENESS = "uniqueness"

    @classmethod
    def ordered(cls) -> list["RuleCategory"]:
        return list(cls)


class GateState(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    PASSED = "PASSED"
    FAILED = "FAILED"


_TRANSITIONS = {
    GateState.PENDING: {GateState.RUNNING},
    GateState.RUNNING: {GateState.PASSED, GateState.FAILED},
    GateState.PASSED: set(),
    GateState.FAILED: set(),
}


class ValidationResult(BaseModel):
    """
    Outcome of evaluating one rule against one tier.

    Attributes:
        tier: Tier that was validated
        rule_name: Rule identifier
        category: Rule category
        passed: Whether the rule passed
        severity: Consequence of a failure
        message: Human-readable summary
        details: Counts and thresholds behind the verdict
    """

    tier: Tier
    rule_name: str = Field(..., min_length=1)
    category: RuleCategory
    passed: bool
    severity: Severity
    message: str = ""
    details: dict[str, Any] = Field(default_factory=dict)

    @property
    def is_blocking_failure(self) -> bool:
        return not self.passed and self.severity == Severity.BLOCKING

    class Config:
        json_schema_extra = {
            "example": {
                "tier": "raw",
                "rule_name": "row_count_tolerance",
                "category": "completeness",
                "passed": False,
                "severity": "BLOCKING",
                "message": "Row count deviates 7.10% from expected (tolerance 5.00%)",
                "details": {"observed": 929, "expected": 1000, "tolerance": 0.05}
            }
        }


class TierValidationReport(BaseModel):
    """
    State machine for one tier transition: PENDING -> RUNNING -> PASSED|FAILED.

    Collects every rule result so a run summary can say exactly which
    rule(s) blocked and why.
    """

    tier: Tier
    state: GateState = GateState.PENDING
    results: list[ValidationResult] = Field(default_factory=list)
    skipped_rules: list[str] = Field(default_factory=list)
    started_at: datetime | None = None
    finished_at: datetime | None = None

    def _transition(self, target: GateState) -> None:
        if target not in _TRANSITIONS[self.state]:
            raise ValueError(f"Illegal gate transition {self.state.value} -> {target.value}")
        self.state = target

    def start(self) -> None:
        self._transition(GateState.RUNNING)
        self.started_at = utc_now()

    def record(self, result: ValidationResult) -> None:
        if self.state != GateState.RUNNING:
            raise ValueError(f"Cannot record results while gate is {self.state.value}")
        self.results.append(result)

    def finish(self) -> GateState:
        self._transition(GateState.FAILED if self.blocking_failures else GateState.PASSED)
        self.finished_at = utc_now()
        return self.state

    @property
    def passed(self) -> bool:
        return self.state == GateState.PASSED

    @property
    def blocking_failures(self) -> list[ValidationResult]:
        return [r for r in self.results if r.is_blocking_failure]

    @property
    def warnings(self) -> list[ValidationResult]:
        return [r for r in self.results if not r.passed and r.severity == Severity.WARNING]
