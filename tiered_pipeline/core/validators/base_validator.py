"""
Base interface for tier validation rules.

A rule is a pure function over a TierSnapshot (the tier's manifests plus a
full scan of its rows or summaries) returning a ValidationResult. Rules
never raise for data problems; they report them.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from fractions import Fraction
from typing import Any

from tiered_pipeline.core.models import (
    DailySummary,
    ManifestEntry,
    Record,
    RuleCategory,
    Severity,
    Tier,
    ValidationResult,
    ValidationThresholds,
)
from tiered_pipeline.core.schema import DeclaredSchema


@dataclass
class TierSnapshot:
    """
    Everything a rule may look at for one tier of one run.

    Attributes:
        tier: Tier under validation
        source_id: Source identifier
        manifests: Manifests of every partition written for this tier
        records: Rows of those partitions (raw and cleaned tiers)
        summaries: Daily summaries (aggregated tier)
        schema: Declared schema of the source
        thresholds: Validation tolerances of the source
    """

    tier: Tier
    source_id: str
    manifests: list[ManifestEntry] = field(default_factory=list)
    records: list[Record] = field(default_factory=list)
    summaries: list[DailySummary] = field(default_factory=list)
    schema: DeclaredSchema = field(default_factory=DeclaredSchema)
    thresholds: ValidationThresholds = field(default_factory=ValidationThresholds)

    @property
    def observed_count(self) -> int:
        return sum(m.row_count for m in self.manifests)

    @property
    def expected_count(self) -> int | None:
        """Sum of manifest expected counts, or None if any partition lacks one."""
        if any(m.expected_count is None for m in self.manifests):
            return None
        return sum(m.expected_count for m in self.manifests)


def exact(value: float) -> Fraction:
    """Exact rational form of a configured threshold (``0.05`` is exactly 1/20)."""
    return Fraction(str(value))


def rate_within(count: int, total: int, threshold: float) -> bool:
    """True when ``count / total <= threshold``. An empty population passes."""
    if total == 0:
        return True
    return Fraction(count, total) <= exact(threshold)


def within_tolerance(observed: int, expected: int, tolerance: float) -> bool:
    """
    Relative deviation check with an inclusive boundary.

    An expected count of zero only tolerates an observed count of zero.
    """
    if expected == 0:
        return observed == 0
    return Fraction(abs(observed - expected), expected) <= exact(tolerance)


def percent(count: int, total: int) -> float:
    return 100.0 * count / total if total else 0.0


class ValidationRule(ABC):
    """
    Abstract base class for all tier rules.

    Subclasses set ``name``, ``category``, ``tiers`` and ``default_severity``
    and implement ``check``.
    """

    name: str = ""
    category: RuleCategory = RuleCategory.SCHEMA
    tiers: frozenset[Tier] = frozenset()
    default_severity: Severity = Severity.BLOCKING

    def __init__(self, severity: Severity | None = None):
        """
        Initialize rule.

        Args:
            severity: Override of the rule's default severity for every tier
        """
        self.severity_override = severity

    def severity_for(self, tier: Tier) -> Severity:
        return self.severity_override or self.default_severity

    def applies_to(self, tier: Tier) -> bool:
        return tier in self.tiers

    def evaluate(self, snapshot: TierSnapshot) -> ValidationResult:
        passed, message, details = self.check(snapshot)
        return ValidationResult(
            tier=snapshot.tier,
            rule_name=self.name,
            category=self.category,
            passed=passed,
            severity=self.severity_for(snapshot.tier),
            message=message,
            details=details,
        )

    @abstractmethod
    def check(self, snapshot: TierSnapshot) -> tuple[bool, str, dict[str, Any]]:
        """
        Evaluate the rule.

        Returns:
            Tuple of (passed, message, details)
        """

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(name={self.name}, severity={self.severity_override})"
