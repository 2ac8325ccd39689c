"""
Quality scoring: turns a run's validation results into a QualityScore.

Each rule result contributes ``100 * (1 - share of bad rows)`` to one
component. A failed WARNING result costs an extra ``WARNING_PENALTY``
points. INFO results (raw-tier duplicates) are informative and ignored.
A component with no contributing results scores 100.
"""

from collections.abc import Iterable

from tiered_pipeline.core.models import QualityScore, QualityWeights, Severity, ValidationResult

WARNING_PENALTY = 5.0

# Component each rule feeds
RULE_COMPONENTS = {
    "row_count_tolerance": "completeness",
    "null_rate": "completeness",
    "summary_completeness": "completeness",
    "schema_conformance": "accuracy",
    "range_bounds": "accuracy",
    "summary_schema": "accuracy",
    "unique_identifiers": "consistency",
    "allowed_values": "consistency",
}


def _share(numerator: float, denominator: float) -> float:
    return min(1.0, numerator / denominator) if denominator else 0.0


def bad_share(result: ValidationResult) -> float:
    """Fraction of the tier a result found at fault, in [0, 1]."""
    details = result.details
    total = details.get("total_rows", 0)

    if result.rule_name == "row_count_tolerance" and "deviation" in details:
        return min(1.0, details["deviation"])
    if result.rule_name == "null_rate":
        return _share(max(details.get("null_counts", {}).values(), default=0), total)
    if result.rule_name == "schema_conformance":
        return _share(details.get("violating_rows", 0), total)
    if result.rule_name == "range_bounds":
        return _share(details.get("out_of_range_rows", 0), total)
    if result.rule_name == "unique_identifiers":
        return _share(details.get("duplicates", 0), total)
    if result.rule_name == "allowed_values":
        return _share(details.get("unexpected_rows", 0), total)
    return 0.0 if result.passed else 1.0


def compute_quality_score(results: Iterable[ValidationResult], weights: QualityWeights | None = None) -> QualityScore:
    """
    Score a run from every validation result it produced.

    Args:
        results: Results of all tiers that ran
        weights: Weights of the three components in the overall score

    Returns:
        QualityScore with components and overall in [0, 100]
    """
    weights = weights or QualityWeights()
    contributions: dict[str, list[float]] = {"completeness": [], "accuracy": [], "consistency": []}

    for result in results:
        if result.severity == Severity.INFO:
            continue
        component = RULE_COMPONENTS.get(result.rule_name, "accuracy")
        score = 100.0 * (1.0 - bad_share(result))
        if not result.passed and result.severity == Severity.WARNING:
            score -= WARNING_PENALTY
        contributions[component].append(max(0.0, score))

    components = {
        name: round(sum(scores) / len(scores), 2) if scores else 100.0
        for name, scores in contributions.items()
    }
    overall = (
        components["completeness"] * weights.completeness
        + components["accuracy"] * weights.accuracy
        + components["consistency"] * weights.consistency
    )
    return QualityScore(**components, overall=round(min(100.0, overall), 2))
