"""
Completeness rules: nothing lost between the source and the tier.
"""

from typing import Any

from tiered_pipeline.core.models import RuleCategory, Tier

from .base_validator import TierSnapshot, ValidationRule, percent, rate_within, within_tolerance


class RowCountToleranceRule(ValidationRule):
    """
    Rows written to the raw tier versus the source's count for the same
    windows. The tolerance boundary is inclusive.
    """

    name = "row_count_tolerance"
    category = RuleCategory.COMPLETENESS
    tiers = frozenset({Tier.RAW})

    def check(self, snapshot: TierSnapshot) -> tuple[bool, str, dict[str, Any]]:
        observed = snapshot.observed_count
        expected = snapshot.expected_count
        tolerance = snapshot.thresholds.row_count_tolerance
        if expected is None:
            return True, "No expected count available", {"observed": observed}

        passed = within_tolerance(observed, expected, tolerance)
        deviation = abs(observed - expected) / expected if expected else (0.0 if passed else 1.0)
        details = {
            "observed": observed,
            "expected": expected,
            "deviation": deviation,
            "tolerance": tolerance,
        }
        message = (
            f"Row count {observed} deviates {deviation * 100:.2f}% from expected {expected} "
            f"(tolerance {tolerance * 100:.2f}%)"
        )
        return passed, message, details


class NullRateRule(ValidationRule):
    """Required fields null (or absent) in at most ``null_threshold`` of rows."""

    name = "null_rate"
    category = RuleCategory.COMPLETENESS
    tiers = frozenset({Tier.RAW, Tier.CLEANED})

    def check(self, snapshot: TierSnapshot) -> tuple[bool, str, dict[str, Any]]:
        total = len(snapshot.records)
        threshold = snapshot.thresholds.null_threshold
        nulls = {
            spec.name: sum(1 for r in snapshot.records if r.get(spec.name) is None)
            for spec in snapshot.schema.required_fields
        }
        offending = {name: count for name, count in nulls.items() if not rate_within(count, total, threshold)}

        details = {"null_counts": nulls, "total_rows": total, "threshold": threshold}
        if offending:
            worst = max(offending, key=offending.get)
            return False, (
                f"Field '{worst}' is null in {percent(offending[worst], total):.2f}% of rows "
                f"(threshold {threshold * 100:.2f}%)"
            ), details | {"offending_fields": sorted(offending)}
        return True, "Required field null rates within threshold", details


class SummaryCompletenessRule(ValidationRule):
    """Every cleaned row is accounted for in exactly one summary group."""

    name = "summary_completeness"
    category = RuleCategory.COMPLETENESS
    tiers = frozenset({Tier.AGGREGATED})

    def check(self, snapshot: TierSnapshot) -> tuple[bool, str, dict[str, Any]]:
        expected_by_date = {
            m.partition_date: m.expected_count
            for m in snapshot.manifests
            if m.partition_date is not None and m.expected_count is not None
        }
        mismatches = {}
        for summary in snapshot.summaries:
            grouped = sum(g.row_count for g in summary.groups)
            expected = expected_by_date.get(summary.partition_date, summary.total_rows)
            if grouped != summary.total_rows or summary.total_rows != expected:
                mismatches[summary.partition_date.isoformat()] = {
                    "grouped_rows": grouped,
                    "total_rows": summary.total_rows,
                    "cleaned_rows": expected,
                }

        details = {"summaries": len(snapshot.summaries), "mismatches": mismatches}
        if mismatches:
            return False, f"Summary row counts disagree with cleaned tier for {sorted(mismatches)}", details
        return True, "Summary row counts match cleaned tier", details
