"""
Schema rules: declared fields present with the right coarse type.
"""

from typing import Any

from tiered_pipeline.core.models import RuleCategory, Tier
from tiered_pipeline.core.schema import is_coercible, matches_type

from .base_validator import TierSnapshot, ValidationRule, percent, rate_within


class SchemaConformanceRule(ValidationRule):
    """
    Every required field present; every declared value of the right type.

    Raw rows only need to be coercible to the declared type (sources often
    deliver numbers as strings); cleaned rows must match exactly. Nulls are
    left to the completeness rules and unknown fields are ignored.
    """

    name = "schema_conformance"
    category = RuleCategory.SCHEMA
    tiers = frozenset({Tier.RAW, Tier.CLEANED})

    def check(self, snapshot: TierSnapshot) -> tuple[bool, str, dict[str, Any]]:
        type_check = is_coercible if snapshot.tier == Tier.RAW else matches_type
        missing: dict[str, int] = {}
        mistyped: dict[str, int] = {}
        bad_rows = 0

        for record in snapshot.records:
            bad = False
            for spec in snapshot.schema.fields:
                if not record.has_field(spec.name):
                    if spec.required:
                        missing[spec.name] = missing.get(spec.name, 0) + 1
                        bad = True
                    continue
                value = record.get(spec.name)
                if value is not None and not type_check(value, spec.type):
                    mistyped[spec.name] = mistyped.get(spec.name, 0) + 1
                    bad = True
            bad_rows += bad

        total = len(snapshot.records)
        threshold = snapshot.thresholds.schema_threshold
        passed = rate_within(bad_rows, total, threshold)
        details = {
            "violating_rows": bad_rows,
            "total_rows": total,
            "threshold": threshold,
            "missing": missing,
            "mistyped": mistyped,
        }
        if passed:
            return True, f"{bad_rows} of {total} rows violate the declared schema", details
        return False, (
            f"{percent(bad_rows, total):.2f}% of rows violate the declared schema "
            f"(threshold {threshold * 100:.2f}%)"
        ), details


class SummarySchemaRule(ValidationRule):
    """Aggregated summaries: counts non-negative, rates within [0, 1]."""

    name = "summary_schema"
    category = RuleCategory.SCHEMA
    tiers = frozenset({Tier.AGGREGATED})

    def check(self, snapshot: TierSnapshot) -> tuple[bool, str, dict[str, Any]]:
        problems = []
        for summary in snapshot.summaries:
            label = summary.partition_date.isoformat()
            if summary.error_count > summary.total_rows:
                problems.append(f"{label}: error_count exceeds total_rows")
            if summary.error_rate is not None and not 0.0 <= summary.error_rate <= 1.0:
                problems.append(f"{label}: error_rate {summary.error_rate} outside [0, 1]")
            for group in summary.groups:
                if group.error_count > group.row_count:
                    problems.append(f"{label}/{group.dimension_value}: error_count exceeds row_count")
                if group.error_rate is not None and not 0.0 <= group.error_rate <= 1.0:
                    problems.append(f"{label}/{group.dimension_value}: error_rate outside [0, 1]")
                for metric, stats in group.metrics.items():
                    if stats.count > group.row_count:
                        problems.append(f"{label}/{group.dimension_value}: {metric} count exceeds row_count")

        details = {"summaries": len(snapshot.summaries), "problems": problems}
        if problems:
            return False, f"{len(problems)} malformed summary values", details
        return True, "Summaries well-formed", details
