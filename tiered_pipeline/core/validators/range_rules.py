"""
Range rule: numeric fields inside their declared bounds.
"""

from typing import Any

from tiered_pipeline.core.models import RuleCategory, Tier
from tiered_pipeline.core.schema import FieldType, coerce_value

from .base_validator import TierSnapshot, ValidationRule, percent, rate_within


class RangeBoundsRule(ValidationRule):
    """
    Counts rows with at least one numeric field outside ``[min, max]`` and
    fails when they exceed ``range_tolerance`` of the tier.

    Nulls and values that cannot be read as numbers are skipped; the schema
    and completeness rules report those.
    """

    name = "range_bounds"
    category = RuleCategory.RANGE
    tiers = frozenset({Tier.RAW, Tier.CLEANED})

    def check(self, snapshot: TierSnapshot) -> tuple[bool, str, dict[str, Any]]:
        specs = snapshot.schema.ranged_fields
        out_of_range: dict[str, int] = {}
        bad_rows = 0

        for record in snapshot.records:
            bad = False
            for spec in specs:
                value = _as_number(record.get(spec.name))
                if value is not None and not spec.in_range(value):
                    out_of_range[spec.name] = out_of_range.get(spec.name, 0) + 1
                    bad = True
            bad_rows += bad

        total = len(snapshot.records)
        tolerance = snapshot.thresholds.range_tolerance
        passed = rate_within(bad_rows, total, tolerance)
        details = {
            "out_of_range_rows": bad_rows,
            "total_rows": total,
            "tolerance": tolerance,
            "by_field": out_of_range,
        }
        message = (
            f"{percent(bad_rows, total):.2f}% of rows out of declared range "
            f"(tolerance {tolerance * 100:.2f}%)"
        )
        return passed, message, details


def _as_number(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return coerce_value(value, FieldType.FLOAT)
    except (ValueError, TypeError):
        return None
