"""
Uniqueness rules: one row per identifier, categorical values from the
declared set.
"""

from collections import Counter
from typing import Any

from tiered_pipeline.core.models import RuleCategory, Severity, Tier

from .base_validator import TierSnapshot, ValidationRule


class UniqueIdentifierRule(ValidationRule):
    """
    Zero duplicate identifiers.

    Duplicates are expected in the raw tier (retried windows, rows changed
    twice) so there the rule only informs; after deduplication in the
    cleaned tier any duplicate blocks.
    """

    name = "unique_identifiers"
    category = RuleCategory.UNIQUENESS
    tiers = frozenset({Tier.RAW, Tier.CLEANED})

    def severity_for(self, tier: Tier) -> Severity:
        if self.severity_override is not None:
            return self.severity_override
        return Severity.INFO if tier == Tier.RAW else Severity.BLOCKING

    def check(self, snapshot: TierSnapshot) -> tuple[bool, str, dict[str, Any]]:
        counts = Counter(r.record_id for r in snapshot.records)
        duplicated = {record_id: n for record_id, n in counts.items() if n > 1}
        duplicates = sum(n - 1 for n in duplicated.values())
        details = {
            "duplicates": duplicates,
            "duplicated_ids": sorted(duplicated)[:20],
            "total_rows": len(snapshot.records),
        }
        if duplicates:
            return False, f"{duplicates} duplicate identifiers across {len(duplicated)} ids", details
        return True, "No duplicate identifiers", details


class AllowedValuesRule(ValidationRule):
    """
    Categorical fields restricted to their declared allowed values.

    Any unexpected value fails: it usually means upstream schema drift.
    """

    name = "allowed_values"
    category = RuleCategory.UNIQUENESS
    tiers = frozenset({Tier.RAW, Tier.CLEANED})

    def check(self, snapshot: TierSnapshot) -> tuple[bool, str, dict[str, Any]]:
        unexpected: dict[str, dict[str, int]] = {}
        bad_rows: set[int] = set()
        for spec in snapshot.schema.categorical_fields:
            allowed = set(spec.allowed_values or [])
            seen: Counter = Counter()
            for index, record in enumerate(snapshot.records):
                value = record.get(spec.name)
                if value is None:
                    continue
                text = value if isinstance(value, str) else str(value)
                if text not in allowed:
                    seen[text] += 1
                    bad_rows.add(index)
            if seen:
                unexpected[spec.name] = dict(seen.most_common(20))

        details = {
            "unexpected": unexpected,
            "unexpected_rows": len(bad_rows),
            "total_rows": len(snapshot.records),
        }
        if unexpected:
            summary = ", ".join(f"{name}={sorted(values)}" for name, values in unexpected.items())
            return False, f"Unexpected categorical values: {summary}", details
        return True, "Categorical values within declared sets", details
