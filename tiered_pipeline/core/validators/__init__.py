"""
Tier validation rules.

Provides schema, completeness, range and uniqueness rules for the raw and
cleaned tiers, plus summary checks for the aggregated tier.
"""

from .base_validator import TierSnapshot, ValidationRule, rate_within, within_tolerance
from .completeness_rules import NullRateRule, RowCountToleranceRule, SummaryCompletenessRule
from .range_rules import RangeBoundsRule
from .schema_rules import SchemaConformanceRule, SummarySchemaRule
from .uniqueness_rules import AllowedValuesRule, UniqueIdentifierRule

# Every built-in rule, keyed by the name used in configuration overrides
RULE_REGISTRY: dict[str, type[ValidationRule]] = {
    rule.name: rule
    for rule in (
        SchemaConformanceRule,
        SummarySchemaRule,
        RowCountToleranceRule,
        NullRateRule,
        SummaryCompletenessRule,
        RangeBoundsRule,
        UniqueIdentifierRule,
        AllowedValuesRule,
    )
}

__all__ = [
    "RULE_REGISTRY",
    "AllowedValuesRule",
    "NullRateRule",
    "RangeBoundsRule",
    "RowCountToleranceRule",
    "SchemaConformanceRule",
    "SummaryCompletenessRule",
    "SummarySchemaRule",
    "TierSnapshot",
    "UniqueIdentifierRule",
    "ValidationRule",
    "rate_within",
    "within_tolerance",
]
