"""
Rule configuration and the validation engine that applies it.
"""

from .rule_config import RuleConfigBuilder, RuleConfigLoader, build_rules, parse_duration
from .rule_engine import ValidationEngine

__all__ = [
    "RuleConfigBuilder",
    "RuleConfigLoader",
    "ValidationEngine",
    "build_rules",
    "parse_duration",
]
