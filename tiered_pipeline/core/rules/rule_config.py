"""
Pipeline and rule configuration management.

Loads pipeline settings (sources, declared schemas, thresholds and rule
overrides) from YAML files and provides a builder for programmatic setup.
"""

import re
from datetime import timedelta
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError as PydanticValidationError

from tiered_pipeline.core.models import PipelineSettings, RuleOverride, Severity, SourceConfig
from tiered_pipeline.core.schema import DeclaredSchema, FieldSpec, FieldType
from tiered_pipeline.core.validators import RULE_REGISTRY, ValidationRule

_DURATION_PATTERN = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(ms|s|m|h|d)\s*$")
_DURATION_UNITS = {
    "ms": "milliseconds",
    "s": "seconds",
    "m": "minutes",
    "h": "hours",
    "d": "days",
}
_DURATION_KEYS = ("window_size", "safety_lag")


def parse_duration(value: Any) -> timedelta:
    """
    Parse ``"90s"``, ``"5m"``, ``"1h"``, ``"1d"`` or a number of seconds.

    Raises:
        ValueError: If the value is not a recognised duration
    """
    if isinstance(value, timedelta):
        return value
    if isinstance(value, int | float) and not isinstance(value, bool):
        return timedelta(seconds=value)
    if isinstance(value, str):
        match = _DURATION_PATTERN.match(value)
        if match:
            amount, unit = match.groups()
            return timedelta(**{_DURATION_UNITS[unit]: float(amount)})
    raise ValueError(f"Invalid duration: {value!r}")


class RuleConfigLoader:
    """
    Loads pipeline settings from YAML configuration files.

    Expected YAML format:
    ```yaml
    max_workers: 4
    extractor:
      window_size: 1h
      safety_lag: 5m
    sources:
      orders:
        identifier_field: order_id
        timestamp_field: updated_at
        schema:
          amount:
            type: float
            min: 0
          status:
            type: string
            allowed_values: [NEW, PAID, SHIPPED]
        dimension_field: status
        metric_fields: [latency_ms]
        thresholds:
          row_count_tolerance: 0.05
        rules:
          unique_identifiers:
            severity: WARNING
    ```
    """

    def __init__(self, config_path: str | Path):
        """
        Initialize the config loader.

        Args:
            config_path: Path to the YAML configuration file
        """
        self.config_path = Path(config_path)
        if not self.config_path.exists():
            raise FileNotFoundError(f"Pipeline configuration file not found: {config_path}")

    def load(self) -> PipelineSettings:
        """
        Load and parse the configuration file.

        Raises:
            ValueError: If YAML is invalid or describes invalid settings
        """
        with open(self.config_path) as f:
            try:
                config = yaml.safe_load(f)
            except yaml.YAMLError as e:
                raise ValueError(f"Invalid YAML in {self.config_path}: {e}") from e

        if not config or "sources" not in config:
            raise ValueError("Configuration file must contain 'sources' section")
        return self.from_dict(config)

    @classmethod
    def from_dict(cls, config: dict[str, Any]) -> PipelineSettings:
        """
        Build settings from an already-parsed mapping.

        Raises:
            ValueError: If the mapping describes invalid settings
        """
        data = dict(config)
        extractor = dict(data.get("extractor") or {})
        for key in _DURATION_KEYS:
            if key in extractor:
                extractor[key] = parse_duration(extractor[key])
        data["extractor"] = extractor

        sources = data.get("sources") or {}
        if not isinstance(sources, dict):
            raise ValueError("'sources' must be a mapping of source_id to source settings")
        data["sources"] = {
            source_id: cls._parse_source(source_id, source_def or {})
            for source_id, source_def in sources.items()
        }

        try:
            return PipelineSettings.model_validate(data)
        except PydanticValidationError as e:
            raise ValueError(f"Invalid pipeline configuration: {e}") from e

    @staticmethod
    def _parse_source(source_id: str, source_def: dict[str, Any]) -> SourceConfig:
        """
        Parse a single source definition.

        Raises:
            ValueError: If the definition is invalid or overrides an unknown rule
        """
        data = dict(source_def)
        data["source_id"] = source_id

        schema = data.pop("schema", None) or {}
        if isinstance(schema, dict):
            data["schema"] = DeclaredSchema.from_mapping(schema)
        else:
            data["schema"] = DeclaredSchema(fields=schema)

        rules = {}
        for rule_name, override in (data.get("rules") or {}).items():
            if rule_name not in RULE_REGISTRY:
                raise ValueError(f"Source '{source_id}': unknown rule '{rule_name}'")
            override = dict(override or {})
            if isinstance(override.get("severity"), str):
                override["severity"] = override["severity"].upper()
            rules[rule_name] = override
        data["rules"] = rules

        try:
            return SourceConfig.model_validate(data)
        except PydanticValidationError as e:
            raise ValueError(f"Invalid configuration for source '{source_id}': {e}") from e


def build_rules(source_config: SourceConfig) -> list[ValidationRule]:
    """
    Instantiate every registered rule for a source, applying its overrides.

    Disabled rules are left out. Rules keep registry order; the engine
    sorts them by category.
    """
    rules = []
    for name, rule_class in RULE_REGISTRY.items():
        override = source_config.rules.get(name, RuleOverride())
        if not override.enabled:
            continue
        rules.append(rule_class(severity=override.severity))
    return rules


class RuleConfigBuilder:
    """
    Programmatically build a source configuration (for testing or dynamic sources).
    """

    def __init__(self, source_id: str, identifier_field: str = "id", timestamp_field: str = "updated_at"):
        """Initialize an empty source configuration."""
        self.source_id = source_id
        self.identifier_field = identifier_field
        self.timestamp_field = timestamp_field
        self.fields: dict[str, FieldSpec] = {}
        self.settings: dict[str, Any] = {}
        self.rules: dict[str, RuleOverride] = {}

    def add_field(self, field_name: str, field_type: str | FieldType = "string", required: bool = True) -> "RuleConfigBuilder":
        """Declare a field."""
        self.fields[field_name] = FieldSpec(name=field_name, type=field_type, required=required)
        return self

    def add_range(
        self,
        field_name: str,
        min_value: float | None = None,
        max_value: float | None = None
    ) -> "RuleConfigBuilder":
        """Add bounds to a numeric field, declaring it as float if needed."""
        spec = self.fields.get(field_name) or FieldSpec(name=field_name, type=FieldType.FLOAT)
        self.fields[field_name] = spec.model_copy(update={"min": min_value, "max": max_value})
        return self

    def add_allowed_values(self, field_name: str, values: list[str]) -> "RuleConfigBuilder":
        """Restrict a categorical field, declaring it as string if needed."""
        spec = self.fields.get(field_name) or FieldSpec(name=field_name)
        self.fields[field_name] = spec.model_copy(update={"allowed_values": list(values)})
        return self

    def group_by(
        self,
        dimension_field: str | None,
        metric_fields: list[str] | None = None,
        error_field: str | None = None,
    ) -> "RuleConfigBuilder":
        """Configure the aggregated tier."""
        self.settings["dimension_field"] = dimension_field
        self.settings["metric_fields"] = list(metric_fields or [])
        self.settings["error_field"] = error_field
        return self

    def with_thresholds(self, **thresholds: float) -> "RuleConfigBuilder":
        self.settings.setdefault("thresholds", {}).update(thresholds)
        return self

    def set_severity(self, rule_name: str, severity: str | Severity) -> "RuleConfigBuilder":
        """Override the severity of a built-in rule."""
        self._check_rule(rule_name)
        self.rules[rule_name] = RuleOverride(severity=Severity(severity.upper() if isinstance(severity, str) else severity))
        return self

    def disable(self, rule_name: str) -> "RuleConfigBuilder":
        self._check_rule(rule_name)
        self.rules[rule_name] = RuleOverride(enabled=False)
        return self

    def with_connection(self, **connection: Any) -> "RuleConfigBuilder":
        self.settings["connection"] = connection
        return self

    def build(self) -> SourceConfig:
        """Build and return the source configuration."""
        return SourceConfig(
            source_id=self.source_id,
            identifier_field=self.identifier_field,
            timestamp_field=self.timestamp_field,
            declared_schema=DeclaredSchema(fields=list(self.fields.values())),
            rules=dict(self.rules),
            **self.settings,
        )

    @staticmethod
    def _check_rule(rule_name: str) -> None:
        if rule_name not in RULE_REGISTRY:
            raise ValueError(f"Unknown rule '{rule_name}'. Known rules: {sorted(RULE_REGISTRY)}")
