"""
Declared schema for a source's record fields.

A schema lists the typed fields a source promises. Fields not listed are
tolerated and passed through untouched, so upstream additions do not break
the pipeline.
"""

from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator


class FieldType(str, Enum):
    """Coarse value types."""

    STRING = "string"
    INTEGER = "integer"
    FLOAT = "float"
    BOOLEAN = "boolean"

    @classmethod
    def parse(cls, name: "str | FieldType") -> "FieldType":
        if isinstance(name, FieldType):
            return name
        mapped = TYPE_ALIASES.get(str(name).lower())
        if mapped is None:
            raise ValueError(f"Unsupported type: {name}")
        return mapped


TYPE_ALIASES = {
    "string": FieldType.STRING,
    "str": FieldType.STRING,
    "integer": FieldType.INTEGER,
    "int": FieldType.INTEGER,
    "float": FieldType.FLOAT,
    "double": FieldType.FLOAT,
    "decimal": FieldType.FLOAT,
    "boolean": FieldType.BOOLEAN,
    "bool": FieldType.BOOLEAN,
}

_TRUE_STRINGS = ("true", "1", "yes")
_FALSE_STRINGS = ("false", "0", "no")


def matches_type(value: Any, field_type: FieldType) -> bool:
    """
    Strict coarse type check. None never matches.

    Booleans are not accepted as integers or floats; integers are accepted
    as floats.
    """
    if value is None:
        return False
    if field_type == FieldType.BOOLEAN:
        return isinstance(value, bool)
    if isinstance(value, bool):
        return False
    if field_type == FieldType.STRING:
        return isinstance(value, str)
    if field_type == FieldType.INTEGER:
        return isinstance(value, int)
    return isinstance(value, int | float)


def coerce_value(value: Any, field_type: FieldType) -> Any:
    """
    Coerce value to the declared type.

    Args:
        value: The raw value
        field_type: Target coarse type

    Returns:
        The coerced value (None stays None)

    Raises:
        ValueError: If the value cannot be represented in the target type
    """
    if value is None:
        return None

    if field_type == FieldType.BOOLEAN:
        # Special handling to avoid "False" -> True
        if isinstance(value, bool):
            return value
        if isinstance(value, str):
            lowered = value.strip().lower()
            if lowered in _TRUE_STRINGS:
                return True
            if lowered in _FALSE_STRINGS:
                return False
            raise ValueError(f"Cannot parse '{value}' as boolean")
        if isinstance(value, int | float) and value in (0, 1):
            return bool(value)
        raise ValueError(f"Cannot coerce {type(value).__name__} to boolean")

    if field_type == FieldType.STRING:
        if isinstance(value, bool):
            return "true" if value else "false"
        return value if isinstance(value, str) else str(value)

    if isinstance(value, bool):
        raise ValueError(f"Cannot coerce bool to {field_type.value}")

    if field_type == FieldType.INTEGER:
        return _to_integer(value)

    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, str):
        return float(value.strip())
    if isinstance(value, int | float):
        return float(value)
    raise ValueError(f"Cannot coerce {type(value).__name__} to float")


def _to_integer(value: Any) -> int:
    # Decimal keeps integers beyond 2**53 exact
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        text = value.strip()
        try:
            return int(text)
        except ValueError:
            pass
        try:
            number = Decimal(text)
        except InvalidOperation:
            raise ValueError(f"Cannot parse '{value}' as integer") from None
    elif isinstance(value, float | Decimal):
        number = Decimal(value)
    else:
        raise ValueError(f"Cannot coerce {type(value).__name__} to integer")

    if not number.is_finite() or number != number.to_integral_value():
        raise ValueError(f"Cannot coerce {value!r} to integer without loss")
    return int(number)


def is_coercible(value: Any, field_type: FieldType) -> bool:
    try:
        coerce_value(value, field_type)
    except (ValueError, TypeError):
        return False
    return True


class FieldSpec(BaseModel):
    """
    One declared field.

    Attributes:
        name: Field name inside the record's field map
        type: Coarse type
        required: Must be present and non-null
        min: Inclusive lower bound (numeric fields)
        max: Inclusive upper bound (numeric fields)
        allowed_values: Closed set of categorical values
    """

    name: str = Field(..., min_length=1)
    type: FieldType = FieldType.STRING
    required: bool = True
    min: float | None = None
    max: float | None = None
    allowed_values: list[str] | None = None

    @field_validator("type", mode="before")
    @classmethod
    def parse_type(cls, v: Any) -> FieldType:
        return FieldType.parse(v)

    @model_validator(mode="after")
    def check_bounds(self) -> "FieldSpec":
        if (self.min is not None or self.max is not None) and self.type not in (
            FieldType.INTEGER,
            FieldType.FLOAT,
        ):
            raise ValueError(f"Field '{self.name}': min/max require a numeric type")
        if self.min is not None and self.max is not None and self.min > self.max:
            raise ValueError(f"Field '{self.name}': min {self.min} exceeds max {self.max}")
        return self

    @property
    def has_range(self) -> bool:
        return self.min is not None or self.max is not None

    def in_range(self, value: float) -> bool:
        if self.min is not None and value < self.min:
            return False
        if self.max is not None and value > self.max:
            return False
        return True


class DeclaredSchema(BaseModel):
    """Ordered set of declared fields for one source."""

    fields: list[FieldSpec] = Field(default_factory=list)

    @model_validator(mode="after")
    def check_unique_names(self) -> "DeclaredSchema":
        names = [f.name for f in self.fields]
        duplicates = {n for n in names if names.count(n) > 1}
        if duplicates:
            raise ValueError(f"Duplicate field declarations: {sorted(duplicates)}")
        return self

    @classmethod
    def from_mapping(cls, mapping: dict[str, dict[str, Any]]) -> "DeclaredSchema":
        """Build from the YAML form ``{field_name: {type: ..., required: ...}}``."""
        return cls(fields=[FieldSpec(name=name, **(spec or {})) for name, spec in mapping.items()])

    def get(self, name: str) -> FieldSpec | None:
        for spec in self.fields:
            if spec.name == name:
                return spec
        return None

    @property
    def required_fields(self) -> list[FieldSpec]:
        return [f for f in self.fields if f.required]

    @property
    def ranged_fields(self) -> list[FieldSpec]:
        return [f for f in self.fields if f.has_range]

    @property
    def categorical_fields(self) -> list[FieldSpec]:
        return [f for f in self.fields if f.allowed_values is not None]

    def normalize(self, values: dict[str, Any]) -> tuple[dict[str, Any], list[str]]:
        """
        Coerce declared fields to their types; undeclared fields pass through.

        Values that cannot be coerced are replaced by None so the cleaned
        tier's null-rate check accounts for them.

        Returns:
            Tuple of (normalized values, names of fields that failed coercion)
        """
        normalized = dict(values)
        failures = []
        for spec in self.fields:
            if spec.name not in values:
                continue
            try:
                normalized[spec.name] = coerce_value(values[spec.name], spec.type)
            except (ValueError, TypeError):
                normalized[spec.name] = None
                failures.append(spec.name)
        return normalized, failures
