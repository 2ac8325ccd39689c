"""
Declared record schemas and coarse type coercion.
"""

from .declared_schema import DeclaredSchema, FieldSpec, FieldType, coerce_value, is_coercible, matches_type

__all__ = [
    "DeclaredSchema",
    "FieldSpec",
    "FieldType",
    "coerce_value",
    "is_coercible",
    "matches_type",
]
