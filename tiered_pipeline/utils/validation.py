"""
Checks for identifiers that end up in partition keys and SQL statements.
"""

import re

SOURCE_ID_PATTERN = re.compile(r"^[a-zA-Z0-9_\-\.]{1,255}$")
SQL_NAME_PATTERN = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$")

# PostgreSQL truncates longer names
SQL_NAME_MAX_LENGTH = 63

SQL_RESERVED = frozenset({
    "alter", "create", "database", "delete", "drop", "grant", "index",
    "insert", "revoke", "select", "table", "update", "user", "view",
})


class InvalidInputError(ValueError):
    """Raised when an identifier fails validation."""


def _non_empty(value: str, field_name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise InvalidInputError(f"{field_name} must be a non-empty string")
    return value.strip()


def validate_source_id(source_id: str, field_name: str = "source_id") -> str:
    """
    Validate a source ID and return it stripped.

    Source IDs are embedded in every partition key
    (``raw/source_id=<id>/...``), so only letters, digits, ``-``, ``_``
    and ``.`` are accepted, up to 255 characters.

    Raises:
        InvalidInputError: If validation fails

    Examples:
        >>> validate_source_id(" orders-prod ")
        'orders-prod'
    """
    source_id = _non_empty(source_id, field_name)
    if not SOURCE_ID_PATTERN.match(source_id):
        raise InvalidInputError(
            f"{field_name} {source_id!r} must be at most 255 letters, digits, '-', '_' or '.'"
        )
    return source_id


def validate_limit(limit: int, field_name: str = "limit", max_limit: int = 10000) -> int:
    """
    Validate a history page size: an int in ``[1, max_limit]``.

    Raises:
        InvalidInputError: If validation fails
    """
    if not isinstance(limit, int) or isinstance(limit, bool):
        raise InvalidInputError(f"{field_name} must be an integer, got {type(limit).__name__}")
    if not 1 <= limit <= max_limit:
        raise InvalidInputError(f"{field_name} must be between 1 and {max_limit}, got {limit}")
    return limit


def sanitize_sql_identifier(identifier: str, field_name: str = "identifier") -> str:
    """
    Validate a configured table or column name before it is composed into SQL.

    Accepts ``name`` or ``schema.name``; each part must be a plain
    identifier of at most 63 characters and not a reserved word.

    Raises:
        InvalidInputError: If validation fails

    Examples:
        >>> sanitize_sql_identifier("public.orders")
        'public.orders'
        >>> sanitize_sql_identifier("orders; DROP TABLE users;")  # doctest: +SKIP
        InvalidInputError: identifier 'orders; DROP TABLE users;' is not a valid SQL name
    """
    identifier = _non_empty(identifier, field_name)
    parts = identifier.split(".")
    if len(parts) > 2 or not all(SQL_NAME_PATTERN.match(part) for part in parts):
        raise InvalidInputError(f"{field_name} {identifier!r} is not a valid SQL name")
    if any(len(part) > SQL_NAME_MAX_LENGTH for part in parts):
        raise InvalidInputError(
            f"{field_name} {identifier!r} exceeds the PostgreSQL limit of {SQL_NAME_MAX_LENGTH} characters"
        )
    if any(part.lower() in SQL_RESERVED for part in parts):
        raise InvalidInputError(f"{field_name} {identifier!r} is a reserved SQL keyword")
    return identifier
