"""
Input validation utilities for the operator surfaces.

Reusable checks for event IDs, owner references, query limits, operator
notes and SQL identifiers used to build statements.
"""

import re


class ValidationError(ValueError):
    """Raised when input validation fails."""
    pass


_EVENT_ID = re.compile(r"^[0-9a-f]{64}$")


def validate_event_id(event_id: str, field_name: str = "event_id") -> str:
    """
    Validate a canonical event ID.

    Event IDs are lowercase hex SHA-256 digests.

    Args:
        event_id: The event ID to validate
        field_name: Name of the field (for error messages)

    Returns:
        The validated event ID (stripped and lowercased)

    Raises:
        ValidationError: If validation fails

    Examples:
        >>> validate_event_id("A" * 64)
        'aaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaa'
        >>> validate_event_id("evt-1")  # doctest: +SKIP
        ValidationError: event_id must be a 64 character hex digest
    """
    if not event_id or not isinstance(event_id, str):
        raise ValidationError(f"{field_name} must be a non-empty string")

    event_id = event_id.strip().lower()
    if not _EVENT_ID.match(event_id):
        raise ValidationError(f"{field_name} must be a 64 character hex digest")
    return event_id


def validate_owner_id(owner_id: str, field_name: str = "owner_id") -> str:
    """
    Validate an owner identity reference.

    Owner IDs are opaque, so only emptiness, control characters and length
    are checked.
    """
    if not owner_id or not isinstance(owner_id, str):
        raise ValidationError(f"{field_name} must be a non-empty string")

    owner_id = owner_id.strip()
    if not owner_id:
        raise ValidationError(f"{field_name} cannot be empty or whitespace-only")

    if any(ord(ch) < 32 for ch in owner_id):
        raise ValidationError(f"{field_name} contains control characters")

    if len(owner_id) > 255:
        raise ValidationError(f"{field_name} exceeds maximum length of 255 characters")

    return owner_id


def validate_limit(limit: int, field_name: str = "limit", max_limit: int = 10000) -> int:
    """
    Validate a limit parameter for queries.

    Args:
        limit: The limit value to validate
        field_name: Name of the field (for error messages)
        max_limit: Maximum allowed limit value

    Returns:
        The validated limit value

    Raises:
        ValidationError: If validation fails

    Examples:
        >>> validate_limit(100)
        100
        >>> validate_limit(0)  # doctest: +SKIP
        ValidationError: limit must be a positive integer
    """
    if isinstance(limit, bool) or not isinstance(limit, int):
        raise ValidationError(f"{field_name} must be an integer, got {type(limit).__name__}")

    if limit <= 0:
        raise ValidationError(f"{field_name} must be a positive integer, got {limit}")

    if limit > max_limit:
        raise ValidationError(f"{field_name} exceeds maximum of {max_limit}")

    return limit


def validate_operator_note(note: str, field_name: str = "note", max_length: int = 2000) -> str:
    """Validate the free-text note an operator attaches to a dead letter decision."""
    if not note or not isinstance(note, str):
        raise ValidationError(f"{field_name} must be a non-empty string")

    note = note.strip()
    if not note:
        raise ValidationError(f"{field_name} cannot be empty or whitespace-only")

    if "\x00" in note:
        raise ValidationError(f"{field_name} contains null bytes")

    if len(note) > max_length:
        raise ValidationError(f"{field_name} exceeds maximum length of {max_length} characters")

    return note


def sanitize_sql_identifier(identifier: str, field_name: str = "identifier") -> str:
    """
    Sanitize an SQL identifier (table name, column name, etc.).

    Table names are interpolated into statements, so only plain identifiers
    are accepted.

    Args:
        identifier: The identifier to sanitize
        field_name: Name of the field (for error messages)

    Returns:
        The validated identifier

    Raises:
        ValidationError: If validation fails

    Examples:
        >>> sanitize_sql_identifier("activity_records")
        'activity_records'
        >>> sanitize_sql_identifier("t; DROP TABLE users;")  # doctest: +SKIP
        ValidationError: identifier contains invalid characters
    """
    if not identifier or not isinstance(identifier, str):
        raise ValidationError(f"{field_name} must be a non-empty string")

    identifier = identifier.strip()

    # Letters, digits and underscores; must not start with a digit
    if not re.match(r'^[a-zA-Z_][a-zA-Z0-9_]*$', identifier):
        raise ValidationError(
            f"{field_name} contains invalid characters. "
            "SQL identifiers must start with a letter or underscore and contain only "
            "alphanumeric characters and underscores."
        )

    if len(identifier) > 63:  # PostgreSQL limit
        raise ValidationError(f"{field_name} exceeds PostgreSQL maximum length of 63 characters")

    reserved_keywords = {
        "select", "insert", "update", "delete", "drop", "create", "alter",
        "table", "database", "index", "view", "user", "grant", "revoke"
    }
    if identifier.lower() in reserved_keywords:
        raise ValidationError(
            f"{field_name} '{identifier}' is a reserved SQL keyword. "
            "Please use a different name."
        )

    return identifier
