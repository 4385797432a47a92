"""Query validation, read-only enforcement and identifier sanitization."""

import re
from typing import Optional

from ..constants import MAX_IDENTIFIER_LENGTH
from ..errors import ValidationError

# Destructive or administrative statement forms, anchored at the statement start
DANGEROUS_PATTERNS = [
    (r'^DROP\s+(DATABASE|SCHEMA)\b', 'DROP DATABASE/SCHEMA'),
    (r'^TRUNCATE\b', 'TRUNCATE'),
    (r'^(GRANT|REVOKE)\b', 'GRANT/REVOKE'),
    (r'^(CREATE|ALTER|DROP)\s+(USER|ROLE|LOGIN)\b', 'USER MANAGEMENT'),
    (r'^(SHUTDOWN|RESTART)\b', 'SHUTDOWN/RESTART'),
]

# Compiled patterns for performance
COMPILED_PATTERNS = [(re.compile(pattern, re.IGNORECASE), operation)
                     for pattern, operation in DANGEROUS_PATTERNS]

UNGUARDED_WRITE = re.compile(r'^(DELETE|UPDATE)\b', re.IGNORECASE)
WHERE_TOKEN = re.compile(r'\bWHERE\b', re.IGNORECASE)

READ_ONLY_PREFIXES = ("select", "with", "explain", "show", "describe", "desc", "pragma")
SET_SEARCH_PATH = re.compile(r'^SET\s+search_path\b', re.IGNORECASE)

IDENTIFIER = re.compile(r'^[A-Za-z_][A-Za-z0-9_]*$')
CONNECTION_ID_DISALLOWED = re.compile(r'[^a-zA-Z0-9_\-.]')


def _preview(query: str) -> str:
    return f"{query[:100]}{'...' if len(query) > 100 else ''}"


def split_statements(query: str) -> list[str]:
    """Split on semicolons. Lexical only: semicolons in literals also split."""
    return [part.strip() for part in query.split(';') if part.strip()]


def validate_query(query: str) -> Optional[str]:
    """Check a statement against the destructive/administrative block list.

    Each semicolon-separated statement is checked. DELETE and UPDATE are
    rejected only when no WHERE token appears anywhere in the statement,
    so ``UPDATE t SET c = 1 WHERE id = 1`` passes.

    Args:
        query: SQL text to validate

    Returns:
        None if the query is allowed, otherwise the rejection reason
    """
    if not query or not query.strip():
        return "Query cannot be empty"

    for statement in split_statements(query):
        # Normalize whitespace for better pattern matching
        normalized = ' '.join(statement.split())

        for pattern, operation in COMPILED_PATTERNS:
            if pattern.search(normalized):
                return (
                    f"Query rejected: {operation} operation detected (potentially dangerous)\n"
                    f"  Hint: This statement is blocked for safety\n"
                    f"  Query: {_preview(query)}"
                )

        match = UNGUARDED_WRITE.match(normalized)
        if match and not WHERE_TOKEN.search(normalized):
            operation = match.group(1).upper()
            return (
                f"Query rejected: {operation} without a WHERE clause\n"
                f"  Hint: Add a WHERE clause to restrict the affected rows\n"
                f"  Query: {_preview(query)}"
            )

    return None


def enforce_read_only(query: str) -> Optional[str]:
    """Allow only statements classified as non-mutating.

    Independent of validate_query: a statement both accept may still be
    rejected here.

    Args:
        query: SQL text

    Returns:
        None for SELECT/WITH/EXPLAIN/SHOW/DESCRIBE/DESC/PRAGMA or
        ``SET search_path``, otherwise the rejection reason
    """
    statement = (query or "").strip()
    lowered = statement.lower()
    if lowered.startswith(READ_ONLY_PREFIXES) or SET_SEARCH_PATH.match(statement):
        return None

    first_word = lowered.split(None, 1)[0].upper() if lowered else "(empty)"
    return (
        f"Query rejected: {first_word} is not allowed in read-only mode\n"
        f"  Hint: Only read-only operations are allowed "
        f"(SELECT, WITH, EXPLAIN, SHOW, DESCRIBE, PRAGMA, SET search_path)\n"
        f"  Query: {_preview(statement)}"
    )


def sanitize_identifier(name: str) -> str:
    """Validate a table/schema name before interpolating it into SQL.

    Raises:
        ValidationError: If the name is not a plain identifier
    """
    if not isinstance(name, str) or not name:
        raise ValidationError("Identifier must be a non-empty string")
    if len(name) > MAX_IDENTIFIER_LENGTH:
        raise ValidationError(
            f"Identifier exceeds {MAX_IDENTIFIER_LENGTH} characters: {name[:32]}..."
        )
    if not IDENTIFIER.match(name):
        raise ValidationError(
            f"Invalid identifier: {name!r}\n"
            f"  Hint: Identifiers may contain only letters, digits and underscores "
            f"and must not start with a digit"
        )
    return name


def sanitize_connection_id(connection_id: str) -> str:
    """Strip characters outside ``[A-Za-z0-9_.-]`` from a connection id.

    Raises:
        ValidationError: If nothing valid remains
    """
    if not connection_id or not isinstance(connection_id, str):
        raise ValidationError("Connection ID must be a non-empty string")

    sanitized = CONNECTION_ID_DISALLOWED.sub('', connection_id)
    if not sanitized:
        raise ValidationError("Connection ID contains no valid characters")
    return sanitized

