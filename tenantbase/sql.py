"""
SQL identifier and literal helpers.

Every component that embeds a name (database, role, table, column) into
statement text goes through quote_identifier. Values never go through
here; they are passed as $n parameters.
"""

import math
import re

from tenantbase.exceptions import InvalidIdentifierError

# PostgreSQL NAMEDATALEN - 1
MAX_IDENTIFIER_LENGTH = 63

IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

# Keyword defaults accepted verbatim in column definitions
DEFAULT_KEYWORDS = frozenset(
    {
        "CURRENT_TIMESTAMP",
        "CURRENT_DATE",
        "CURRENT_TIME",
        "NOW()",
        "NULL",
        "TRUE",
        "FALSE",
        "GEN_RANDOM_UUID()",
    }
)


def validate_identifier(name: object) -> str:
    """Validate a SQL identifier to prevent injection. Returns the name unchanged."""
    if not isinstance(name, str) or not IDENTIFIER_PATTERN.match(name):
        raise InvalidIdentifierError(name)
    if len(name) > MAX_IDENTIFIER_LENGTH:
        raise InvalidIdentifierError(name, f"SQL identifier too long (max {MAX_IDENTIFIER_LENGTH})")
    return name


def quote_identifier(name: object) -> str:
    """Validate and double-quote an identifier for embedding in statement text."""
    return f'"{validate_identifier(name)}"'


def quote_literal(value: str) -> str:
    """Escape a string for use as a SQL literal (single-quoted value)."""
    if "\x00" in value:
        raise ValueError("NUL byte in SQL literal")
    return "'" + value.replace("'", "''") + "'"


def render_default(value: object) -> str:
    """Render a column DEFAULT clause value."""
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float) and math.isfinite(value):
        return repr(value)
    if isinstance(value, str):
        if value.strip().upper() in DEFAULT_KEYWORDS:
            return value.strip().upper()
        return quote_literal(value)
    raise ValueError(f"Unsupported default value: {value!r}")
