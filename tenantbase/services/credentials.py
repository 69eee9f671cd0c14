"""
Tenant identity and secret issuing.

derive_identity turns a human project name into the database and role
names used on the PostgreSQL server. Its output is always a valid
unquoted identifier (lowercase letters, digits, underscore, leading
letter), which keeps the provisioning statements injection-free.
"""

import re

from tenantbase.exceptions import InvalidIdentifierError
from tenantbase.schemas.project import TenantIdentity
from tenantbase.services.encryption import generate_password
from tenantbase.sql import MAX_IDENTIFIER_LENGTH, validate_identifier

ROLE_SUFFIX = "_user"
NAME_PREFIX = "p_"
SECRET_LENGTH = 32  # ~190 bits over a 62-character alphabet

_DISALLOWED = re.compile(r"[^a-z0-9_]+")
_UNDERSCORES = re.compile(r"_+")


def normalize_name(project_name: str) -> str:
    """Lowercase, map everything outside [a-z0-9_] to '_', collapse and trim underscores."""
    name = _DISALLOWED.sub("_", project_name.strip().lower())
    name = _UNDERSCORES.sub("_", name).strip("_")
    if not name:
        raise InvalidIdentifierError(project_name, "project name has no usable characters")
    if not name[0].isalpha():
        name = NAME_PREFIX + name
    return name


def derive_identity(project_name: str) -> TenantIdentity:
    """Derive (database_name, role_name) for a project name. Deterministic."""
    database_name = normalize_name(project_name)
    database_name = database_name[: MAX_IDENTIFIER_LENGTH - len(ROLE_SUFFIX)].rstrip("_")
    role_name = database_name + ROLE_SUFFIX

    return TenantIdentity(
        database_name=validate_identifier(database_name),
        role_name=validate_identifier(role_name),
    )


def generate_secret() -> str:
    """High-entropy tenant role password."""
    return generate_password(SECRET_LENGTH)
