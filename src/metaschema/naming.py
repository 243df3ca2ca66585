"""
Identifier rules shared by governance, DDL generation and discovery.
"""

import re
import time
from typing import FrozenSet, Iterable, List, Optional

from .exceptions import ValidationError


IDENTIFIER_PATTERN = re.compile(r"^[a-z][a-z0-9_]*$")
# Looser rule for names we only quote, e.g. soft-deleted tables
_QUOTABLE_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_$]*$")

MIN_IDENTIFIER_LENGTH = 2
MAX_IDENTIFIER_LENGTH = 63

FORBIDDEN_PREFIXES = ("pg_", "sql_")
DELETED_PREFIX = "_deleted_"

RESERVED_COLLECTION_CODES: FrozenSet[str] = frozenset({
    "user", "users",
    "role", "roles",
    "permission", "permissions",
    "group", "groups",
    "tenant", "tenants",
    "instance", "instances",
    "collection_definition", "collection_definitions",
    "property_definition", "property_definitions",
    "property_type", "property_types",
    "choice_list", "choice_lists",
    "choice_item", "choice_items",
    "schema_change_log",
    "schema_sync_state",
    "schema_version", "schema_versions",
    "system", "admin", "api", "auth", "config", "settings",
    "migration", "migrations",
    "audit", "log", "logs",
})

RESERVED_PROPERTY_CODES: FrozenSet[str] = frozenset({
    "id", "uuid",
    "created_at", "updated_at",
    "created_by", "updated_by",
    "is_deleted", "deleted_at", "deleted_by",
    "version", "_version",
    "tenant_id", "instance_id", "organization_id",
})

# Columns prepended to every engine-created table, in creation order
STANDARD_COLUMNS = (
    "id",
    "created_at",
    "updated_at",
    "created_by",
    "updated_by",
    "is_deleted",
    "deleted_at",
)


def check_identifier(
    value: Optional[str],
    kind: str,
    reserved: Iterable[str] = (),
    min_length: int = MIN_IDENTIFIER_LENGTH,
    max_length: int = MAX_IDENTIFIER_LENGTH,
) -> List[str]:
    """Return every naming violation for an identifier (empty when valid)."""
    if not value:
        return [f"{kind} is required"]
    
    errors = []
    if not IDENTIFIER_PATTERN.match(value):
        errors.append(
            f"{kind} '{value}' must start with a lowercase letter and contain "
            f"only lowercase letters, numbers, and underscores"
        )
    if len(value) < min_length:
        errors.append(f"{kind} '{value}' must be at least {min_length} characters")
    if len(value) > max_length:
        errors.append(f"{kind} '{value}' must be at most {max_length} characters")
    if value in set(reserved):
        errors.append(f"{kind} '{value}' is a reserved word")
    for prefix in FORBIDDEN_PREFIXES:
        if value.startswith(prefix):
            errors.append(f"{kind} '{value}' cannot start with '{prefix}'")
    return errors


def quote_ident(name: str) -> str:
    """Double-quote an identifier after checking it is safe to embed in DDL."""
    if not name or len(name) > MAX_IDENTIFIER_LENGTH or not _QUOTABLE_PATTERN.match(name):
        raise ValidationError(f"Invalid SQL identifier: {name!r}")
    return f'"{name}"'


def qualified_name(schema: str, name: str) -> str:
    return f"{quote_ident(schema)}.{quote_ident(name)}"


def soft_deleted_name(name: str, timestamp_ms: Optional[int] = None) -> str:
    """Build `_deleted_<unixMillis>_<name>`, clipped to the identifier limit."""
    if timestamp_ms is None:
        timestamp_ms = int(time.time() * 1000)
    return f"{DELETED_PREFIX}{timestamp_ms}_{name}"[:MAX_IDENTIFIER_LENGTH]


def is_soft_deleted(name: str) -> bool:
    return name.startswith(DELETED_PREFIX)


def derive_collection_code(table_name: str, strip_prefixes: Iterable[str] = ()) -> str:
    """Turn a physical table name into a collection code."""
    code = table_name.lower()
    for prefix in strip_prefixes:
        if code.startswith(prefix) and len(code) > len(prefix):
            code = code[len(prefix):]
            break
    return re.sub(r"[^a-z0-9_]", "_", code)


def to_label(identifier: str, strip_id_suffix: bool = False) -> str:
    """`customer_id` -> `Customer` (with strip_id_suffix), `legacy_orders` -> `Legacy Orders`."""
    if strip_id_suffix and identifier.endswith("_id") and len(identifier) > 3:
        identifier = identifier[:-3]
    return " ".join(word.capitalize() for word in identifier.split("_") if word)
