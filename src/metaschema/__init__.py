"""
metaschema: metadata-driven schema management for PostgreSQL.

Collections and properties are defined as versioned metadata, guarded by
ownership-tier governance, materialized as audited DDL and continuously
checked for drift against the physical catalog.
"""

__version__ = "0.1.0"

from .config import MetaschemaConfig
from .engine import SchemaEngine
from .exceptions import (
    MetaschemaError,
    ConfigurationError,
    DatabaseError,
    ValidationError,
    SchemaPermissionError,
    ConflictError,
    NotFoundError,
    ExecutionError,
)
from .models import ActorType, ChangeContext, OwnerType
from .types import LogicalType

__all__ = [
    "__version__",
    "MetaschemaConfig",
    "SchemaEngine",
    "MetaschemaError",
    "ConfigurationError",
    "DatabaseError",
    "ValidationError",
    "SchemaPermissionError",
    "ConflictError",
    "NotFoundError",
    "ExecutionError",
    "ActorType",
    "ChangeContext",
    "OwnerType",
    "LogicalType",
]
