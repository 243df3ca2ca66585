"""
Database integration package for metaschema.

This package provides:
- Async PostgreSQL connection pooling
- Read-only catalog introspection
"""

from .connection import ConnectionConfig, ConnectionPool
from .introspection import CatalogIntrospector, ColumnInfo, IndexInfo, TableInfo

__all__ = [
    "ConnectionConfig",
    "ConnectionPool",
    "CatalogIntrospector",
    "ColumnInfo",
    "IndexInfo",
    "TableInfo",
]
