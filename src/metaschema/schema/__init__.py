"""
Schema management package for metaschema.

This package provides:
- Governance rules for collection and property changes
- Transactional, audited DDL with rename-based soft deletes
- Drift detection and table discovery
- Version snapshots, diffs and metadata rollback
- Metadata tables setup and persistence
"""

from .governance import (
    GovernanceEngine,
    CollectionOperation,
    PropertyOperation,
    OperationType,
    ValidationResult,
)
from .operations import DdlExecutor, DdlResult, ColumnSpec, TableSpec, ColumnAlteration
from .sync import SyncEngine, SyncCheckResult, SyncLock, DriftCheckScheduler
from .versions import VersionEngine, VersionChange, RollbackResult
from .metadata import MetadataManager
from .store import MetadataStore

__all__ = [
    "GovernanceEngine",
    "CollectionOperation",
    "PropertyOperation",
    "OperationType",
    "ValidationResult",
    "DdlExecutor",
    "DdlResult",
    "ColumnSpec",
    "TableSpec",
    "ColumnAlteration",
    "SyncEngine",
    "SyncCheckResult",
    "SyncLock",
    "DriftCheckScheduler",
    "VersionEngine",
    "VersionChange",
    "RollbackResult",
    "MetadataManager",
    "MetadataStore",
]
