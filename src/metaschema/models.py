"""
Domain records for metaschema.

Collections and properties are the logical view of physical tables and
columns. Audit entries, sync state and version snapshots are the records the
engines persist about them.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .types import LogicalType


def load_json(value: Any) -> Any:
    """Decode a JSON column that asyncpg returned as text."""
    if isinstance(value, (str, bytes)):
        return json.loads(value)
    return value


class OwnerType(str, Enum):
    """Ownership tier of a collection or property."""
    
    SYSTEM = "system"
    MODULE = "module"
    CUSTOM = "custom"
    
    @classmethod
    def _missing_(cls, value):
        if isinstance(value, str) and value.lower() == "platform":
            return cls.MODULE
        return None


class ActorType(str, Enum):
    """Who is performing a change."""
    
    USER = "user"
    SYSTEM = "system"
    MIGRATION = "migration"


class ChangeSource(str, Enum):
    API = "api"
    MIGRATION = "migration"


class EntityType(str, Enum):
    COLLECTION = "collection"
    PROPERTY = "property"


class AuditChangeType(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


@dataclass
class Property:
    """Logical column."""
    
    code: str
    name: str
    property_type_id: str
    storage_column: str
    owner_type: OwnerType = OwnerType.CUSTOM
    is_required: bool = False
    is_unique: bool = False
    is_indexed: bool = False
    position: int = 0
    default_value: Optional[str] = None
    description: Optional[str] = None
    config: Dict[str, Any] = field(default_factory=dict)
    id: Optional[str] = None
    collection_id: Optional[str] = None
    
    @property
    def logical_type(self) -> LogicalType:
        return LogicalType.parse(self.property_type_id)
    
    @classmethod
    def from_record(cls, row: Any) -> "Property":
        return cls(
            id=str(row["id"]) if row["id"] is not None else None,
            collection_id=str(row["collection_id"]) if row["collection_id"] is not None else None,
            code=row["code"],
            name=row["name"],
            property_type_id=row["property_type_id"],
            storage_column=row["storage_column"],
            owner_type=OwnerType(row["owner_type"]),
            is_required=row["is_required"],
            is_unique=row["is_unique"],
            is_indexed=row["is_indexed"],
            position=row["position"],
            default_value=row["default_value"],
            description=row["description"],
            config=load_json(row["config"]) or {},
        )


@dataclass
class Collection:
    """Logical table."""
    
    code: str
    name: str
    table_name: str
    owner_type: OwnerType = OwnerType.CUSTOM
    is_extensible: bool = True
    plural_name: Optional[str] = None
    description: Optional[str] = None
    icon: Optional[str] = None
    enable_attachments: bool = False
    enable_activity_log: bool = False
    is_audited: bool = False
    metadata: Dict[str, Any] = field(default_factory=dict)
    id: Optional[str] = None
    properties: List[Property] = field(default_factory=list)
    
    @classmethod
    def from_record(cls, row: Any) -> "Collection":
        return cls(
            id=str(row["id"]) if row["id"] is not None else None,
            code=row["code"],
            name=row["name"],
            plural_name=row["plural_name"],
            description=row["description"],
            icon=row["icon"],
            table_name=row["table_name"],
            owner_type=OwnerType(row["owner_type"]),
            is_extensible=row["is_extensible"],
            enable_attachments=row["enable_attachments"],
            enable_activity_log=row["enable_activity_log"],
            is_audited=row["is_audited"],
            metadata=load_json(row["metadata"]) or {},
        )


@dataclass
class ChangeContext:
    """Identity of the actor behind a mutating call."""
    
    actor_id: Optional[str] = None
    actor_type: ActorType = ActorType.USER
    entity_id: Optional[str] = None
    
    @property
    def is_migration(self) -> bool:
        return self.actor_type == ActorType.MIGRATION
    
    @property
    def change_source(self) -> ChangeSource:
        return ChangeSource.MIGRATION if self.is_migration else ChangeSource.API


@dataclass
class SchemaChangeLogEntry:
    """Append-only audit record of a physical schema change."""
    
    entity_type: EntityType
    entity_code: str
    change_type: AuditChangeType
    change_source: ChangeSource
    performed_by_type: ActorType
    success: bool
    performed_by: Optional[str] = None
    entity_id: Optional[str] = None
    before_state: Optional[Dict[str, Any]] = None
    after_state: Optional[Dict[str, Any]] = None
    ddl_statements: List[str] = field(default_factory=list)
    error_message: Optional[str] = None
    
    def failed(self, ddl_statements: List[str], error_message: str) -> "SchemaChangeLogEntry":
        """Copy of this entry describing a rolled-back attempt."""
        return SchemaChangeLogEntry(
            entity_type=self.entity_type,
            entity_code=self.entity_code,
            change_type=self.change_type,
            change_source=self.change_source,
            performed_by_type=self.performed_by_type,
            performed_by=self.performed_by,
            entity_id=self.entity_id,
            before_state=self.before_state,
            after_state=None,
            ddl_statements=list(ddl_statements),
            success=False,
            error_message=error_message,
        )


class SyncIssueType(str, Enum):
    ORPHANED_TABLE = "orphaned_table"
    ORPHANED_COLUMN = "orphaned_column"
    MISSING_TABLE = "missing_table"
    MISSING_COLUMN = "missing_column"
    TYPE_MISMATCH = "type_mismatch"
    CONSTRAINT_MISMATCH = "constraint_mismatch"


class IssueSeverity(str, Enum):
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"


@dataclass
class SyncIssue:
    """A single divergence between metadata and the physical catalog."""
    
    type: SyncIssueType
    severity: IssueSeverity
    message: str
    auto_resolvable: bool = False
    collection_code: Optional[str] = None
    table_name: Optional[str] = None
    column_name: Optional[str] = None
    suggested_action: Optional[str] = None
    
    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "severity": self.severity.value,
            "message": self.message,
            "auto_resolvable": self.auto_resolvable,
            "collection_code": self.collection_code,
            "table_name": self.table_name,
            "column_name": self.column_name,
            "suggested_action": self.suggested_action,
        }
    
    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SyncIssue":
        return cls(
            type=SyncIssueType(data["type"]),
            severity=IssueSeverity(data["severity"]),
            message=data["message"],
            auto_resolvable=data.get("auto_resolvable", False),
            collection_code=data.get("collection_code"),
            table_name=data.get("table_name"),
            column_name=data.get("column_name"),
            suggested_action=data.get("suggested_action"),
        )


@dataclass
class SyncState:
    """Singleton drift-check bookkeeping row, including the run lock."""
    
    last_full_sync_at: Optional[datetime] = None
    last_full_sync_duration_ms: Optional[int] = None
    last_full_sync_result: Optional[str] = None
    last_drift_check_at: Optional[datetime] = None
    drift_detected: bool = False
    issues: List[SyncIssue] = field(default_factory=list)
    total_collections: int = 0
    total_properties: int = 0
    orphaned_tables: int = 0
    orphaned_columns: int = 0
    lock_holder: Optional[str] = None
    lock_acquired_at: Optional[datetime] = None
    lock_expires_at: Optional[datetime] = None
    
    @classmethod
    def from_record(cls, row: Any) -> "SyncState":
        details = load_json(row["drift_details"]) or {}
        return cls(
            last_full_sync_at=row["last_full_sync_at"],
            last_full_sync_duration_ms=row["last_full_sync_duration_ms"],
            last_full_sync_result=row["last_full_sync_result"],
            last_drift_check_at=row["last_drift_check_at"],
            drift_detected=row["drift_detected"],
            issues=[SyncIssue.from_dict(i) for i in details.get("issues", [])],
            total_collections=row["total_collections"],
            total_properties=row["total_properties"],
            orphaned_tables=row["orphaned_tables"],
            orphaned_columns=row["orphaned_columns"],
            lock_holder=row["sync_lock_holder"],
            lock_acquired_at=row["sync_lock_acquired_at"],
            lock_expires_at=row["sync_lock_expires_at"],
        )
    
    @property
    def has_errors(self) -> bool:
        return any(i.severity == IssueSeverity.ERROR for i in self.issues)
    
    def summary(self) -> str:
        if self.last_drift_check_at is None:
            return "No drift check has run yet"
        if not self.drift_detected:
            return (
                f"Schema in sync: {self.total_collections} collections, "
                f"{self.total_properties} properties"
            )
        errors = sum(1 for i in self.issues if i.severity == IssueSeverity.ERROR)
        return (
            f"Drift detected: {len(self.issues)} issues ({errors} errors), "
            f"{self.orphaned_tables} orphaned tables, "
            f"{self.orphaned_columns} orphaned columns"
        )


# ============================================================================
# Version snapshots
# ============================================================================

class IndexSnapshot(BaseModel):
    name: str
    columns: List[str] = Field(default_factory=list)
    is_unique: bool = False


class PropertySnapshot(BaseModel):
    id: Optional[str] = None
    code: str
    name: str
    property_type_id: str
    storage_column: Optional[str] = None
    is_required: bool = False
    is_unique: bool = False
    is_indexed: bool = False
    default_value: Any = None
    config: Optional[Dict[str, Any]] = None
    order: int = 0


class CollectionSnapshot(BaseModel):
    """Full definition of a collection at one point in time."""
    
    code: str
    name: str
    description: Optional[str] = None
    icon: Optional[str] = None
    storage_table: str
    ownership: OwnerType = OwnerType.CUSTOM
    properties: List[PropertySnapshot] = Field(default_factory=list)
    indexes: List[IndexSnapshot] = Field(default_factory=list)
    metadata: Optional[Dict[str, Any]] = None


class VersionChangeType(str, Enum):
    COLLECTION_CREATED = "collection_created"
    COLLECTION_UPDATED = "collection_updated"
    COLLECTION_DELETED = "collection_deleted"
    PROPERTY_ADDED = "property_added"
    PROPERTY_UPDATED = "property_updated"
    PROPERTY_DELETED = "property_deleted"
    INDEX_ADDED = "index_added"
    INDEX_DELETED = "index_deleted"
    ROLLBACK = "rollback"


@dataclass
class SchemaVersion:
    """Immutable, numbered snapshot in a collection's version chain."""
    
    id: str
    version: int
    collection_code: str
    snapshot: CollectionSnapshot
    change_type: VersionChangeType
    change_summary: Optional[str] = None
    created_by: Optional[str] = None
    parent_version_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: Optional[datetime] = None
    
    @classmethod
    def from_record(cls, row: Any) -> "SchemaVersion":
        return cls(
            id=str(row["id"]),
            version=row["version"],
            collection_code=row["collection_code"],
            snapshot=CollectionSnapshot.model_validate(load_json(row["snapshot"])),
            change_type=VersionChangeType(row["change_type"]),
            change_summary=row["change_summary"],
            created_by=row["created_by"],
            parent_version_id=str(row["parent_version_id"]) if row["parent_version_id"] else None,
            metadata=load_json(row["metadata"]) or {},
            created_at=row["created_at"],
        )
