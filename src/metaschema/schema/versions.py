"""
Collection version history for metaschema.

Each structural change to a collection is captured as an immutable,
sequentially numbered snapshot linked to its predecessor. Snapshots can be
diffed, and a collection's descriptive metadata can be rolled back to an
earlier snapshot.
"""

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union

import asyncpg

from ..database.connection import ConnectionPool
from ..database.introspection import CatalogIntrospector
from ..exceptions import NotFoundError, ValidationError
from ..models import (
    CollectionSnapshot,
    IndexSnapshot,
    PropertySnapshot,
    SchemaVersion,
    VersionChangeType,
)
from ..naming import quote_ident
from .metadata import VERSIONS_TABLE
from .store import MetadataStore


logger = logging.getLogger(__name__)


class ChangeKind(str, Enum):
    ADDED = "added"
    REMOVED = "removed"
    MODIFIED = "modified"


@dataclass
class VersionChange:
    """One difference between two snapshots."""
    
    kind: ChangeKind
    path: str
    description: str
    old_value: Any = None
    new_value: Any = None


@dataclass
class VersionComparison:
    from_version: int
    to_version: int
    changes: List[VersionChange] = field(default_factory=list)


@dataclass
class VersionHistory:
    versions: List[SchemaVersion]
    total: int


@dataclass
class RollbackResult:
    success: bool
    new_version: Optional[SchemaVersion] = None
    error: Optional[str] = None


def diff_snapshots(old: CollectionSnapshot, new: CollectionSnapshot) -> List[VersionChange]:
    """Structural differences from `old` to `new`."""
    changes: List[VersionChange] = []
    
    if old.name != new.name:
        changes.append(VersionChange(
            ChangeKind.MODIFIED, "name",
            f'Collection name changed from "{old.name}" to "{new.name}"',
            old.name, new.name,
        ))
    if old.description != new.description:
        changes.append(VersionChange(
            ChangeKind.MODIFIED, "description",
            "Collection description changed",
            old.description, new.description,
        ))
    
    old_props = {p.code: p for p in old.properties}
    new_props = {p.code: p for p in new.properties}
    
    for code, prop in new_props.items():
        if code not in old_props:
            changes.append(VersionChange(
                ChangeKind.ADDED, f"properties.{code}",
                f'Property "{prop.name}" added',
                None, prop.model_dump(mode="json"),
            ))
    
    for code, prop in old_props.items():
        if code not in new_props:
            changes.append(VersionChange(
                ChangeKind.REMOVED, f"properties.{code}",
                f'Property "{prop.name}" removed',
                prop.model_dump(mode="json"), None,
            ))
            continue
        changes.extend(_diff_property(prop, new_props[code]))
    
    old_indexes = {i.name for i in old.indexes}
    new_indexes = {i.name for i in new.indexes}
    for name in sorted(new_indexes - old_indexes):
        changes.append(VersionChange(ChangeKind.ADDED, f"indexes.{name}", f'Index "{name}" added'))
    for name in sorted(old_indexes - new_indexes):
        changes.append(VersionChange(ChangeKind.REMOVED, f"indexes.{name}", f'Index "{name}" removed'))
    
    return changes


def _diff_property(old: PropertySnapshot, new: PropertySnapshot) -> List[VersionChange]:
    code = old.code
    path = f"properties.{code}"
    changes = []
    
    if old.name != new.name:
        changes.append(VersionChange(
            ChangeKind.MODIFIED, f"{path}.name",
            f'Property "{code}" renamed from "{old.name}" to "{new.name}"',
            old.name, new.name,
        ))
    if old.property_type_id != new.property_type_id:
        changes.append(VersionChange(
            ChangeKind.MODIFIED, f"{path}.property_type_id",
            f'Property "{code}" type changed from {old.property_type_id} to {new.property_type_id}',
            old.property_type_id, new.property_type_id,
        ))
    if old.is_required != new.is_required:
        changes.append(VersionChange(
            ChangeKind.MODIFIED, f"{path}.is_required",
            f'Property "{code}" required constraint {"added" if new.is_required else "removed"}',
            old.is_required, new.is_required,
        ))
    if old.is_unique != new.is_unique:
        changes.append(VersionChange(
            ChangeKind.MODIFIED, f"{path}.is_unique",
            f'Property "{code}" unique constraint {"added" if new.is_unique else "removed"}',
            old.is_unique, new.is_unique,
        ))
    return changes


class VersionEngine:
    """Creates, reads, compares and restores collection snapshots."""
    
    def __init__(
        self,
        pool: ConnectionPool,
        store: MetadataStore,
        introspector: CatalogIntrospector,
        schema: str = "public",
        metadata_schema: str = "public",
        history_page_size: int = 50,
    ):
        self.pool = pool
        self.store = store
        self.introspector = introspector
        self.schema = schema
        self.history_page_size = history_page_size
        self.versions_table = f"{quote_ident(metadata_schema)}.{quote_ident(VERSIONS_TABLE)}"
    
    async def create_version(
        self,
        collection_code: str,
        snapshot: CollectionSnapshot,
        change_type: VersionChangeType,
        change_summary: Optional[str] = None,
        created_by: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        conn: Optional[asyncpg.Connection] = None,
    ) -> SchemaVersion:
        """Append a version numbered one past the current latest."""
        if conn is None:
            async with self.pool.transaction() as tx_conn:
                return await self.create_version(
                    collection_code, snapshot, change_type, change_summary,
                    created_by, metadata, conn=tx_conn,
                )
        
        # Held until commit so concurrent writers of one collection number in turn
        await conn.execute("SELECT pg_advisory_xact_lock(hashtext($1))", collection_code)
        latest = await conn.fetchrow(
            f"""
            SELECT id, version FROM {self.versions_table}
            WHERE collection_code = $1
            ORDER BY version DESC
            LIMIT 1
            """,
            collection_code,
        )
        next_version = latest["version"] + 1 if latest else 1
        parent_id = latest["id"] if latest else None
        
        row = await conn.fetchrow(
            f"""
            INSERT INTO {self.versions_table} (
                version, collection_code, snapshot, change_type, change_summary,
                created_by, parent_version_id, metadata
            ) VALUES ($1, $2, $3::jsonb, $4, $5, $6, $7, $8::jsonb)
            RETURNING *
            """,
            next_version,
            collection_code,
            json.dumps(snapshot.model_dump(mode="json")),
            change_type.value,
            change_summary,
            created_by,
            parent_id,
            json.dumps(metadata or {}),
        )
        
        logger.info(
            f"Created version {next_version} of '{collection_code}' ({change_type.value})"
        )
        return SchemaVersion.from_record(row)
    
    async def get_version_history(
        self,
        collection_code: str,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> VersionHistory:
        """Versions newest first, with the total count for paging."""
        limit = limit or self.history_page_size
        rows = await self.pool.fetch(
            f"""
            SELECT * FROM {self.versions_table}
            WHERE collection_code = $1
            ORDER BY version DESC
            LIMIT $2 OFFSET $3
            """,
            collection_code,
            limit,
            offset,
        )
        total = await self.pool.fetchval(
            f"SELECT COUNT(*) FROM {self.versions_table} WHERE collection_code = $1",
            collection_code,
        )
        return VersionHistory(
            versions=[SchemaVersion.from_record(row) for row in rows],
            total=int(total or 0),
        )
    
    async def get_version(
        self,
        collection_code: str,
        version: Union[int, str],
        conn: Optional[asyncpg.Connection] = None,
    ) -> Optional[SchemaVersion]:
        """Look up a version by number, or by id when given a non-numeric string."""
        if isinstance(version, int) or (isinstance(version, str) and version.isdigit()):
            query = (
                f"SELECT * FROM {self.versions_table} "
                f"WHERE collection_code = $1 AND version = $2"
            )
            arg: Any = int(version)
        else:
            query = (
                f"SELECT * FROM {self.versions_table} "
                f"WHERE collection_code = $1 AND id = $2::uuid"
            )
            arg = str(version)
        
        if conn is not None:
            row = await conn.fetchrow(query, collection_code, arg)
        else:
            row = await self.pool.fetchrow(query, collection_code, arg)
        return SchemaVersion.from_record(row) if row else None
    
    async def get_latest_version(
        self,
        collection_code: str,
        conn: Optional[asyncpg.Connection] = None,
    ) -> Optional[SchemaVersion]:
        query = (
            f"SELECT * FROM {self.versions_table} "
            f"WHERE collection_code = $1 ORDER BY version DESC LIMIT 1"
        )
        if conn is not None:
            row = await conn.fetchrow(query, collection_code)
        else:
            row = await self.pool.fetchrow(query, collection_code)
        return SchemaVersion.from_record(row) if row else None
    
    async def compare_versions(
        self,
        collection_code: str,
        from_version: int,
        to_version: int,
    ) -> Optional[VersionComparison]:
        """Diff two versions; None when either does not exist."""
        old = await self.get_version(collection_code, from_version)
        new = await self.get_version(collection_code, to_version)
        if old is None or new is None:
            return None
        return VersionComparison(
            from_version=old.version,
            to_version=new.version,
            changes=diff_snapshots(old.snapshot, new.snapshot),
        )
    
    async def rollback_to_version(
        self,
        collection_code: str,
        target_version: int,
        user_id: Optional[str] = None,
    ) -> RollbackResult:
        """Restore a collection's metadata fields from an older snapshot.
        
        Properties and the physical table are not touched. Never raises:
        failures come back as an unsuccessful result.
        """
        try:
            async with self.pool.transaction() as conn:
                target = await self.get_version(collection_code, target_version, conn=conn)
                if target is None:
                    raise NotFoundError(f"Version {target_version} not found")
                
                latest = await self.get_latest_version(collection_code, conn=conn)
                if latest is None:
                    raise NotFoundError("No current version found")
                if target.version >= latest.version:
                    raise ValidationError("Cannot rollback to a newer or same version")
                
                snapshot = target.snapshot
                updated = await self.store.update_collection_metadata(
                    collection_code,
                    snapshot.name,
                    snapshot.description,
                    snapshot.icon,
                    snapshot.metadata,
                    conn=conn,
                )
                if not updated:
                    raise NotFoundError(f"Collection '{collection_code}' not found")
                
                new_version = await self.create_version(
                    collection_code,
                    snapshot,
                    VersionChangeType.ROLLBACK,
                    f"Rolled back to version {target.version}",
                    user_id,
                    metadata={
                        "rolled_back_from": latest.version,
                        "rolled_back_to": target.version,
                    },
                    conn=conn,
                )
            
            return RollbackResult(success=True, new_version=new_version)
        
        except Exception as e:
            error = getattr(e, "message", None) or str(e)
            logger.error(
                f"Rollback of '{collection_code}' to version {target_version} failed: {error}"
            )
            return RollbackResult(success=False, error=error)
    
    async def capture_current_snapshot(self, collection_code: str) -> Optional[CollectionSnapshot]:
        """Snapshot the collection's current metadata and non-primary indexes."""
        collection = await self.store.get_collection_with_properties(collection_code)
        if collection is None:
            return None
        
        indexes = await self.introspector.get_indexes(self.schema, collection.table_name)
        
        return CollectionSnapshot(
            code=collection.code,
            name=collection.name,
            description=collection.description,
            icon=collection.icon,
            storage_table=collection.table_name,
            ownership=collection.owner_type,
            properties=[
                PropertySnapshot(
                    id=prop.id,
                    code=prop.code,
                    name=prop.name,
                    property_type_id=prop.property_type_id,
                    storage_column=prop.storage_column,
                    is_required=prop.is_required,
                    is_unique=prop.is_unique,
                    is_indexed=prop.is_indexed,
                    default_value=prop.default_value,
                    config=prop.config or None,
                    order=prop.position,
                )
                for prop in collection.properties
            ],
            indexes=[
                IndexSnapshot(name=index.name, columns=index.columns, is_unique=index.is_unique)
                for index in indexes
                if not index.is_primary
            ],
            metadata=collection.metadata or None,
        )
    
    async def create_initial_snapshot(
        self, collection_code: str, user_id: Optional[str] = None
    ) -> SchemaVersion:
        """Snapshot a collection as it stands now, e.g. right after creation."""
        snapshot = await self.capture_current_snapshot(collection_code)
        if snapshot is None:
            raise NotFoundError(f"Collection '{collection_code}' not found")
        return await self.create_version(
            collection_code,
            snapshot,
            VersionChangeType.COLLECTION_CREATED,
            "Initial snapshot",
            user_id,
        )
