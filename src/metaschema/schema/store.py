"""
Metadata store for metaschema.

Persists collections, properties, audit entries and the sync state row.
Every method takes an optional `conn` so callers can run it inside a
transaction they already hold.
"""

import json
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

import asyncpg

from ..database.connection import ConnectionPool
from ..exceptions import DatabaseError
from ..models import Collection, Property, SchemaChangeLogEntry, SyncIssue, SyncState
from ..naming import quote_ident
from .metadata import (
    CHANGE_LOG_TABLE,
    COLLECTIONS_TABLE,
    PROPERTIES_TABLE,
    SYNC_STATE_TABLE,
)


logger = logging.getLogger(__name__)


def affected_rows(status: str) -> int:
    """Row count from an asyncpg command status such as 'UPDATE 1'."""
    try:
        return int(status.split()[-1])
    except (AttributeError, IndexError, ValueError):
        return 0


def dump_json(value: Any) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value, default=str)


class MetadataStore:
    """Queries over the engine's metadata tables."""
    
    def __init__(self, pool: ConnectionPool, schema: str = "public"):
        self.pool = pool
        self.schema = schema
        self.collections_table = self._table(COLLECTIONS_TABLE)
        self.properties_table = self._table(PROPERTIES_TABLE)
        self.change_log_table = self._table(CHANGE_LOG_TABLE)
        self.sync_state_table = self._table(SYNC_STATE_TABLE)
    
    def _table(self, name: str) -> str:
        return f"{quote_ident(self.schema)}.{quote_ident(name)}"
    
    async def _fetch(self, query: str, *args, conn: Optional[asyncpg.Connection] = None):
        if conn is not None:
            return await conn.fetch(query, *args)
        return await self.pool.fetch(query, *args)
    
    async def _fetchrow(self, query: str, *args, conn: Optional[asyncpg.Connection] = None):
        if conn is not None:
            return await conn.fetchrow(query, *args)
        return await self.pool.fetchrow(query, *args)
    
    async def _execute(self, query: str, *args, conn: Optional[asyncpg.Connection] = None) -> str:
        if conn is not None:
            return await conn.execute(query, *args)
        return await self.pool.execute(query, *args)
    
    # ------------------------------------------------------------------
    # Collections and properties
    # ------------------------------------------------------------------
    
    async def get_collection(
        self, code: str, conn: Optional[asyncpg.Connection] = None
    ) -> Optional[Collection]:
        """Get a collection by code, without its properties."""
        row = await self._fetchrow(
            f"SELECT * FROM {self.collections_table} WHERE code = $1", code, conn=conn
        )
        return Collection.from_record(row) if row else None
    
    async def get_collection_by_table(
        self, table_name: str, conn: Optional[asyncpg.Connection] = None
    ) -> Optional[Collection]:
        row = await self._fetchrow(
            f"SELECT * FROM {self.collections_table} WHERE table_name = $1",
            table_name,
            conn=conn,
        )
        return Collection.from_record(row) if row else None
    
    async def list_properties(
        self, collection_id: str, conn: Optional[asyncpg.Connection] = None
    ) -> List[Property]:
        """Properties of a collection in position order."""
        rows = await self._fetch(
            f"SELECT * FROM {self.properties_table} "
            f"WHERE collection_id = $1 ORDER BY position, code",
            collection_id,
            conn=conn,
        )
        return [Property.from_record(row) for row in rows]
    
    async def get_collection_with_properties(
        self, code: str, conn: Optional[asyncpg.Connection] = None
    ) -> Optional[Collection]:
        collection = await self.get_collection(code, conn=conn)
        if collection is not None:
            collection.properties = await self.list_properties(collection.id, conn=conn)
        return collection
    
    async def list_collections(self) -> List[Collection]:
        """All collections, each with its ordered properties."""
        collection_rows = await self._fetch(
            f"SELECT * FROM {self.collections_table} ORDER BY code"
        )
        property_rows = await self._fetch(
            f"SELECT * FROM {self.properties_table} ORDER BY collection_id, position, code"
        )
        
        collections = [Collection.from_record(row) for row in collection_rows]
        by_id = {c.id: c for c in collections}
        for row in property_rows:
            prop = Property.from_record(row)
            owner = by_id.get(prop.collection_id)
            if owner is not None:
                owner.properties.append(prop)
        return collections
    
    async def create_collection(
        self,
        collection: Collection,
        properties: Sequence[Property] = (),
        conn: Optional[asyncpg.Connection] = None,
    ) -> Collection:
        """Insert a collection and its properties atomically."""
        if conn is None:
            async with self.pool.transaction() as tx_conn:
                return await self.create_collection(collection, properties, conn=tx_conn)
        
        row = await conn.fetchrow(
            f"""
            INSERT INTO {self.collections_table} (
                code, name, plural_name, description, icon, table_name, owner_type,
                is_extensible, enable_attachments, enable_activity_log, is_audited, metadata
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12::jsonb)
            RETURNING *
            """,
            collection.code,
            collection.name,
            collection.plural_name,
            collection.description,
            collection.icon,
            collection.table_name,
            collection.owner_type.value,
            collection.is_extensible,
            collection.enable_attachments,
            collection.enable_activity_log,
            collection.is_audited,
            dump_json(collection.metadata or {}),
        )
        created = Collection.from_record(row)
        
        for prop in properties:
            prop_row = await conn.fetchrow(
                f"""
                INSERT INTO {self.properties_table} (
                    collection_id, code, name, description, property_type_id, storage_column,
                    is_required, is_unique, is_indexed, default_value, config, owner_type, position
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11::jsonb, $12, $13)
                RETURNING *
                """,
                created.id,
                prop.code,
                prop.name,
                prop.description,
                prop.property_type_id,
                prop.storage_column,
                prop.is_required,
                prop.is_unique,
                prop.is_indexed,
                prop.default_value,
                dump_json(prop.config or {}),
                prop.owner_type.value,
                prop.position,
            )
            created.properties.append(Property.from_record(prop_row))
        
        return created
    
    async def update_collection_metadata(
        self,
        code: str,
        name: str,
        description: Optional[str],
        icon: Optional[str],
        metadata: Optional[Dict[str, Any]],
        conn: Optional[asyncpg.Connection] = None,
    ) -> bool:
        """Overwrite the descriptive fields of a collection."""
        status = await self._execute(
            f"""
            UPDATE {self.collections_table}
            SET name = $2, description = $3, icon = $4, metadata = $5::jsonb, updated_at = NOW()
            WHERE code = $1
            """,
            code,
            name,
            description,
            icon,
            dump_json(metadata or {}),
            conn=conn,
        )
        return affected_rows(status) == 1
    
    # ------------------------------------------------------------------
    # Audit log
    # ------------------------------------------------------------------
    
    async def insert_change_log(
        self,
        entry: SchemaChangeLogEntry,
        conn: Optional[asyncpg.Connection] = None,
    ) -> None:
        """Append an audit row."""
        await self._execute(
            f"""
            INSERT INTO {self.change_log_table} (
                entity_type, entity_id, entity_code, change_type, change_source,
                before_state, after_state, ddl_statements, performed_by, performed_by_type,
                success, error_message
            ) VALUES ($1, $2, $3, $4, $5, $6::jsonb, $7::jsonb, $8::jsonb, $9, $10, $11, $12)
            """,
            entry.entity_type.value,
            entry.entity_id,
            entry.entity_code,
            entry.change_type.value,
            entry.change_source.value,
            dump_json(entry.before_state),
            dump_json(entry.after_state),
            dump_json(list(entry.ddl_statements)),
            entry.performed_by,
            entry.performed_by_type.value,
            entry.success,
            entry.error_message,
            conn=conn,
        )
    
    # ------------------------------------------------------------------
    # Sync state
    # ------------------------------------------------------------------
    
    async def get_sync_state(self) -> Optional[SyncState]:
        row = await self._fetchrow(f"SELECT * FROM {self.sync_state_table} WHERE id = 1")
        return SyncState.from_record(row) if row else None
    
    async def try_acquire_sync_lock(self, holder: str, ttl_seconds: int) -> bool:
        """Claim the sync lock if it is free or expired."""
        status = await self._execute(
            f"""
            UPDATE {self.sync_state_table}
            SET sync_lock_holder = $1,
                sync_lock_acquired_at = NOW(),
                sync_lock_expires_at = NOW() + make_interval(secs => $2)
            WHERE id = 1
            AND (sync_lock_holder IS NULL OR sync_lock_expires_at < NOW())
            """,
            holder,
            float(ttl_seconds),
        )
        return affected_rows(status) == 1
    
    async def release_sync_lock(self, holder: str) -> bool:
        """Clear the sync lock if this holder still owns it."""
        status = await self._execute(
            f"""
            UPDATE {self.sync_state_table}
            SET sync_lock_holder = NULL,
                sync_lock_acquired_at = NULL,
                sync_lock_expires_at = NULL
            WHERE id = 1 AND sync_lock_holder = $1
            """,
            holder,
        )
        return affected_rows(status) == 1
    
    async def record_drift_check(
        self,
        checked_at: datetime,
        duration_ms: int,
        issues: List[SyncIssue],
        total_collections: int,
        total_properties: int,
        orphaned_tables: int,
        orphaned_columns: int,
    ) -> None:
        """Store the outcome of a drift check on the sync state row."""
        drift_details = {
            "issues": [issue.to_dict() for issue in issues],
            "checked_at": checked_at.isoformat(),
        }
        status = await self._execute(
            f"""
            UPDATE {self.sync_state_table}
            SET last_full_sync_at = $1,
                last_full_sync_duration_ms = $2,
                last_full_sync_result = $3,
                last_drift_check_at = $1,
                drift_detected = $4,
                drift_details = $5::jsonb,
                total_collections = $6,
                total_properties = $7,
                orphaned_tables = $8,
                orphaned_columns = $9,
                updated_at = NOW()
            WHERE id = 1
            """,
            checked_at,
            duration_ms,
            "issues_found" if issues else "success",
            bool(issues),
            dump_json(drift_details),
            total_collections,
            total_properties,
            orphaned_tables,
            orphaned_columns,
        )
        if affected_rows(status) != 1:
            raise DatabaseError("Sync state row is missing; run metadata setup first")
