"""
Metadata table management for metaschema.

Creates and checks the engine's own bookkeeping tables: collection and
property definitions, the schema change log, version snapshots and the
singleton sync state row.
"""

import logging
from typing import Dict, Any, Optional

from ..database.connection import ConnectionPool
from ..database.introspection import CatalogIntrospector
from ..exceptions import SchemaError
from ..naming import quote_ident


logger = logging.getLogger(__name__)


COLLECTIONS_TABLE = "collection_definitions"
PROPERTIES_TABLE = "property_definitions"
CHANGE_LOG_TABLE = "schema_change_log"
VERSIONS_TABLE = "schema_versions"
SYNC_STATE_TABLE = "schema_sync_state"


class MetadataManager:
    """Manages the metadata tables the schema engine reads and writes."""
    
    def __init__(
        self,
        pool: ConnectionPool,
        schema: str = "public",
        introspector: Optional[CatalogIntrospector] = None,
    ):
        self.pool = pool
        self.schema = schema
        self.introspector = introspector or CatalogIntrospector(pool)
        
        # Order matters: property definitions reference collection definitions
        self.required_tables = {
            COLLECTIONS_TABLE: self._get_collections_ddl(),
            PROPERTIES_TABLE: self._get_properties_ddl(),
            CHANGE_LOG_TABLE: self._get_change_log_ddl(),
            VERSIONS_TABLE: self._get_versions_ddl(),
            SYNC_STATE_TABLE: self._get_sync_state_ddl(),
        }
    
    async def setup_metadata_tables(self) -> Dict[str, Any]:
        """Create any missing metadata tables and seed the sync state row."""
        results = {
            "tables_created": [],
            "errors": [],
        }
        
        try:
            async with self.pool.acquire() as conn:
                await conn.execute(f"CREATE SCHEMA IF NOT EXISTS {quote_ident(self.schema)}")
            
            for table_name, ddl in self.required_tables.items():
                try:
                    async with self.pool.acquire() as conn:
                        await conn.execute(ddl)
                    results["tables_created"].append(f"{self.schema}.{table_name}")
                except Exception as e:
                    error_msg = f"Failed to create table {table_name}: {e}"
                    logger.error(error_msg)
                    results["errors"].append(error_msg)
            
            if not results["errors"]:
                async with self.pool.acquire() as conn:
                    await conn.execute(
                        f"INSERT INTO {self._table(SYNC_STATE_TABLE)} (id) VALUES (1) "
                        f"ON CONFLICT (id) DO NOTHING"
                    )
            
            logger.info(f"Metadata table setup completed: {len(results['errors'])} errors")
            return results
            
        except Exception as e:
            logger.error(f"Metadata table setup failed: {e}")
            raise SchemaError(f"Failed to setup metadata tables: {e}") from e
    
    async def check_metadata_integrity(self) -> Dict[str, Any]:
        """Report which metadata tables are missing."""
        integrity_report = {
            "tables_exist": {},
            "missing_components": [],
            "is_healthy": True,
        }
        
        try:
            existing_tables = await self.introspector.list_tables(self.schema)
            table_names = {table for _, table in existing_tables}
            
            for table_name in self.required_tables:
                exists = table_name in table_names
                integrity_report["tables_exist"][table_name] = exists
                if not exists:
                    integrity_report["missing_components"].append(f"table:{table_name}")
                    integrity_report["is_healthy"] = False
            
            return integrity_report
            
        except Exception as e:
            logger.error(f"Metadata integrity check failed: {e}")
            return {
                "error": str(e),
                "is_healthy": False,
            }
    
    def _table(self, name: str) -> str:
        return f"{quote_ident(self.schema)}.{quote_ident(name)}"
    
    # DDL definitions for metadata tables
    
    def _get_collections_ddl(self) -> str:
        table = self._table(COLLECTIONS_TABLE)
        return f"""
        CREATE TABLE IF NOT EXISTS {table} (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            code VARCHAR(63) NOT NULL UNIQUE,
            name VARCHAR(255) NOT NULL,
            plural_name VARCHAR(255),
            description TEXT,
            icon VARCHAR(100),
            table_name VARCHAR(63) NOT NULL UNIQUE,
            owner_type VARCHAR(20) NOT NULL DEFAULT 'custom',
            is_extensible BOOLEAN NOT NULL DEFAULT true,
            enable_attachments BOOLEAN NOT NULL DEFAULT false,
            enable_activity_log BOOLEAN NOT NULL DEFAULT false,
            is_audited BOOLEAN NOT NULL DEFAULT false,
            metadata JSONB NOT NULL DEFAULT '{{}}'::jsonb,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            
            CONSTRAINT valid_collection_owner CHECK (owner_type IN ('system', 'module', 'custom'))
        );
        """
    
    def _get_properties_ddl(self) -> str:
        table = self._table(PROPERTIES_TABLE)
        collections = self._table(COLLECTIONS_TABLE)
        return f"""
        CREATE TABLE IF NOT EXISTS {table} (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            collection_id UUID NOT NULL REFERENCES {collections}(id) ON DELETE CASCADE,
            code VARCHAR(63) NOT NULL,
            name VARCHAR(255) NOT NULL,
            description TEXT,
            property_type_id VARCHAR(64) NOT NULL,
            storage_column VARCHAR(63) NOT NULL,
            is_required BOOLEAN NOT NULL DEFAULT false,
            is_unique BOOLEAN NOT NULL DEFAULT false,
            is_indexed BOOLEAN NOT NULL DEFAULT false,
            default_value TEXT,
            config JSONB NOT NULL DEFAULT '{{}}'::jsonb,
            owner_type VARCHAR(20) NOT NULL DEFAULT 'custom',
            position INTEGER NOT NULL DEFAULT 0,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            
            CONSTRAINT unique_property_code UNIQUE (collection_id, code),
            CONSTRAINT unique_property_column UNIQUE (collection_id, storage_column),
            CONSTRAINT unique_property_position UNIQUE (collection_id, position),
            CONSTRAINT valid_property_owner CHECK (owner_type IN ('system', 'module', 'custom'))
        );
        
        CREATE INDEX IF NOT EXISTS idx_property_definitions_collection
        ON {table}(collection_id);
        """
    
    def _get_change_log_ddl(self) -> str:
        table = self._table(CHANGE_LOG_TABLE)
        return f"""
        CREATE TABLE IF NOT EXISTS {table} (
            id BIGSERIAL PRIMARY KEY,
            entity_type VARCHAR(20) NOT NULL,
            entity_id VARCHAR(255),
            entity_code VARCHAR(63) NOT NULL,
            change_type VARCHAR(20) NOT NULL,
            change_source VARCHAR(20) NOT NULL,
            before_state JSONB,
            after_state JSONB,
            ddl_statements JSONB NOT NULL DEFAULT '[]'::jsonb,
            performed_by VARCHAR(255),
            performed_by_type VARCHAR(20) NOT NULL,
            success BOOLEAN NOT NULL,
            error_message TEXT,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        );
        
        CREATE INDEX IF NOT EXISTS idx_schema_change_log_entity
        ON {table}(entity_type, entity_code);
        
        CREATE INDEX IF NOT EXISTS idx_schema_change_log_created
        ON {table}(created_at DESC);
        """
    
    def _get_versions_ddl(self) -> str:
        table = self._table(VERSIONS_TABLE)
        return f"""
        CREATE TABLE IF NOT EXISTS {table} (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            version INTEGER NOT NULL,
            collection_code VARCHAR(63) NOT NULL,
            snapshot JSONB NOT NULL,
            change_type VARCHAR(50) NOT NULL,
            change_summary TEXT,
            created_by VARCHAR(255),
            parent_version_id UUID REFERENCES {table}(id),
            metadata JSONB NOT NULL DEFAULT '{{}}'::jsonb,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            
            CONSTRAINT unique_collection_version UNIQUE (collection_code, version)
        );
        """
    
    def _get_sync_state_ddl(self) -> str:
        table = self._table(SYNC_STATE_TABLE)
        return f"""
        CREATE TABLE IF NOT EXISTS {table} (
            id SMALLINT PRIMARY KEY DEFAULT 1,
            last_full_sync_at TIMESTAMPTZ,
            last_full_sync_duration_ms INTEGER,
            last_full_sync_result VARCHAR(20),
            last_drift_check_at TIMESTAMPTZ,
            drift_detected BOOLEAN NOT NULL DEFAULT false,
            drift_details JSONB,
            total_collections INTEGER NOT NULL DEFAULT 0,
            total_properties INTEGER NOT NULL DEFAULT 0,
            orphaned_tables INTEGER NOT NULL DEFAULT 0,
            orphaned_columns INTEGER NOT NULL DEFAULT 0,
            sync_lock_holder VARCHAR(255),
            sync_lock_acquired_at TIMESTAMPTZ,
            sync_lock_expires_at TIMESTAMPTZ,
            updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            
            CONSTRAINT single_sync_state CHECK (id = 1)
        );
        """
