"""
Component wiring for metaschema.

Builds the connection pool, metadata store and the four engines from a
MetaschemaConfig, and owns their lifecycle.
"""

import logging
from typing import Optional

from .config import MetaschemaConfig
from .database.connection import ConnectionPool
from .database.introspection import CatalogIntrospector
from .schema.governance import GovernanceEngine
from .schema.metadata import MetadataManager
from .schema.operations import DdlExecutor
from .schema.store import MetadataStore
from .schema.sync import DriftCheckScheduler, SyncEngine
from .schema.versions import VersionEngine


logger = logging.getLogger(__name__)


class SchemaEngine:
    """Holds every schema engine component built from one configuration."""
    
    def __init__(self, config: MetaschemaConfig, pool: Optional[ConnectionPool] = None):
        self.config = config
        self.pool = pool or ConnectionPool(config.database)
        metadata_schema = config.ddl.metadata_schema
        
        self.introspector = CatalogIntrospector(self.pool)
        self.metadata = MetadataManager(
            self.pool, schema=metadata_schema, introspector=self.introspector
        )
        self.store = MetadataStore(self.pool, schema=metadata_schema)
        
        self.governance = GovernanceEngine(
            self.store,
            self.introspector,
            schema=config.ddl.default_schema,
            reserved_prefix=config.governance.reserved_prefix,
            min_identifier_length=config.governance.min_identifier_length,
            max_identifier_length=config.governance.max_identifier_length,
            extra_reserved_collection_codes=config.governance.extra_reserved_collection_codes,
            extra_reserved_property_codes=config.governance.extra_reserved_property_codes,
            null_check_timeout_ms=config.governance.null_check_timeout_ms,
        )
        self.ddl = DdlExecutor(
            self.pool,
            self.store,
            self.introspector,
            schema=config.ddl.default_schema,
            statement_timeout_seconds=config.ddl.statement_timeout_seconds,
            purge_after_days=config.ddl.purge_after_days,
        )
        self.sync = SyncEngine(
            self.store,
            self.introspector,
            schema=config.ddl.default_schema,
            lock_ttl_seconds=config.sync.lock_ttl_seconds,
            system_table_prefixes=config.sync.system_table_prefixes,
            discovery_strip_prefixes=config.sync.discovery_strip_prefixes,
        )
        self.versions = VersionEngine(
            self.pool,
            self.store,
            self.introspector,
            schema=config.ddl.default_schema,
            metadata_schema=metadata_schema,
            history_page_size=config.versions.history_page_size,
        )
        self.scheduler = DriftCheckScheduler(
            self.sync,
            interval_seconds=config.sync.interval_seconds,
            run_on_startup=config.sync.run_on_startup,
        )
    
    async def start(self) -> None:
        """Open the pool, ensure metadata tables exist and start drift checks."""
        logger.info(f"Starting {self.config.service_name}")
        await self.pool.initialize()
        await self.metadata.setup_metadata_tables()
        if self.config.sync.enabled:
            await self.scheduler.start()
    
    async def stop(self) -> None:
        await self.scheduler.stop()
        await self.pool.close()
        logger.info(f"Stopped {self.config.service_name}")
    
    async def __aenter__(self) -> "SchemaEngine":
        await self.start()
        return self
    
    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.stop()
