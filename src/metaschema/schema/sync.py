"""
Drift detection and table discovery for metaschema.

Compares recorded collections and properties with the physical catalog,
reports divergences without changing anything, and imports existing
tables as collections. Runs are serialised across processes by a
self-expiring lock held on the sync state row.
"""

import asyncio
import logging
import os
import secrets
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import AsyncIterator, Dict, List, Optional, Sequence, Set, Tuple

from ..database.introspection import CatalogIntrospector, TableInfo
from ..models import (
    Collection,
    IssueSeverity,
    OwnerType,
    Property,
    SyncIssue,
    SyncIssueType,
    SyncState,
)
from ..naming import STANDARD_COLUMNS, derive_collection_code, is_soft_deleted, to_label
from ..types import infer_logical_type
from .store import MetadataStore


logger = logging.getLogger(__name__)


DEFAULT_SYSTEM_TABLE_PREFIXES = (
    "pg_",
    "sql_",
    "_deleted_",
    "schema_",
    "collection_definition",
    "property_definition",
    "choice_",
)

DEFAULT_DISCOVERY_STRIP_PREFIXES = ("t_", "tbl_", "table_", "legacy_")


def generate_instance_id() -> str:
    return f"instance-{secrets.token_hex(8)}-{os.getpid()}"


@dataclass
class SyncCheckResult:
    """Outcome of one drift check."""
    
    collections_checked: int = 0
    properties_checked: int = 0
    drift_detected: bool = False
    issues: List[SyncIssue] = field(default_factory=list)
    resolved_automatically: int = 0
    requires_manual_review: int = 0
    duration_ms: int = 0
    skipped: bool = False
    
    @property
    def error_count(self) -> int:
        return sum(1 for i in self.issues if i.severity == IssueSeverity.ERROR)


@dataclass
class DiscoveryFailure:
    table_name: str
    error: str


@dataclass
class DiscoveryResult:
    """Per-table outcome of a discovery batch."""
    
    registered: List[Collection] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    failed: List[DiscoveryFailure] = field(default_factory=list)


@dataclass
class SyncSummary:
    status: str
    drift_detected: bool
    last_check_at: Optional[datetime]
    issue_count: int
    collections: int
    properties: int
    message: str


class SyncLock:
    """Single-row optimistic lock with a fixed time-to-live."""
    
    def __init__(self, store: MetadataStore, holder: str, ttl_seconds: int = 300):
        self.store = store
        self.holder = holder
        self.ttl_seconds = ttl_seconds
    
    @asynccontextmanager
    async def hold(self) -> AsyncIterator[bool]:
        """Try to take the lock; yields whether it was acquired.
        
        An acquired lock is released on every exit path.
        """
        acquired = await self.store.try_acquire_sync_lock(self.holder, self.ttl_seconds)
        try:
            yield acquired
        finally:
            if acquired:
                try:
                    await self.store.release_sync_lock(self.holder)
                except Exception as e:
                    # The TTL frees the lock if this release never lands
                    logger.error(f"Failed to release sync lock held by {self.holder}: {e}")


class SyncEngine:
    """Reconciles metadata with the physical catalog."""
    
    def __init__(
        self,
        store: MetadataStore,
        introspector: CatalogIntrospector,
        schema: str = "public",
        lock_ttl_seconds: int = 300,
        system_table_prefixes: Sequence[str] = DEFAULT_SYSTEM_TABLE_PREFIXES,
        discovery_strip_prefixes: Sequence[str] = DEFAULT_DISCOVERY_STRIP_PREFIXES,
        instance_id: Optional[str] = None,
    ):
        self.store = store
        self.introspector = introspector
        self.schema = schema
        self.system_table_prefixes = tuple(system_table_prefixes)
        self.discovery_strip_prefixes = tuple(discovery_strip_prefixes)
        self.instance_id = instance_id or generate_instance_id()
        self.lock = SyncLock(store, self.instance_id, lock_ttl_seconds)
    
    async def perform_drift_check(self) -> SyncCheckResult:
        """Run a drift check unless another caller holds the sync lock."""
        async with self.lock.hold() as acquired:
            if not acquired:
                logger.info(f"Drift check skipped by {self.instance_id}: sync lock is held")
                return SyncCheckResult(skipped=True)
            return await self._check_drift()
    
    async def _check_drift(self) -> SyncCheckResult:
        start_time = time.monotonic()
        
        collections = await self.store.list_collections()
        tables = await self.introspector.get_all_tables()
        
        result = SyncCheckResult(collections_checked=len(collections))
        claimed: Set[Tuple[str, str]] = set()
        orphaned_columns = 0
        
        for collection in collections:
            result.properties_checked += len(collection.properties)
            key = (self.schema, collection.table_name)
            claimed.add(key)
            
            table = tables.get(key)
            if table is None:
                result.issues.append(self._missing_table(collection))
                continue
            
            column_issues = self._check_columns(collection, table)
            orphaned_columns += sum(
                1 for i in column_issues if i.type == SyncIssueType.ORPHANED_COLUMN
            )
            result.issues.extend(column_issues)
        
        orphaned_tables = 0
        for (schema, name), table in tables.items():
            if (schema, name) in claimed or self._is_system_table(name):
                continue
            orphaned_tables += 1
            result.issues.append(SyncIssue(
                type=SyncIssueType.ORPHANED_TABLE,
                severity=IssueSeverity.INFO,
                message=f"Table '{table.full_name}' is not registered as a collection",
                auto_resolvable=False,
                table_name=name,
                suggested_action="Register it with table discovery or drop it manually",
            ))
        
        result.drift_detected = bool(result.issues)
        result.requires_manual_review = sum(1 for i in result.issues if not i.auto_resolvable)
        result.duration_ms = int((time.monotonic() - start_time) * 1000)
        
        await self.store.record_drift_check(
            checked_at=datetime.now(timezone.utc),
            duration_ms=result.duration_ms,
            issues=result.issues,
            total_collections=result.collections_checked,
            total_properties=result.properties_checked,
            orphaned_tables=orphaned_tables,
            orphaned_columns=orphaned_columns,
        )
        
        if result.drift_detected:
            logger.warning(
                f"Drift check found {len(result.issues)} issues "
                f"({result.error_count} errors) in {result.duration_ms}ms"
            )
        else:
            logger.info(
                f"Drift check clean: {result.collections_checked} collections, "
                f"{result.properties_checked} properties in {result.duration_ms}ms"
            )
        return result
    
    def _missing_table(self, collection: Collection) -> SyncIssue:
        custom = collection.owner_type == OwnerType.CUSTOM
        return SyncIssue(
            type=SyncIssueType.MISSING_TABLE,
            severity=IssueSeverity.ERROR,
            message=(
                f"Table '{self.schema}.{collection.table_name}' for collection "
                f"'{collection.code}' does not exist"
            ),
            auto_resolvable=custom,
            collection_code=collection.code,
            table_name=collection.table_name,
            suggested_action=(
                "Recreate the table from the collection definition"
                if custom
                else "Run pending platform migrations"
            ),
        )
    
    def _check_columns(self, collection: Collection, table: TableInfo) -> List[SyncIssue]:
        issues = []
        known = set(STANDARD_COLUMNS)
        
        for prop in collection.properties:
            if not prop.storage_column:
                continue
            known.add(prop.storage_column)
            if not table.has_column(prop.storage_column):
                issues.append(SyncIssue(
                    type=SyncIssueType.MISSING_COLUMN,
                    severity=IssueSeverity.ERROR,
                    message=(
                        f"Column '{prop.storage_column}' for property "
                        f"'{collection.code}.{prop.code}' does not exist"
                    ),
                    auto_resolvable=prop.owner_type == OwnerType.CUSTOM,
                    collection_code=collection.code,
                    table_name=collection.table_name,
                    column_name=prop.storage_column,
                    suggested_action="Add the column or remove the property",
                ))
        
        for column_name in table.columns:
            if column_name in known or is_soft_deleted(column_name):
                continue
            issues.append(SyncIssue(
                type=SyncIssueType.ORPHANED_COLUMN,
                severity=IssueSeverity.WARNING,
                message=(
                    f"Column '{collection.table_name}.{column_name}' is not mapped "
                    f"to a property of '{collection.code}'"
                ),
                auto_resolvable=False,
                collection_code=collection.code,
                table_name=collection.table_name,
                column_name=column_name,
                suggested_action="Register a property for it or soft-delete the column",
            ))
        
        return issues
    
    def _is_system_table(self, name: str) -> bool:
        return name.startswith(self.system_table_prefixes)
    
    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------
    
    async def discover_and_register_tables(
        self,
        table_names: Sequence[str],
        owner_type: OwnerType = OwnerType.CUSTOM,
    ) -> DiscoveryResult:
        """Register existing tables of the collection schema, one table at a time."""
        schema = self.schema
        result = DiscoveryResult()
        
        for table_name in table_names:
            try:
                if await self.store.get_collection_by_table(table_name) is not None:
                    result.skipped.append(table_name)
                    continue
                
                columns = await self.introspector.get_columns(schema, table_name)
                if not columns:
                    result.failed.append(
                        DiscoveryFailure(table_name, f"Table '{schema}.{table_name}' not found")
                    )
                    continue
                
                collection, properties = self._synthesize(table_name, columns, owner_type)
                created = await self.store.create_collection(collection, properties)
                result.registered.append(created)
                logger.info(
                    f"Registered table '{schema}.{table_name}' as collection "
                    f"'{created.code}' with {len(properties)} properties"
                )
            except Exception as e:
                logger.error(f"Failed to register table '{schema}.{table_name}': {e}")
                result.failed.append(DiscoveryFailure(table_name, str(e)))
        
        return result
    
    def _synthesize(self, table_name: str, columns: Dict, owner_type: OwnerType):
        code = derive_collection_code(table_name, self.discovery_strip_prefixes)
        label = to_label(code)
        collection = Collection(
            code=code,
            name=label,
            plural_name=f"{label}s",
            table_name=table_name,
            owner_type=owner_type,
            is_extensible=True,
            enable_attachments=True,
            enable_activity_log=True,
            is_audited=True,
            metadata={
                "discovered": True,
                "discovered_at": datetime.now(timezone.utc).isoformat(),
            },
        )
        
        properties = []
        for column in columns.values():
            if column.name in STANDARD_COLUMNS:
                continue
            properties.append(Property(
                code=column.name,
                name=to_label(column.name, strip_id_suffix=True),
                property_type_id=infer_logical_type(column.data_type).value,
                storage_column=column.name,
                owner_type=owner_type,
                is_required=not column.is_nullable,
                position=len(properties),
            ))
        return collection, properties
    
    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------
    
    async def get_sync_state(self) -> Optional[SyncState]:
        return await self.store.get_sync_state()
    
    async def get_sync_summary(self) -> SyncSummary:
        state = await self.store.get_sync_state()
        if state is None:
            return SyncSummary(
                status="warning",
                drift_detected=False,
                last_check_at=None,
                issue_count=0,
                collections=0,
                properties=0,
                message="Sync state not initialized",
            )
        
        if state.has_errors:
            status = "error"
        elif state.drift_detected:
            status = "warning"
        else:
            status = "healthy"
        
        return SyncSummary(
            status=status,
            drift_detected=state.drift_detected,
            last_check_at=state.last_drift_check_at,
            issue_count=len(state.issues),
            collections=state.total_collections,
            properties=state.total_properties,
            message=state.summary(),
        )


class DriftCheckScheduler:
    """Runs drift checks at startup and then on a fixed interval."""
    
    def __init__(
        self,
        engine: SyncEngine,
        interval_seconds: float = 3600,
        run_on_startup: bool = True,
    ):
        self.engine = engine
        self.interval_seconds = interval_seconds
        self.run_on_startup = run_on_startup
        self.running = False
        self._task: Optional[asyncio.Task] = None
    
    async def start(self) -> None:
        """Start the background loop."""
        if self.running:
            return
        logger.info(
            f"Starting drift check scheduler (interval={self.interval_seconds}s, "
            f"instance={self.engine.instance_id})"
        )
        self.running = True
        self._task = asyncio.create_task(self._run_loop())
    
    async def stop(self) -> None:
        """Stop the loop and wait for it to finish."""
        self.running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Drift check scheduler stopped")
    
    async def _run_loop(self) -> None:
        if self.run_on_startup:
            await self.run_once("startup")
        while self.running:
            await asyncio.sleep(self.interval_seconds)
            if self.running:
                await self.run_once("scheduled")
    
    async def run_once(self, trigger: str = "manual") -> Optional[SyncCheckResult]:
        """Run one drift check; failures are logged, never raised."""
        try:
            return await self.engine.perform_drift_check()
        except Exception as e:
            logger.error(f"{trigger.capitalize()} drift check failed: {e}")
            return None
