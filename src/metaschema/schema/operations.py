"""
Transactional DDL execution for metaschema.

Translates table and column intents into PostgreSQL DDL, runs each
operation inside one transaction together with its audit row, and replaces
destructive drops with timestamped renames so every deletion stays
recoverable.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Union

import asyncpg

from ..database.connection import ConnectionPool
from ..database.introspection import CatalogIntrospector, ColumnInfo, IndexInfo
from ..exceptions import ExecutionError, ValidationError
from ..models import (
    AuditChangeType,
    ChangeContext,
    EntityType,
    SchemaChangeLogEntry,
)
from ..naming import (
    MAX_IDENTIFIER_LENGTH,
    is_soft_deleted,
    qualified_name,
    quote_ident,
    soft_deleted_name,
)
from ..types import LogicalType
from .store import MetadataStore


logger = logging.getLogger(__name__)


STANDARD_COLUMN_DEFINITIONS = (
    '"id" UUID PRIMARY KEY DEFAULT gen_random_uuid()',
    '"created_at" TIMESTAMPTZ NOT NULL DEFAULT NOW()',
    '"updated_at" TIMESTAMPTZ NOT NULL DEFAULT NOW()',
    '"created_by" UUID',
    '"updated_by" UUID',
    '"is_deleted" BOOLEAN NOT NULL DEFAULT false',
    '"deleted_at" TIMESTAMPTZ',
)


@dataclass
class ColumnReference:
    """Foreign key target of a column."""
    
    table: str
    column: str = "id"


@dataclass
class ColumnSpec:
    """Intent for a physical column."""
    
    name: str
    logical_type: Union[LogicalType, str]
    nullable: bool = True
    default_value: Optional[str] = None  # SQL expression
    unique: bool = False
    indexed: bool = False
    references: Optional[ColumnReference] = None


@dataclass
class TableSpec:
    """Intent for a physical table."""
    
    name: str
    columns: List[ColumnSpec] = field(default_factory=list)
    add_standard_columns: bool = True


@dataclass
class ColumnAlteration:
    """Nullability and default changes for an existing column."""
    
    nullable: Optional[bool] = None
    default_value: Optional[str] = None  # SQL expression
    drop_default: bool = False
    
    @property
    def has_changes(self) -> bool:
        return self.nullable is not None or self.default_value is not None or self.drop_default


@dataclass
class DdlResult:
    """Outcome of a DDL operation. Failures are data, not exceptions."""
    
    success: bool
    ddl_statements: List[str] = field(default_factory=list)
    error: Optional[str] = None
    after_state: Optional[Dict[str, Any]] = None
    
    def raise_for_error(self) -> None:
        if not self.success:
            raise ExecutionError(
                self.error or "DDL operation failed",
                executed_statements=self.ddl_statements,
            )


def object_name(*parts: str) -> str:
    """Join parts into an index/trigger/function name within the identifier limit."""
    return "_".join(parts)[:MAX_IDENTIFIER_LENGTH]


def build_column_definition(column: ColumnSpec, schema: str = "public") -> str:
    """Render a column definition; raises ValidationError for unknown types."""
    physical = LogicalType.parse(column.logical_type).physical
    parts = [quote_ident(column.name), physical.sql_type]
    
    if not column.nullable:
        parts.append("NOT NULL")
    
    if column.default_value is not None:
        parts.append(f"DEFAULT {column.default_value}")
    elif physical.default is not None and column.nullable:
        parts.append(f"DEFAULT {physical.default}")
    
    if column.unique:
        parts.append("UNIQUE")
    
    if column.references:
        parts.append(
            f"REFERENCES {qualified_name(schema, column.references.table)}"
            f"({quote_ident(column.references.column)})"
        )
    
    return " ".join(parts)


class DdlExecutor:
    """Executes schema changes with audit logging and soft deletes."""
    
    def __init__(
        self,
        pool: ConnectionPool,
        store: MetadataStore,
        introspector: Optional[CatalogIntrospector] = None,
        schema: str = "public",
        statement_timeout_seconds: int = 300,
        purge_after_days: int = 30,
    ):
        self.pool = pool
        self.store = store
        self.introspector = introspector or CatalogIntrospector(pool)
        self.schema = schema
        self.statement_timeout_seconds = statement_timeout_seconds
        self.purge_after_days = purge_after_days
    
    # ------------------------------------------------------------------
    # Tables
    # ------------------------------------------------------------------
    
    async def create_table(self, spec: TableSpec, context: ChangeContext) -> DdlResult:
        """Create a table with standard columns, indexes and updated_at trigger."""
        table = qualified_name(self.schema, spec.name)
        definitions = list(STANDARD_COLUMN_DEFINITIONS) if spec.add_standard_columns else []
        definitions.extend(build_column_definition(c, self.schema) for c in spec.columns)
        if not definitions:
            raise ValidationError(f"Table '{spec.name}' has no columns")
        
        column_sql = ",\n    ".join(definitions)
        statements = [f"CREATE TABLE {table} (\n    {column_sql}\n)"]
        
        if spec.add_standard_columns:
            function = qualified_name(self.schema, object_name("update", spec.name, "updated_at"))
            statements.extend([
                f"CREATE INDEX {quote_ident(object_name('idx', spec.name, 'created_at'))} "
                f"ON {table} (created_at DESC)",
                f"CREATE INDEX {quote_ident(object_name('idx', spec.name, 'not_deleted'))} "
                f"ON {table} (is_deleted) WHERE is_deleted = false",
                f"CREATE OR REPLACE FUNCTION {function}() RETURNS TRIGGER AS $$\n"
                f"BEGIN\n    NEW.updated_at = NOW();\n    RETURN NEW;\nEND;\n"
                f"$$ LANGUAGE plpgsql",
                f"CREATE TRIGGER {quote_ident(object_name('trg', spec.name, 'updated_at'))} "
                f"BEFORE UPDATE ON {table} FOR EACH ROW EXECUTE FUNCTION {function}()",
            ])
        
        for column in spec.columns:
            statements.extend(self._supporting_indexes(spec.name, column))
        
        entry = self._entry(
            context,
            EntityType.COLLECTION,
            spec.name,
            AuditChangeType.CREATE,
            after_state={
                "table_name": spec.name,
                "schema": self.schema,
                "standard_columns": spec.add_standard_columns,
                "columns": [c.name for c in spec.columns],
            },
        )
        
        async def plan(conn: asyncpg.Connection) -> List[str]:
            return statements
        
        return await self._execute(entry, plan)
    
    async def drop_table(self, table_name: str, context: ChangeContext) -> DdlResult:
        """Soft-delete a table by renaming it to `_deleted_<millis>_<name>`.
        
        The table's indexes and its updated_at trigger function get the same
        prefix, so a new table can reuse the original names.
        """
        table = qualified_name(self.schema, table_name)
        entry = self._entry(context, EntityType.COLLECTION, table_name, AuditChangeType.DELETE)
        
        async def plan(conn: asyncpg.Connection) -> List[str]:
            columns = await self.introspector.get_columns(self.schema, table_name, conn=conn)
            if not columns:
                raise ExecutionError(f"Table '{self.schema}.{table_name}' does not exist")
            
            timestamp_ms = int(time.time() * 1000)
            renamed = soft_deleted_name(table_name, timestamp_ms)
            statements = [f"ALTER TABLE {table} RENAME TO {quote_ident(renamed)}"]
            recovery = [
                f"ALTER TABLE {qualified_name(self.schema, renamed)} "
                f"RENAME TO {quote_ident(table_name)};"
            ]
            
            indexes = await self.introspector.get_indexes(self.schema, table_name, conn=conn)
            renamed_indexes = self._rename_indexes(
                indexes, timestamp_ms, statements, recovery, taken=[renamed]
            )
            
            function = object_name("update", table_name, "updated_at")
            if await self.introspector.function_exists(self.schema, function, conn=conn):
                deleted_function = soft_deleted_name(function, timestamp_ms)
                statements.append(
                    f"ALTER FUNCTION {qualified_name(self.schema, function)}() "
                    f"RENAME TO {quote_ident(deleted_function)}"
                )
                recovery.append(
                    f"ALTER FUNCTION {qualified_name(self.schema, deleted_function)}() "
                    f"RENAME TO {quote_ident(function)};"
                )
            
            entry.before_state = {"table_name": table_name, "columns": list(columns)}
            entry.after_state = self._soft_delete_state(renamed, recovery, renamed_indexes)
            return statements
        
        return await self._execute(entry, plan)
    
    # ------------------------------------------------------------------
    # Columns
    # ------------------------------------------------------------------
    
    async def add_column(
        self, table_name: str, column: ColumnSpec, context: ChangeContext
    ) -> DdlResult:
        """Add a column; reference columns also get a supporting index."""
        table = qualified_name(self.schema, table_name)
        statements = [
            f"ALTER TABLE {table} ADD COLUMN {build_column_definition(column, self.schema)}"
        ]
        statements.extend(self._supporting_indexes(table_name, column))
        
        entry = self._entry(
            context,
            EntityType.PROPERTY,
            column.name,
            AuditChangeType.CREATE,
            after_state={
                "table_name": table_name,
                "column_name": column.name,
                "logical_type": LogicalType.parse(column.logical_type).value,
                "nullable": column.nullable,
                "default_value": column.default_value,
                "unique": column.unique,
            },
        )
        
        async def plan(conn: asyncpg.Connection) -> List[str]:
            existing = await self.introspector.get_column(
                self.schema, table_name, column.name, conn=conn
            )
            if existing is not None:
                raise ExecutionError(
                    f"Column '{column.name}' already exists in table '{table_name}'"
                )
            return statements
        
        return await self._execute(entry, plan)
    
    async def drop_column(
        self, table_name: str, column_name: str, context: ChangeContext
    ) -> DdlResult:
        """Soft-delete a column by renaming it to `_deleted_<millis>_<name>`.
        
        Indexes over the column are renamed the same way.
        """
        table = qualified_name(self.schema, table_name)
        entry = self._entry(context, EntityType.PROPERTY, column_name, AuditChangeType.DELETE)
        
        async def plan(conn: asyncpg.Connection) -> List[str]:
            existing = await self._require_column(conn, table_name, column_name)
            timestamp_ms = int(time.time() * 1000)
            renamed = soft_deleted_name(column_name, timestamp_ms)
            statements = [
                f"ALTER TABLE {table} RENAME COLUMN {quote_ident(column_name)} "
                f"TO {quote_ident(renamed)}"
            ]
            recovery = [
                f"ALTER TABLE {table} RENAME COLUMN {quote_ident(renamed)} "
                f"TO {quote_ident(column_name)};"
            ]
            
            indexes = await self.introspector.get_indexes(self.schema, table_name, conn=conn)
            renamed_indexes = self._rename_indexes(
                [i for i in indexes if column_name in i.columns and not i.is_primary],
                timestamp_ms,
                statements,
                recovery,
            )
            
            entry.before_state = {"table_name": table_name, **existing.to_dict()}
            entry.after_state = self._soft_delete_state(renamed, recovery, renamed_indexes)
            return statements
        
        return await self._execute(entry, plan)
    
    async def alter_column(
        self,
        table_name: str,
        column_name: str,
        alteration: ColumnAlteration,
        context: ChangeContext,
    ) -> DdlResult:
        """Change nullability and/or default of an existing column."""
        if not alteration.has_changes:
            raise ValidationError(f"No changes requested for column '{column_name}'")
        if alteration.drop_default and alteration.default_value is not None:
            raise ValidationError("Cannot both set and drop a default value")
        
        prefix = (
            f"ALTER TABLE {qualified_name(self.schema, table_name)} "
            f"ALTER COLUMN {quote_ident(column_name)}"
        )
        statements = []
        if alteration.nullable is True:
            statements.append(f"{prefix} DROP NOT NULL")
        elif alteration.nullable is False:
            statements.append(f"{prefix} SET NOT NULL")
        if alteration.drop_default:
            statements.append(f"{prefix} DROP DEFAULT")
        elif alteration.default_value is not None:
            statements.append(f"{prefix} SET DEFAULT {alteration.default_value}")
        
        entry = self._entry(
            context,
            EntityType.PROPERTY,
            column_name,
            AuditChangeType.UPDATE,
            after_state={
                "table_name": table_name,
                "column_name": column_name,
                "nullable": alteration.nullable,
                "default_value": alteration.default_value,
                "drop_default": alteration.drop_default,
            },
        )
        
        async def plan(conn: asyncpg.Connection) -> List[str]:
            existing = await self._require_column(conn, table_name, column_name)
            entry.before_state = {"table_name": table_name, **existing.to_dict()}
            return statements
        
        return await self._execute(entry, plan)
    
    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------
    
    async def _execute(
        self,
        entry: SchemaChangeLogEntry,
        plan: Callable[[asyncpg.Connection], Awaitable[List[str]]],
    ) -> DdlResult:
        """Run planned statements and the audit insert in one transaction."""
        executed: List[str] = []
        
        try:
            async with self.pool.acquire() as conn:
                async with conn.transaction():
                    await conn.execute(
                        f"SET LOCAL statement_timeout = '{int(self.statement_timeout_seconds)}s'"
                    )
                    for sql in await plan(conn):
                        await conn.execute(sql)
                        executed.append(sql)
                    
                    entry.ddl_statements = list(executed)
                    await self.store.insert_change_log(entry, conn=conn)
        
        except Exception as e:
            error = e.message if isinstance(e, ExecutionError) else str(e)
            logger.error(
                f"DDL {entry.change_type.value} on {entry.entity_type.value} "
                f"'{entry.entity_code}' rolled back after {len(executed)} statements: {error}"
            )
            await self._log_failure(entry.failed(executed, error))
            return DdlResult(success=False, ddl_statements=executed, error=error)
        
        logger.info(
            f"DDL {entry.change_type.value} on {entry.entity_type.value} "
            f"'{entry.entity_code}' committed ({len(executed)} statements)"
        )
        return DdlResult(success=True, ddl_statements=executed, after_state=entry.after_state)
    
    async def _log_failure(self, entry: SchemaChangeLogEntry) -> None:
        """Record a failed attempt outside the rolled-back transaction."""
        try:
            await self.store.insert_change_log(entry)
        except Exception as e:
            logger.error(f"Failed to write audit entry for '{entry.entity_code}': {e}")
    
    async def _require_column(
        self, conn: asyncpg.Connection, table_name: str, column_name: str
    ) -> ColumnInfo:
        column = await self.introspector.get_column(
            self.schema, table_name, column_name, conn=conn
        )
        if column is None:
            raise ExecutionError(
                f"Column '{column_name}' does not exist in table '{self.schema}.{table_name}'"
            )
        return column
    
    def _supporting_indexes(self, table_name: str, column: ColumnSpec) -> List[str]:
        if not (column.indexed or LogicalType.parse(column.logical_type).is_reference):
            return []
        if column.unique:
            return []
        index = quote_ident(object_name("idx", table_name, column.name))
        return [
            f"CREATE INDEX {index} "
            f"ON {qualified_name(self.schema, table_name)} ({quote_ident(column.name)})"
        ]
    
    def _rename_indexes(
        self,
        indexes: Sequence[IndexInfo],
        timestamp_ms: int,
        statements: List[str],
        recovery: List[str],
        taken: Sequence[str] = (),
    ) -> Dict[str, str]:
        """Append soft-delete renames for indexes not already renamed.
        
        Clipped names that collide with `taken` or with each other get a
        numeric suffix.
        """
        used = set(taken)
        renamed: Dict[str, str] = {}
        for index in indexes:
            if is_soft_deleted(index.name):
                continue
            base = soft_deleted_name(index.name, timestamp_ms)
            deleted, suffix = base, 1
            while deleted in used:
                tail = f"_{suffix}"
                deleted = base[: MAX_IDENTIFIER_LENGTH - len(tail)] + tail
                suffix += 1
            used.add(deleted)
            statements.append(
                f"ALTER INDEX {qualified_name(self.schema, index.name)} "
                f"RENAME TO {quote_ident(deleted)}"
            )
            recovery.append(
                f"ALTER INDEX {qualified_name(self.schema, deleted)} "
                f"RENAME TO {quote_ident(index.name)};"
            )
            renamed[index.name] = deleted
        return renamed
    
    def _soft_delete_state(
        self,
        renamed: str,
        recovery: List[str],
        renamed_indexes: Dict[str, str],
    ) -> Dict[str, Any]:
        return {
            "renamed_to": renamed,
            "renamed_indexes": renamed_indexes,
            "scheduled_purge_after": f"{self.purge_after_days} days",
            "recovery_instructions": "\n".join(recovery),
        }
    
    def _entry(
        self,
        context: ChangeContext,
        entity_type: EntityType,
        entity_code: str,
        change_type: AuditChangeType,
        after_state: Optional[Dict[str, Any]] = None,
    ) -> SchemaChangeLogEntry:
        return SchemaChangeLogEntry(
            entity_type=entity_type,
            entity_id=context.entity_id,
            entity_code=entity_code,
            change_type=change_type,
            change_source=context.change_source,
            performed_by=context.actor_id,
            performed_by_type=context.actor_type,
            success=True,
            after_state=after_state,
        )
