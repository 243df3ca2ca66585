"""
Database catalog introspection for metaschema.

Read-only queries against information_schema and pg_catalog: tables,
columns, indexes and nullability of existing data.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any, Tuple

import asyncpg

from .connection import ConnectionPool
from ..exceptions import DatabaseError, SchemaError
from ..naming import qualified_name, quote_ident
from ..types import BaseType


logger = logging.getLogger(__name__)

SYSTEM_SCHEMAS = ("information_schema", "pg_catalog", "pg_toast")


@dataclass
class ColumnInfo:
    """Information about a database column."""
    
    name: str
    data_type: str
    is_nullable: bool
    default_value: Optional[str] = None
    max_length: Optional[int] = None
    numeric_precision: Optional[int] = None
    numeric_scale: Optional[int] = None
    ordinal_position: int = 0
    udt_name: Optional[str] = None
    
    @property
    def base_type(self) -> Optional[BaseType]:
        """Physical base type, or None for types the engine does not model."""
        return BaseType.from_catalog(self.data_type) or (
            BaseType.from_catalog(self.udt_name) if self.udt_name else None
        )
    
    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "data_type": self.data_type,
            "is_nullable": self.is_nullable,
            "default_value": self.default_value,
            "max_length": self.max_length,
        }
    
    @classmethod
    def from_record(cls, row: Any) -> "ColumnInfo":
        return cls(
            name=row["column_name"],
            data_type=row["data_type"],
            is_nullable=row["is_nullable"] == "YES",
            default_value=row["column_default"],
            max_length=row["character_maximum_length"],
            numeric_precision=row["numeric_precision"],
            numeric_scale=row["numeric_scale"],
            ordinal_position=row["ordinal_position"],
            udt_name=row["udt_name"],
        )
    
    def __str__(self) -> str:
        result = f"{self.name} {self.data_type}"
        if self.max_length:
            result += f"({self.max_length})"
        if not self.is_nullable:
            result += " NOT NULL"
        if self.default_value:
            result += f" DEFAULT {self.default_value}"
        return result


@dataclass
class IndexInfo:
    """Information about a database index."""
    
    name: str
    table_schema: str
    table_name: str
    columns: List[str]
    is_unique: bool
    is_primary: bool


@dataclass
class TableInfo:
    """A physical base table and its columns."""
    
    schema: str
    name: str
    columns: Dict[str, ColumnInfo] = field(default_factory=dict)
    
    @property
    def full_name(self) -> str:
        """Get the fully qualified table name."""
        return f"{self.schema}.{self.name}"
    
    def has_column(self, column_name: str) -> bool:
        return column_name in self.columns


COLUMNS_QUERY = """
    SELECT 
        c.table_schema,
        c.table_name,
        c.column_name,
        c.data_type,
        c.is_nullable,
        c.column_default,
        c.character_maximum_length,
        c.numeric_precision,
        c.numeric_scale,
        c.ordinal_position,
        c.udt_name
    FROM information_schema.columns c
    WHERE c.table_schema = $1 AND c.table_name = $2
    ORDER BY c.ordinal_position
"""


class CatalogIntrospector:
    """Read-only access to the physical catalog."""
    
    def __init__(self, pool: ConnectionPool):
        self.pool = pool
    
    async def table_exists(self, schema: str, table: str) -> bool:
        """Check if a base table exists."""
        query = """
            SELECT EXISTS (
                SELECT 1 FROM information_schema.tables 
                WHERE table_schema = $1 AND table_name = $2
                AND table_type = 'BASE TABLE'
            )
        """
        
        try:
            result = await self.pool.fetchval(query, schema, table)
            return bool(result)
        except Exception as e:
            logger.error(f"Error checking table existence for {schema}.{table}: {e}")
            raise DatabaseError(f"Failed to check table existence: {e}") from e
    
    async def get_columns(
        self,
        schema: str,
        table: str,
        conn: Optional[asyncpg.Connection] = None,
    ) -> Dict[str, ColumnInfo]:
        """Get all columns for a table, keyed by name in ordinal order.
        
        Pass `conn` to read inside an open transaction.
        """
        try:
            if conn is not None:
                rows = await conn.fetch(COLUMNS_QUERY, schema, table)
            else:
                rows = await self.pool.fetch(COLUMNS_QUERY, schema, table)
            return {row["column_name"]: ColumnInfo.from_record(row) for row in rows}
        except Exception as e:
            logger.error(f"Error getting columns for {schema}.{table}: {e}")
            raise SchemaError(f"Failed to get columns: {e}") from e
    
    async def get_column(
        self,
        schema: str,
        table: str,
        column: str,
        conn: Optional[asyncpg.Connection] = None,
    ) -> Optional[ColumnInfo]:
        """Get a single column, or None if the table has no such column."""
        columns = await self.get_columns(schema, table, conn=conn)
        return columns.get(column)
    
    async def get_indexes(
        self,
        schema: str,
        table: str,
        conn: Optional[asyncpg.Connection] = None,
    ) -> List[IndexInfo]:
        """Get all indexes for a table with their columns in key order."""
        query = """
            SELECT 
                ic.relname AS index_name,
                ix.indisunique AS is_unique,
                ix.indisprimary AS is_primary,
                array_agg(a.attname ORDER BY array_position(ix.indkey, a.attnum)) AS columns
            FROM pg_index ix
            JOIN pg_class ic ON ic.oid = ix.indexrelid
            JOIN pg_class t ON t.oid = ix.indrelid
            JOIN pg_namespace n ON n.oid = t.relnamespace
            JOIN pg_attribute a ON a.attrelid = t.oid AND a.attnum = ANY(ix.indkey)
            WHERE n.nspname = $1 AND t.relname = $2
            GROUP BY ic.relname, ix.indisunique, ix.indisprimary
            ORDER BY ic.relname
        """
        
        try:
            if conn is not None:
                rows = await conn.fetch(query, schema, table)
            else:
                rows = await self.pool.fetch(query, schema, table)
            return [
                IndexInfo(
                    name=row["index_name"],
                    table_schema=schema,
                    table_name=table,
                    columns=list(row["columns"]),
                    is_unique=row["is_unique"],
                    is_primary=row["is_primary"],
                )
                for row in rows
            ]
        except Exception as e:
            logger.error(f"Error getting indexes for {schema}.{table}: {e}")
            raise SchemaError(f"Failed to get indexes: {e}") from e
    
    async def function_exists(
        self,
        schema: str,
        name: str,
        conn: Optional[asyncpg.Connection] = None,
    ) -> bool:
        """Check if a zero-argument function with this name exists in the schema."""
        query = """
            SELECT EXISTS (
                SELECT 1 FROM pg_proc p
                JOIN pg_namespace n ON n.oid = p.pronamespace
                WHERE n.nspname = $1 AND p.proname = $2 AND p.pronargs = 0
            )
        """
        
        try:
            if conn is not None:
                result = await conn.fetchval(query, schema, name)
            else:
                result = await self.pool.fetchval(query, schema, name)
            return bool(result)
        except Exception as e:
            logger.error(f"Error checking function {schema}.{name}: {e}")
            raise SchemaError(f"Failed to check function existence: {e}") from e
    
    async def list_tables(self, schema: Optional[str] = None) -> List[Tuple[str, str]]:
        """List all base tables, optionally filtered by schema."""
        if schema:
            query = """
                SELECT table_schema, table_name
                FROM information_schema.tables
                WHERE table_schema = $1
                AND table_type = 'BASE TABLE'
                ORDER BY table_schema, table_name
            """
            args = (schema,)
        else:
            query = """
                SELECT table_schema, table_name
                FROM information_schema.tables
                WHERE table_type = 'BASE TABLE'
                AND table_schema <> ALL($1::text[])
                ORDER BY table_schema, table_name
            """
            args = (list(SYSTEM_SCHEMAS),)
        
        try:
            rows = await self.pool.fetch(query, *args)
            return [(row["table_schema"], row["table_name"]) for row in rows]
        except Exception as e:
            logger.error(f"Error listing tables: {e}")
            raise SchemaError(f"Failed to list tables: {e}") from e
    
    async def get_all_tables(self) -> Dict[Tuple[str, str], TableInfo]:
        """Load every user base table with its columns in one round trip."""
        query = """
            SELECT 
                c.table_schema,
                c.table_name,
                c.column_name,
                c.data_type,
                c.is_nullable,
                c.column_default,
                c.character_maximum_length,
                c.numeric_precision,
                c.numeric_scale,
                c.ordinal_position,
                c.udt_name
            FROM information_schema.columns c
            JOIN information_schema.tables t
                ON t.table_schema = c.table_schema AND t.table_name = c.table_name
            WHERE t.table_type = 'BASE TABLE'
            AND c.table_schema <> ALL($1::text[])
            ORDER BY c.table_schema, c.table_name, c.ordinal_position
        """
        
        try:
            rows = await self.pool.fetch(query, list(SYSTEM_SCHEMAS))
        except Exception as e:
            logger.error(f"Error loading catalog tables: {e}")
            raise SchemaError(f"Failed to load catalog tables: {e}") from e
        
        tables: Dict[Tuple[str, str], TableInfo] = {}
        for row in rows:
            key = (row["table_schema"], row["table_name"])
            if key not in tables:
                tables[key] = TableInfo(schema=key[0], name=key[1])
            column = ColumnInfo.from_record(row)
            tables[key].columns[column.name] = column
        return tables
    
    async def column_has_nulls(
        self,
        schema: str,
        table: str,
        column: str,
        timeout_ms: Optional[int] = None,
    ) -> bool:
        """Check whether any row currently holds NULL in a column.
        
        Stops at the first NULL found. With `timeout_ms` the check runs under
        a transaction-local statement timeout and raises SchemaError if the
        scan does not finish in time.
        """
        query = (
            f"SELECT EXISTS (SELECT 1 FROM {qualified_name(schema, table)} "
            f"WHERE {quote_ident(column)} IS NULL LIMIT 1)"
        )
        
        try:
            async with self.pool.acquire() as conn:
                async with conn.transaction():
                    if timeout_ms:
                        await conn.execute(f"SET LOCAL statement_timeout = {int(timeout_ms)}")
                    return bool(await conn.fetchval(query))
        except asyncpg.QueryCanceledError as e:
            logger.warning(f"NULL check on {schema}.{table}.{column} timed out after {timeout_ms}ms")
            raise SchemaError(
                f"NULL check on {schema}.{table}.{column} did not finish within {timeout_ms}ms"
            ) from e
        except Exception as e:
            logger.error(f"Error checking NULLs in {schema}.{table}.{column}: {e}")
            raise SchemaError(f"Failed to check for NULL values: {e}") from e
