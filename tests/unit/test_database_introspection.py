"""
Unit tests for catalog introspection.
"""

import pytest

import asyncpg

from metaschema.database.introspection import CatalogIntrospector, ColumnInfo
from metaschema.exceptions import DatabaseError, SchemaError
from metaschema.types import BaseType

from tests.conftest import FakeConnection


def column_row(schema, table, name, data_type="text", nullable="YES", position=1, udt=None):
    return {
        "table_schema": schema,
        "table_name": table,
        "column_name": name,
        "data_type": data_type,
        "is_nullable": nullable,
        "column_default": None,
        "character_maximum_length": None,
        "numeric_precision": None,
        "numeric_scale": None,
        "ordinal_position": position,
        "udt_name": udt or data_type,
    }


class TestColumnInfo:
    """Test ColumnInfo conversions."""
    
    def test_from_record(self):
        column = ColumnInfo.from_record(
            column_row("public", "orders", "total", "integer", nullable="NO")
        )
        
        assert column.name == "total"
        assert column.is_nullable is False
        assert column.base_type == BaseType.INTEGER
        assert str(column) == "total integer NOT NULL"
    
    def test_base_type_falls_back_to_udt_name(self):
        column = ColumnInfo(name="payload", data_type="USER-DEFINED", is_nullable=True, udt_name="jsonb")
        
        assert column.base_type == BaseType.JSONB
    
    def test_base_type_unknown(self):
        column = ColumnInfo(name="doc", data_type="tsvector", is_nullable=True)
        
        assert column.base_type is None


class TestCatalogIntrospector:
    """Test catalog queries against a recording connection."""
    
    @pytest.fixture
    def introspector(self, fake_pool):
        return CatalogIntrospector(fake_pool)
    
    @pytest.mark.asyncio
    async def test_table_exists(self, introspector, fake_conn):
        fake_conn.fetchval.return_value = True
        
        assert await introspector.table_exists("public", "orders") is True
        assert fake_conn.fetchval.call_args.args[1:] == ("public", "orders")
    
    @pytest.mark.asyncio
    async def test_table_exists_wraps_errors(self, introspector, fake_conn):
        fake_conn.fetchval.side_effect = RuntimeError("boom")
        
        with pytest.raises(DatabaseError, match="Failed to check table existence"):
            await introspector.table_exists("public", "orders")
    
    @pytest.mark.asyncio
    async def test_get_columns_keyed_by_name(self, introspector, fake_conn):
        fake_conn.fetch.return_value = [
            column_row("public", "orders", "id", "uuid", "NO", 1),
            column_row("public", "orders", "total", "integer", "YES", 2),
        ]
        
        columns = await introspector.get_columns("public", "orders")
        
        assert list(columns) == ["id", "total"]
        assert columns["id"].is_nullable is False
    
    @pytest.mark.asyncio
    async def test_get_columns_uses_given_connection(self, introspector, fake_pool, fake_conn):
        await introspector.get_columns("public", "orders", conn=fake_conn)
        
        assert fake_pool.acquired == 0
        fake_conn.fetch.assert_awaited_once()
    
    @pytest.mark.asyncio
    async def test_get_column_missing(self, introspector):
        assert await introspector.get_column("public", "orders", "missing") is None
    
    @pytest.mark.asyncio
    async def test_get_indexes(self, introspector, fake_conn):
        fake_conn.fetch.return_value = [
            {"index_name": "orders_pkey", "is_unique": True, "is_primary": True, "columns": ["id"]},
            {"index_name": "idx_orders_customer", "is_unique": False, "is_primary": False,
             "columns": ["customer"]},
        ]
        
        indexes = await introspector.get_indexes("public", "orders")
        
        assert [i.name for i in indexes] == ["orders_pkey", "idx_orders_customer"]
        assert indexes[0].is_primary
        assert indexes[1].columns == ["customer"]
    
    @pytest.mark.asyncio
    async def test_get_indexes_uses_given_connection(self, introspector, fake_conn):
        tx_conn = FakeConnection()
        
        await introspector.get_indexes("public", "orders", conn=tx_conn)
        
        tx_conn.fetch.assert_awaited_once()
        fake_conn.fetch.assert_not_awaited()
    
    @pytest.mark.asyncio
    async def test_function_exists(self, introspector, fake_conn):
        tx_conn = FakeConnection()
        tx_conn.fetchval.return_value = True
        
        assert await introspector.function_exists(
            "public", "update_orders_updated_at", conn=tx_conn
        )
        assert tx_conn.fetchval.call_args.args[1:] == ("public", "update_orders_updated_at")
        assert "pronargs = 0" in tx_conn.fetchval.call_args.args[0]
        fake_conn.fetchval.assert_not_awaited()
    
    @pytest.mark.asyncio
    async def test_function_exists_wraps_errors(self, introspector, fake_conn):
        fake_conn.fetchval.side_effect = RuntimeError("boom")
        
        with pytest.raises(SchemaError, match="Failed to check function existence"):
            await introspector.function_exists("public", "update_orders_updated_at")
    
    @pytest.mark.asyncio
    async def test_get_all_tables_groups_columns(self, introspector, fake_conn):
        fake_conn.fetch.return_value = [
            column_row("public", "orders", "id", "uuid", "NO", 1),
            column_row("public", "orders", "total", "integer", "YES", 2),
            column_row("crm", "leads", "id", "uuid", "NO", 1),
        ]
        
        tables = await introspector.get_all_tables()
        
        assert set(tables) == {("public", "orders"), ("crm", "leads")}
        assert tables[("public", "orders")].has_column("total")
        assert tables[("crm", "leads")].full_name == "crm.leads"
    
    @pytest.mark.asyncio
    async def test_list_tables_excludes_system_schemas(self, introspector, fake_conn):
        fake_conn.fetch.return_value = [{"table_schema": "public", "table_name": "orders"}]
        
        tables = await introspector.list_tables()
        
        assert tables == [("public", "orders")]
        assert "pg_catalog" in fake_conn.fetch.call_args.args[1]


class TestColumnHasNulls:
    """Test the NOT NULL existing-data check."""
    
    @pytest.fixture
    def introspector(self, fake_pool):
        return CatalogIntrospector(fake_pool)
    
    @pytest.mark.asyncio
    async def test_null_check_runs_under_local_timeout(self, introspector, fake_conn):
        fake_conn.fetchval.return_value = True
        
        result = await introspector.column_has_nulls("public", "orders", "total", timeout_ms=5000)
        
        assert result is True
        assert fake_conn.executed_sql == ["SET LOCAL statement_timeout = 5000"]
        query = fake_conn.fetchval.call_args.args[0]
        assert 'FROM "public"."orders" WHERE "total" IS NULL LIMIT 1' in query
        assert fake_conn.events == ["begin", "commit"]
    
    @pytest.mark.asyncio
    async def test_null_check_without_timeout(self, introspector, fake_conn):
        fake_conn.fetchval.return_value = False
        
        assert await introspector.column_has_nulls("public", "orders", "total") is False
        assert fake_conn.executed_sql == []
    
    @pytest.mark.asyncio
    async def test_null_check_timeout_raises_schema_error(self, introspector, fake_conn):
        fake_conn.fetchval.side_effect = asyncpg.QueryCanceledError("canceling statement")
        
        with pytest.raises(SchemaError, match="did not finish within 100ms"):
            await introspector.column_has_nulls("public", "orders", "total", timeout_ms=100)
    
    @pytest.mark.asyncio
    async def test_null_check_failure_raises_schema_error(self, introspector, fake_conn):
        fake_conn.fetchval.side_effect = RuntimeError("relation does not exist")
        
        with pytest.raises(SchemaError, match="Failed to check for NULL values"):
            await introspector.column_has_nulls("public", "orders", "total")
