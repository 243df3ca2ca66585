"""
Unit tests for metadata table management.
"""

import pytest

from metaschema.schema.metadata import (
    CHANGE_LOG_TABLE,
    COLLECTIONS_TABLE,
    SYNC_STATE_TABLE,
    MetadataManager,
)


class TestMetadataManager:
    """Test metadata table creation and integrity checks."""
    
    @pytest.fixture
    def manager(self, fake_pool, mock_introspector):
        return MetadataManager(fake_pool, schema="meta", introspector=mock_introspector)
    
    def test_required_tables_order(self, manager):
        tables = list(manager.required_tables)
        
        assert tables[0] == COLLECTIONS_TABLE
        assert tables[-1] == SYNC_STATE_TABLE
        assert '"meta"."schema_change_log"' in manager.required_tables[CHANGE_LOG_TABLE]
    
    @pytest.mark.asyncio
    async def test_setup_creates_tables_and_seeds_sync_row(self, manager, fake_conn):
        results = await manager.setup_metadata_tables()
        
        assert results["errors"] == []
        assert len(results["tables_created"]) == 5
        sql = fake_conn.executed_sql
        assert sql[0] == 'CREATE SCHEMA IF NOT EXISTS "meta"'
        assert "ON CONFLICT (id) DO NOTHING" in sql[-1]
    
    @pytest.mark.asyncio
    async def test_setup_records_errors_and_skips_seed(self, manager, fake_conn):
        calls = []
        
        async def execute(query, *args):
            calls.append(query)
            if "schema_versions" in query and "CREATE TABLE" in query:
                raise RuntimeError("permission denied")
            return "OK"
        
        fake_conn.execute.side_effect = execute
        
        results = await manager.setup_metadata_tables()
        
        assert len(results["errors"]) == 1
        assert "schema_versions" in results["errors"][0]
        assert len(results["tables_created"]) == 4
        assert not any("ON CONFLICT" in q for q in calls)
    
    @pytest.mark.asyncio
    async def test_check_integrity_reports_missing_tables(self, manager, mock_introspector):
        mock_introspector.list_tables.return_value = [
            ("meta", COLLECTIONS_TABLE),
            ("meta", CHANGE_LOG_TABLE),
        ]
        
        report = await manager.check_metadata_integrity()
        
        assert report["is_healthy"] is False
        assert report["tables_exist"][COLLECTIONS_TABLE] is True
        assert "table:schema_versions" in report["missing_components"]
        mock_introspector.list_tables.assert_awaited_once_with("meta")
    
    @pytest.mark.asyncio
    async def test_check_integrity_healthy(self, manager, mock_introspector):
        mock_introspector.list_tables.return_value = [
            ("meta", name) for name in manager.required_tables
        ]
        
        report = await manager.check_metadata_integrity()
        
        assert report["is_healthy"] is True
        assert report["missing_components"] == []
