"""
Unit tests for SchemaEngine wiring and lifecycle.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from metaschema import SchemaEngine
from metaschema.config import MetaschemaConfig


@pytest.fixture
def pool():
    pool = MagicMock()
    pool.initialize = AsyncMock()
    pool.close = AsyncMock()
    return pool


@pytest.fixture
def config():
    return MetaschemaConfig(
        ddl={"default_schema": "app", "metadata_schema": "meta"},
        governance={"reserved_prefix": "ext_", "null_check_timeout_ms": 500},
        sync={"lock_ttl_seconds": 90, "interval_seconds": 120},
    )


class TestSchemaEngine:
    """Test component construction from configuration."""
    
    def test_schemas_are_split(self, config, pool):
        engine = SchemaEngine(config, pool=pool)
        
        assert engine.store.schema == "meta"
        assert engine.metadata.schema == "meta"
        assert engine.versions.versions_table == '"meta"."schema_versions"'
        assert engine.governance.schema == "app"
        assert engine.ddl.schema == "app"
        assert engine.sync.schema == "app"
    
    def test_settings_flow_through(self, config, pool):
        engine = SchemaEngine(config, pool=pool)
        
        assert engine.governance.reserved_prefix == "ext_"
        assert engine.governance.null_check_timeout_ms == 500
        assert engine.sync.lock.ttl_seconds == 90
        assert engine.scheduler.interval_seconds == 120
        assert engine.introspector is engine.ddl.introspector
    
    @pytest.mark.asyncio
    async def test_lifecycle(self, config, pool):
        engine = SchemaEngine(config, pool=pool)
        engine.metadata.setup_metadata_tables = AsyncMock(return_value={"errors": []})
        engine.scheduler.start = AsyncMock()
        engine.scheduler.stop = AsyncMock()
        
        async with engine as running:
            assert running is engine
            pool.initialize.assert_awaited_once()
            engine.metadata.setup_metadata_tables.assert_awaited_once()
            engine.scheduler.start.assert_awaited_once()
        
        engine.scheduler.stop.assert_awaited_once()
        pool.close.assert_awaited_once()
    
    @pytest.mark.asyncio
    async def test_sync_disabled(self, pool):
        engine = SchemaEngine(MetaschemaConfig(sync={"enabled": False}), pool=pool)
        engine.metadata.setup_metadata_tables = AsyncMock(return_value={"errors": []})
        engine.scheduler.start = AsyncMock()
        
        await engine.start()
        
        engine.scheduler.start.assert_not_awaited()
