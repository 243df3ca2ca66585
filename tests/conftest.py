"""
Pytest configuration and shared fixtures for metaschema tests.

Provides an in-memory stand-in for the connection pool that records every
statement and transaction boundary, plus sample metadata records.
"""

from contextlib import asynccontextmanager
from typing import Any, Dict, List
from unittest.mock import AsyncMock

import pytest
import yaml

from metaschema.database.introspection import CatalogIntrospector, ColumnInfo
from metaschema.models import Collection, OwnerType, Property
from metaschema.schema.store import MetadataStore


# ============================================================================
# Database Fakes
# ============================================================================

class FakeTransaction:
    """Async context manager recording begin/commit/rollback on its connection."""
    
    def __init__(self, conn: "FakeConnection"):
        self.conn = conn
    
    async def __aenter__(self):
        self.conn.events.append("begin")
        return self
    
    async def __aexit__(self, exc_type, exc, tb):
        self.conn.events.append("rollback" if exc_type else "commit")
        return False


class FakeConnection:
    """asyncpg.Connection look-alike with AsyncMock query methods."""
    
    def __init__(self):
        self.execute = AsyncMock(return_value="OK")
        self.fetch = AsyncMock(return_value=[])
        self.fetchrow = AsyncMock(return_value=None)
        self.fetchval = AsyncMock(return_value=None)
        self.events: List[str] = []
    
    def transaction(self) -> FakeTransaction:
        return FakeTransaction(self)
    
    @property
    def executed_sql(self) -> List[str]:
        return [c.args[0] for c in self.execute.call_args_list]


class FakePool:
    """ConnectionPool look-alike handing out a single FakeConnection."""
    
    def __init__(self, conn: FakeConnection):
        self.conn = conn
        self.acquired = 0
    
    @asynccontextmanager
    async def acquire(self):
        self.acquired += 1
        yield self.conn
    
    @asynccontextmanager
    async def transaction(self):
        async with self.acquire() as conn:
            async with conn.transaction():
                yield conn
    
    async def execute(self, query: str, *args) -> str:
        return await self.conn.execute(query, *args)
    
    async def fetch(self, query: str, *args):
        return await self.conn.fetch(query, *args)
    
    async def fetchrow(self, query: str, *args):
        return await self.conn.fetchrow(query, *args)
    
    async def fetchval(self, query: str, *args, column: int = 0):
        return await self.conn.fetchval(query, *args)


@pytest.fixture
def fake_conn() -> FakeConnection:
    return FakeConnection()


@pytest.fixture
def fake_pool(fake_conn) -> FakePool:
    return FakePool(fake_conn)


@pytest.fixture
def mock_store() -> AsyncMock:
    """MetadataStore with every coroutine mocked."""
    store = AsyncMock(spec=MetadataStore)
    store.get_collection.return_value = None
    store.get_collection_by_table.return_value = None
    store.get_collection_with_properties.return_value = None
    return store


@pytest.fixture
def mock_introspector() -> AsyncMock:
    introspector = AsyncMock(spec=CatalogIntrospector)
    introspector.table_exists.return_value = False
    introspector.column_has_nulls.return_value = False
    introspector.get_column.return_value = None
    introspector.get_columns.return_value = {}
    introspector.get_indexes.return_value = []
    introspector.function_exists.return_value = False
    introspector.get_all_tables.return_value = {}
    return introspector


# ============================================================================
# Sample Metadata
# ============================================================================

def make_column(name: str, data_type: str = "text", nullable: bool = True) -> ColumnInfo:
    return ColumnInfo(name=name, data_type=data_type, is_nullable=nullable)


def make_collection(
    code: str = "orders",
    owner_type: OwnerType = OwnerType.CUSTOM,
    properties: List[Property] = None,
    **kwargs: Any,
) -> Collection:
    return Collection(
        id=kwargs.pop("id", f"{code}-id"),
        code=code,
        name=kwargs.pop("name", code.replace("_", " ").title()),
        table_name=kwargs.pop("table_name", code),
        owner_type=owner_type,
        properties=properties or [],
        **kwargs,
    )


def make_property(
    code: str,
    property_type_id: str = "text",
    owner_type: OwnerType = OwnerType.CUSTOM,
    **kwargs: Any,
) -> Property:
    return Property(
        code=code,
        name=kwargs.pop("name", code.replace("_", " ").title()),
        property_type_id=property_type_id,
        storage_column=kwargs.pop("storage_column", code),
        owner_type=owner_type,
        **kwargs,
    )


@pytest.fixture
def custom_collection() -> Collection:
    return make_collection(
        "orders",
        OwnerType.CUSTOM,
        properties=[
            make_property("total", "integer", position=0),
            make_property("customer", "reference", position=1),
            make_property("notes", "long_text", position=2),
        ],
    )


@pytest.fixture
def module_collection() -> Collection:
    return make_collection(
        "incidents",
        OwnerType.MODULE,
        properties=[make_property("priority", "integer", OwnerType.MODULE)],
    )


@pytest.fixture
def system_collection() -> Collection:
    return make_collection(
        "departments",
        OwnerType.SYSTEM,
        is_extensible=False,
        properties=[make_property("title", "text", OwnerType.SYSTEM)],
    )


# ============================================================================
# Configuration Fixtures
# ============================================================================

@pytest.fixture
def sample_config_data() -> Dict[str, Any]:
    return {
        "service_name": "metaschema-test",
        "database": {
            "host": "localhost",
            "port": 5432,
            "database": "metaschema_test",
            "user": "${METASCHEMA_TEST_USER}",
            "password": "secret",
        },
        "governance": {"reserved_prefix": "ext_"},
        "sync": {"interval_seconds": 600, "lock_ttl_seconds": 120},
        "logging": {"level": "DEBUG"},
    }


@pytest.fixture
def temp_config_file(tmp_path, sample_config_data) -> str:
    path = tmp_path / "metaschema.yaml"
    path.write_text(yaml.safe_dump(sample_config_data))
    return str(path)
