"""
Unit tests for the metadata store.
"""

import json
from datetime import datetime, timezone

import pytest

from metaschema.exceptions import DatabaseError
from metaschema.models import (
    ActorType,
    AuditChangeType,
    ChangeSource,
    EntityType,
    IssueSeverity,
    OwnerType,
    SchemaChangeLogEntry,
    SyncIssue,
    SyncIssueType,
)
from metaschema.schema.store import MetadataStore, affected_rows

from tests.conftest import make_collection, make_property


def collection_row(code="orders", **overrides):
    row = {
        "id": f"{code}-id",
        "code": code,
        "name": code.title(),
        "plural_name": None,
        "description": None,
        "icon": None,
        "table_name": code,
        "owner_type": "custom",
        "is_extensible": True,
        "enable_attachments": False,
        "enable_activity_log": False,
        "is_audited": False,
        "metadata": "{}",
    }
    row.update(overrides)
    return row


def property_row(code, collection_id="orders-id", position=0, **overrides):
    row = {
        "id": f"{code}-pid",
        "collection_id": collection_id,
        "code": code,
        "name": code.title(),
        "property_type_id": "text",
        "storage_column": code,
        "owner_type": "custom",
        "is_required": False,
        "is_unique": False,
        "is_indexed": False,
        "position": position,
        "default_value": None,
        "description": None,
        "config": None,
    }
    row.update(overrides)
    return row


class TestAffectedRows:
    @pytest.mark.parametrize(
        "status, expected",
        [("UPDATE 1", 1), ("UPDATE 0", 0), ("INSERT 0 3", 3), ("", 0), (None, 0)],
    )
    def test_affected_rows(self, status, expected):
        assert affected_rows(status) == expected


class TestMetadataStore:
    """Test metadata queries against a recording connection."""
    
    @pytest.fixture
    def store(self, fake_pool):
        return MetadataStore(fake_pool, schema="meta")
    
    @pytest.mark.asyncio
    async def test_get_collection(self, store, fake_conn):
        fake_conn.fetchrow.return_value = collection_row(owner_type="platform")
        
        collection = await store.get_collection("orders")
        
        assert collection.code == "orders"
        assert collection.owner_type == OwnerType.MODULE
        assert '"meta"."collection_definitions"' in fake_conn.fetchrow.call_args.args[0]
    
    @pytest.mark.asyncio
    async def test_get_collection_missing(self, store):
        assert await store.get_collection("missing") is None
    
    @pytest.mark.asyncio
    async def test_list_collections_groups_properties(self, store, fake_conn):
        fake_conn.fetch.side_effect = [
            [collection_row("orders"), collection_row("tickets")],
            [
                property_row("total", "orders-id", 0),
                property_row("subject", "tickets-id", 0),
                property_row("notes", "orders-id", 1),
                property_row("stray", "gone-id", 0),
            ],
        ]
        
        collections = await store.list_collections()
        
        assert [c.code for c in collections] == ["orders", "tickets"]
        assert [p.code for p in collections[0].properties] == ["total", "notes"]
        assert [p.code for p in collections[1].properties] == ["subject"]
    
    @pytest.mark.asyncio
    async def test_create_collection_in_own_transaction(self, store, fake_conn):
        fake_conn.fetchrow.side_effect = [
            collection_row("customers"),
            property_row("email", "customers-id", 0),
        ]
        collection = make_collection("customers")
        
        created = await store.create_collection(
            collection, [make_property("email", position=0)]
        )
        
        assert created.id == "customers-id"
        assert [p.code for p in created.properties] == ["email"]
        assert fake_conn.events == ["begin", "commit"]
        property_args = fake_conn.fetchrow.call_args_list[1].args
        assert property_args[1] == "customers-id"
    
    @pytest.mark.asyncio
    async def test_create_collection_uses_given_connection(self, store, fake_pool, fake_conn):
        fake_conn.fetchrow.return_value = collection_row("customers")
        
        await store.create_collection(make_collection("customers"), conn=fake_conn)
        
        assert fake_pool.acquired == 0
        assert fake_conn.events == []
    
    @pytest.mark.asyncio
    async def test_update_collection_metadata(self, store, fake_conn):
        fake_conn.execute.return_value = "UPDATE 1"
        
        updated = await store.update_collection_metadata(
            "orders", "Orders", "All orders", None, {"k": 1}
        )
        
        assert updated is True
        args = fake_conn.execute.call_args.args
        assert args[1:5] == ("orders", "Orders", "All orders", None)
        assert json.loads(args[5]) == {"k": 1}
    
    @pytest.mark.asyncio
    async def test_insert_change_log(self, store, fake_conn):
        entry = SchemaChangeLogEntry(
            entity_type=EntityType.PROPERTY,
            entity_code="orders.total",
            change_type=AuditChangeType.UPDATE,
            change_source=ChangeSource.MIGRATION,
            performed_by_type=ActorType.MIGRATION,
            performed_by="migration-42",
            success=True,
            ddl_statements=["ALTER TABLE x"],
        )
        
        await store.insert_change_log(entry)
        
        args = fake_conn.execute.call_args.args
        assert args[1:6] == ("property", None, "orders.total", "update", "migration")
        assert args[6] is None
        assert json.loads(args[8]) == ["ALTER TABLE x"]
        assert args[9:] == ("migration-42", "migration", True, None)


class TestSyncLockQueries:
    """Test the sync lock conditional updates."""
    
    @pytest.fixture
    def store(self, fake_pool):
        return MetadataStore(fake_pool)
    
    @pytest.mark.asyncio
    async def test_acquire_succeeds_when_row_updated(self, store, fake_conn):
        fake_conn.execute.return_value = "UPDATE 1"
        
        assert await store.try_acquire_sync_lock("instance-a", 300) is True
        query, holder, ttl = fake_conn.execute.call_args.args
        assert "sync_lock_holder IS NULL OR sync_lock_expires_at < NOW()" in query
        assert holder == "instance-a"
        assert ttl == 300.0
    
    @pytest.mark.asyncio
    async def test_acquire_fails_when_held(self, store, fake_conn):
        fake_conn.execute.return_value = "UPDATE 0"
        
        assert await store.try_acquire_sync_lock("instance-b", 300) is False
    
    @pytest.mark.asyncio
    async def test_release_only_by_holder(self, store, fake_conn):
        fake_conn.execute.return_value = "UPDATE 0"
        
        assert await store.release_sync_lock("instance-b") is False
        query, holder = fake_conn.execute.call_args.args
        assert "sync_lock_holder = $1" in query
        assert holder == "instance-b"


class TestRecordDriftCheck:
    @pytest.fixture
    def store(self, fake_pool):
        return MetadataStore(fake_pool)
    
    @pytest.mark.asyncio
    async def test_records_issues(self, store, fake_conn):
        fake_conn.execute.return_value = "UPDATE 1"
        issue = SyncIssue(
            type=SyncIssueType.ORPHANED_TABLE,
            severity=IssueSeverity.INFO,
            message="Table legacy_customers has no collection",
            table_name="legacy_customers",
        )
        checked_at = datetime(2024, 5, 1, tzinfo=timezone.utc)
        
        await store.record_drift_check(checked_at, 25, [issue], 2, 6, 1, 0)
        
        args = fake_conn.execute.call_args.args
        assert args[1:5] == (checked_at, 25, "issues_found", True)
        details = json.loads(args[5])
        assert details["issues"][0]["table_name"] == "legacy_customers"
        assert args[6:] == (2, 6, 1, 0)
    
    @pytest.mark.asyncio
    async def test_clean_check(self, store, fake_conn):
        fake_conn.execute.return_value = "UPDATE 1"
        
        await store.record_drift_check(datetime.now(timezone.utc), 5, [], 1, 1, 0, 0)
        
        assert fake_conn.execute.call_args.args[3:5] == ("success", False)
    
    @pytest.mark.asyncio
    async def test_missing_row_raises(self, store, fake_conn):
        fake_conn.execute.return_value = "UPDATE 0"
        
        with pytest.raises(DatabaseError, match="Sync state row is missing"):
            await store.record_drift_check(datetime.now(timezone.utc), 5, [], 0, 0, 0, 0)
