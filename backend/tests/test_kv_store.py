"""
Key-Value Store tests against the in-memory backend, plus the Mongo backend's
error wrapping with a mocked collection.
"""
import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from pymongo.errors import PyMongoError

from formflow.errors import BatchPersistenceError, PersistenceError
from formflow.models.storage import DOCUMENT_TEMPLATES, SUBMISSIONS, TEMPLATES
from formflow.services.kv_store import InMemoryKeyValueStore, MongoKeyValueStore

pytestmark = pytest.mark.asyncio


class TestInMemoryStore:

    async def test_save_then_get_by_id(self, store):
        saved = await store.save(SUBMISSIONS, "S-1", {"title": "Quote"})
        item = await store.get_by_id(SUBMISSIONS, "S-1")
        assert item.id == "S-1"
        assert item.collection == SUBMISSIONS
        assert item.payload == {"title": "Quote"}
        assert item.created_at == saved.created_at

    async def test_missing_id_is_none(self, store):
        assert await store.get_by_id(SUBMISSIONS, "nope") is None

    async def test_get_all_empty_collection(self, store):
        assert await store.get_all(TEMPLATES) == []

    async def test_upsert_keeps_created_at_and_advances_updated_at(self, store):
        first = await store.save(TEMPLATES, "T-1", {"v": 1})
        second = await store.save(TEMPLATES, "T-1", {"v": 2})
        assert second.created_at == first.created_at
        assert second.updated_at > first.updated_at
        assert (await store.get_by_id(TEMPLATES, "T-1")).payload == {"v": 2}
        assert len(await store.get_all(TEMPLATES)) == 1

    async def test_payload_is_sanitized(self, store):
        await store.save(SUBMISSIONS, "S-2", {"keep": 1, "drop": lambda: None})
        assert (await store.get_by_id(SUBMISSIONS, "S-2")).payload == {"keep": 1}

    async def test_stored_payload_is_isolated_from_caller(self, store):
        payload = {"items": [1, 2]}
        await store.save(SUBMISSIONS, "S-3", payload)
        payload["items"].append(3)
        item = await store.get_by_id(SUBMISSIONS, "S-3")
        item.payload["items"].append(4)
        assert (await store.get_by_id(SUBMISSIONS, "S-3")).payload == {"items": [1, 2]}

    async def test_delete(self, store):
        await store.save(SUBMISSIONS, "S-4", {})
        assert await store.delete(SUBMISSIONS, "S-4") is True
        assert await store.delete(SUBMISSIONS, "S-4") is False
        assert await store.get_by_id(SUBMISSIONS, "S-4") is None

    async def test_clear_only_touches_one_collection(self, store):
        await store.save(SUBMISSIONS, "S-5", {})
        await store.save(TEMPLATES, "T-5", {})
        await store.clear(SUBMISSIONS)
        assert await store.get_all(SUBMISSIONS) == []
        assert len(await store.get_all(TEMPLATES)) == 1

    async def test_clear_all(self, store):
        await store.save(SUBMISSIONS, "S-6", {})
        await store.save("custom", "C-1", {})
        await store.clear_all()
        assert await store.get_all(SUBMISSIONS) == []
        assert await store.get_all("custom") == []

    async def test_save_all_and_find_by(self, store):
        await store.save_all(TEMPLATES, [
            ("T-1", {"form_type": "rfq"}),
            ("T-2", {"form_type": "invoice"}),
            ("T-3", {"form_type": "rfq"}),
        ])
        matches = await store.find_by(TEMPLATES, "form_type", "rfq")
        assert [item.id for item in matches] == ["T-1", "T-3"]

    async def test_save_all_reports_partial_failure(self, store):
        original = store._upsert

        async def flaky(collection, item_id, payload):
            if item_id == "bad":
                raise PersistenceError(collection, "save", "disk full")
            return await original(collection, item_id, payload)

        store._upsert = flaky
        with pytest.raises(BatchPersistenceError) as exc_info:
            await store.save_all(TEMPLATES, [("ok-1", {}), ("bad", {}), ("ok-2", {})])

        assert exc_info.value.failed_ids == ["bad"]
        assert [item.id for item in exc_info.value.saved] == ["ok-1", "ok-2"]
        assert exc_info.value.operation == "saveAll"

    async def test_usage_statistics(self, store):
        await store.save(SUBMISSIONS, "S-1", {"title": "Quote"})
        await store.save(SUBMISSIONS, "S-2", {"title": "Invoice"})
        await store.save(DOCUMENT_TEMPLATES, "D-1", {"name": "Letter"})

        stats = await store.usage_statistics()
        per = stats["per_collection"]
        assert per[SUBMISSIONS]["count"] == 2
        assert per[SUBMISSIONS]["approximate_byte_size"] > 0
        assert per[TEMPLATES] == {"count": 0, "approximate_byte_size": 0}
        assert per[DOCUMENT_TEMPLATES]["count"] == 1
        assert stats["total"]["count"] == 3
        assert stats["total"]["approximate_byte_size"] == sum(
            c["approximate_byte_size"] for c in per.values()
        )


class TestMigrationHook:

    async def test_first_access_migrates_once(self, store):
        migration = MagicMock()
        migration.migrate_collection = AsyncMock()
        store.attach_migration(migration)

        await store.get_all(SUBMISSIONS)
        await store.get_by_id(SUBMISSIONS, "x")
        await store.save(SUBMISSIONS, "y", {})

        migration.migrate_collection.assert_awaited_once_with(SUBMISSIONS)

    async def test_migration_failure_does_not_block_access(self, store):
        from formflow.errors import MigrationError

        migration = MagicMock()
        migration.migrate_collection = AsyncMock(side_effect=MigrationError("k", "broken"))
        store.attach_migration(migration)

        await store.save(TEMPLATES, "T-1", {"ok": True})
        assert (await store.get_by_id(TEMPLATES, "T-1")).payload == {"ok": True}
        migration.migrate_collection.assert_awaited_once_with(TEMPLATES)

    async def test_detached_store_skips_migration(self, store):
        migration = MagicMock()
        migration.migrate_collection = AsyncMock()
        store.attach_migration(migration)
        store.detach_migration()

        await store.get_all(SUBMISSIONS)
        migration.migrate_collection.assert_not_awaited()


class TestMongoStore:

    @pytest.fixture
    def mongo_store(self):
        return MongoKeyValueStore()

    async def test_not_connected_raises_persistence_error(self, mongo_store):
        with patch("formflow.services.kv_store.database") as db:
            db.get_db.return_value = None
            with pytest.raises(PersistenceError) as exc_info:
                await mongo_store.get_all(SUBMISSIONS)
        assert exc_info.value.collection == SUBMISSIONS
        assert exc_info.value.operation == "getAll"

    async def test_driver_error_wrapped(self, mongo_store):
        collection = MagicMock()
        collection.find_one = AsyncMock(side_effect=PyMongoError("connection reset"))
        with patch("formflow.services.kv_store.database") as db:
            db.get_db.return_value = {SUBMISSIONS: collection}
            with pytest.raises(PersistenceError) as exc_info:
                await mongo_store.save(SUBMISSIONS, "S-1", {"a": 1})
        assert exc_info.value.operation == "save"
        assert "connection reset" in str(exc_info.value)

    async def test_upsert_sets_payload_and_created_on_insert(self, mongo_store):
        collection = MagicMock()
        collection.find_one = AsyncMock(return_value=None)
        collection.update_one = AsyncMock()
        with patch("formflow.services.kv_store.database") as db:
            db.get_db.return_value = {TEMPLATES: collection}
            item = await mongo_store.save(TEMPLATES, "T-1", {"name": "Letter"})

        args, kwargs = collection.update_one.call_args
        assert args[0] == {"_id": "T-1"}
        assert args[1]["$set"]["payload"] == {"name": "Letter"}
        assert args[1]["$setOnInsert"]["created_at"] == item.created_at
        assert kwargs["upsert"] is True

    async def test_sets_written_as_arrays(self, mongo_store):
        collection = MagicMock()
        collection.find_one = AsyncMock(return_value=None)
        collection.update_one = AsyncMock()
        with patch("formflow.services.kv_store.database") as db:
            db.get_db.return_value = {SUBMISSIONS: collection}
            await mongo_store.save(
                SUBMISSIONS, "S-1", {"tags": {"a"}, "pair": (1, 2), "nested": {"ids": frozenset({7})}}
            )

        args, _ = collection.update_one.call_args
        assert args[1]["$set"]["payload"] == {"tags": ["a"], "pair": [1, 2], "nested": {"ids": [7]}}
