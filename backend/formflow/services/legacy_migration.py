"""
Legacy Migration - one-time transfer of flat legacy blobs into named collections.

The previous storage generation kept each collection as a single JSON array
under one key (e.g. "gringo_submissions"). Migration reads that blob, upserts
every record into the Key-Value Store, and removes the blob only once the
whole batch has been written. Safe to run on every process start.
"""
import json
import logging
import os
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from pymongo.errors import PyMongoError

from database import database
from formflow.errors import BatchPersistenceError, MigrationError, PersistenceError
from formflow.models.storage import DOCUMENT_TEMPLATES, SUBMISSIONS, TEMPLATES
from formflow.services.kv_store import (
    KV_BACKEND,
    KeyValueStore,
    bypass_migration_hook,
    key_value_store,
)

logger = logging.getLogger(__name__)

LEGACY_BACKEND = os.getenv("LEGACY_BACKEND", KV_BACKEND).lower()
LEGACY_KEY_PREFIX = os.getenv("LEGACY_KEY_PREFIX", "gringo")
LEGACY_COLLECTION = "legacy_storage"

# Record fields tried, in order, for the migrated id
ID_FIELDS = ("id", "submissionId", "templateId")


def legacy_key_map(prefix: str = LEGACY_KEY_PREFIX) -> Dict[str, str]:
    """Target collection -> legacy blob key."""
    return {
        SUBMISSIONS: f"{prefix}_submissions",
        TEMPLATES: f"{prefix}_templates",
        DOCUMENT_TEMPLATES: f"{prefix}_pdf_templates",
    }


class MigrationResult:
    """Outcome of migrating one legacy key."""
    def __init__(self, legacy_key: str, target_collection: str, migrated_count: int = 0):
        self.legacy_key = legacy_key
        self.target_collection = target_collection
        self.migrated_count = migrated_count


# ============================================================================
# Legacy blob stores
# ============================================================================

class LegacyBlobStore(ABC):
    """Where the flat legacy blobs live."""

    @abstractmethod
    async def get(self, key: str) -> Optional[Any]:
        """Return the raw blob (JSON string or decoded value), or None."""
        pass

    @abstractmethod
    async def remove(self, key: str) -> bool:
        pass


class MongoLegacyBlobStore(LegacyBlobStore):
    """Blobs kept as {_id: key, value} documents in one collection."""

    def __init__(self, collection_name: str = LEGACY_COLLECTION):
        self.collection_name = collection_name

    def _get_collection(self):
        db = database.get_db()
        if db is None:
            raise PersistenceError(self.collection_name, "legacyRead", "database not connected")
        return db[self.collection_name]

    async def get(self, key: str) -> Optional[Any]:
        try:
            doc = await self._get_collection().find_one({"_id": key})
        except PyMongoError as e:
            raise PersistenceError(self.collection_name, "legacyRead", str(e)) from e
        return doc.get("value") if doc else None

    async def remove(self, key: str) -> bool:
        try:
            result = await self._get_collection().delete_one({"_id": key})
        except PyMongoError as e:
            raise PersistenceError(self.collection_name, "legacyRemove", str(e)) from e
        return result.deleted_count > 0


class InMemoryLegacyBlobStore(LegacyBlobStore):
    def __init__(self, blobs: Optional[Dict[str, Any]] = None):
        self.blobs: Dict[str, Any] = dict(blobs or {})

    async def get(self, key: str) -> Optional[Any]:
        return self.blobs.get(key)

    async def remove(self, key: str) -> bool:
        return self.blobs.pop(key, None) is not None


def create_legacy_store(backend: Optional[str] = None) -> LegacyBlobStore:
    backend = (backend or LEGACY_BACKEND).lower()
    if backend == "memory":
        return InMemoryLegacyBlobStore()
    if backend == "mongo":
        return MongoLegacyBlobStore()
    raise ValueError(f"Unknown LEGACY_BACKEND: {backend}")


# ============================================================================
# Migration
# ============================================================================

def _decode_blob(legacy_key: str, raw: Any) -> List[Any]:
    data = raw
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8")
    if isinstance(raw, str):
        try:
            data = json.loads(raw)
        except ValueError as e:
            raise MigrationError(legacy_key, f"unparseable legacy JSON: {e}") from e
    if data is None:
        return []
    return data if isinstance(data, list) else [data]


def _record_id(record: Any, index: int) -> str:
    if isinstance(record, dict):
        for field in ID_FIELDS:
            value = record.get(field)
            if value not in (None, ""):
                return str(value)
    return f"migrated_{index}"


class LegacyMigration:
    """Migrates legacy flat blobs into the Key-Value Store."""

    def __init__(
        self,
        store: KeyValueStore,
        legacy_store: LegacyBlobStore,
        key_prefix: str = LEGACY_KEY_PREFIX,
    ):
        self.store = store
        self.legacy_store = legacy_store
        self.key_map = legacy_key_map(key_prefix)

    async def migrate(self, legacy_key: str, target_collection: str) -> MigrationResult:
        """
        Move one legacy blob into `target_collection`.

        Absent blob: migrated_count 0, no error. The blob is removed only
        after every record has been upserted.
        """
        result = MigrationResult(legacy_key, target_collection)

        raw = await self.legacy_store.get(legacy_key)
        if raw is None:
            return result

        records = _decode_blob(legacy_key, raw)
        items = [(_record_id(record, index), record) for index, record in enumerate(records)]

        try:
            with bypass_migration_hook():
                await self.store.save_all(target_collection, items)
        except BatchPersistenceError as e:
            logger.error(
                f"Legacy migration {legacy_key} -> {target_collection}: "
                f"{len(e.failed_ids)} of {len(items)} records failed, blob kept"
            )
            raise MigrationError(legacy_key, str(e)) from e
        except PersistenceError as e:
            raise MigrationError(legacy_key, str(e)) from e

        await self.legacy_store.remove(legacy_key)
        result.migrated_count = len(items)
        logger.info(
            f"Migrated {result.migrated_count} record(s) from {legacy_key} to {target_collection}"
        )
        return result

    async def migrate_collection(self, collection: str) -> MigrationResult:
        """Migrate the legacy blob that feeds `collection`, if there is one."""
        legacy_key = self.key_map.get(collection)
        if legacy_key is None:
            return MigrationResult("", collection)
        return await self.migrate(legacy_key, collection)

    async def migrate_all(self) -> Dict[str, Any]:
        """Migrate every standard key. Never raises; errors are reported."""
        migrated: Dict[str, int] = {}
        errors: List[Dict[str, str]] = []
        for collection, legacy_key in self.key_map.items():
            try:
                result = await self.migrate(legacy_key, collection)
                migrated[collection] = result.migrated_count
            except (MigrationError, PersistenceError) as e:
                migrated[collection] = 0
                errors.append({"legacy_key": legacy_key, "error": str(e)})
        return {
            "migrated": migrated,
            "total_migrated": sum(migrated.values()),
            "errors": errors,
        }


# Singleton instance
legacy_migration = LegacyMigration(key_value_store, create_legacy_store())
