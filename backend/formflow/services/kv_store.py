"""Key-Value Store

Generic persistence over named collections. Every record is a StorageItem:
an id unique within its collection, a payload, and created/updated timestamps.

Two implementations share one contract:
- MongoKeyValueStore: one MongoDB collection per logical collection
- InMemoryKeyValueStore: process-local, for tests and local development

When a legacy migration is attached, the first operation on a collection
migrates that collection's legacy blob once per process.
"""
import asyncio
import copy
import json
import logging
import os
from abc import ABC, abstractmethod
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from bson.errors import InvalidDocument
from pymongo.errors import PyMongoError

from database import database
from formflow.errors import BatchPersistenceError, FormFlowError, PersistenceError
from formflow.models.storage import KNOWN_COLLECTIONS, StorageItem
from formflow.services.sanitizer import sanitize

logger = logging.getLogger(__name__)

KV_BACKEND = os.getenv("KV_BACKEND", "mongo").lower()

# Set while a migration writes through the store, so its own writes skip the hook
_migrating: ContextVar[bool] = ContextVar("formflow_kv_migrating", default=False)


@contextmanager
def bypass_migration_hook():
    """Writes made inside this block do not trigger the first-access migration."""
    token = _migrating.set(True)
    try:
        yield
    finally:
        _migrating.reset(token)


def _bson_value(value: Any) -> Any:
    """BSON has no set type; sets are stored as arrays."""
    if isinstance(value, dict):
        return {key: _bson_value(member) for key, member in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_bson_value(member) for member in value]
    return value


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def estimate_size(payload: Any) -> int:
    """Rough serialized size of a payload in bytes."""
    try:
        return len(json.dumps(payload, default=str).encode("utf-8"))
    except (TypeError, ValueError):
        return len(str(payload).encode("utf-8"))


class KeyValueStore(ABC):
    """Abstract base class for key-value store implementations."""

    # Smallest step the backend can represent; updated_at advances by at least this much
    timestamp_resolution = timedelta(microseconds=1)

    def __init__(self):
        self._migration = None
        self._migrated: set = set()
        self._migration_locks: Dict[str, asyncio.Lock] = {}
        self._written: set = set()

    # ========================================================================
    # Backend primitives
    # ========================================================================

    @abstractmethod
    async def _load_all(self, collection: str) -> List[StorageItem]:
        pass

    @abstractmethod
    async def _load(self, collection: str, item_id: str) -> Optional[StorageItem]:
        pass

    @abstractmethod
    async def _upsert(self, collection: str, item_id: str, payload: Any) -> StorageItem:
        pass

    @abstractmethod
    async def _remove(self, collection: str, item_id: str) -> bool:
        pass

    @abstractmethod
    async def _remove_all(self, collection: str) -> bool:
        pass

    # ========================================================================
    # Legacy migration hook
    # ========================================================================

    def attach_migration(self, migration) -> None:
        """Attach a LegacyMigration to run once per collection on first access."""
        self._migration = migration
        self._migrated.clear()

    def detach_migration(self) -> None:
        self._migration = None

    async def _ensure_migrated(self, collection: str) -> None:
        if self._migration is None or _migrating.get() or collection in self._migrated:
            return

        lock = self._migration_locks.setdefault(collection, asyncio.Lock())
        async with lock:
            if collection in self._migrated:
                return
            try:
                with bypass_migration_hook():
                    await self._migration.migrate_collection(collection)
            except FormFlowError as e:
                # Legacy blob is kept; normal operation continues
                logger.error(f"Legacy migration for '{collection}' failed: {e}")
            finally:
                self._migrated.add(collection)

    # ========================================================================
    # Contract
    # ========================================================================

    def _next_updated_at(self, previous: Optional[datetime]) -> datetime:
        step = self.timestamp_resolution
        now = datetime.now(timezone.utc)
        now -= timedelta(microseconds=now.microsecond % (step // timedelta(microseconds=1)))
        if previous is not None and now <= previous:
            now = previous + step
        return now

    async def get_all(self, collection: str) -> List[StorageItem]:
        await self._ensure_migrated(collection)
        return await self._load_all(collection)

    async def get_by_id(self, collection: str, item_id: str) -> Optional[StorageItem]:
        """Return the item, or None when absent."""
        await self._ensure_migrated(collection)
        return await self._load(collection, item_id)

    async def save(self, collection: str, item_id: str, payload: Any) -> StorageItem:
        """Upsert. Preserves created_at, always advances updated_at."""
        await self._ensure_migrated(collection)
        item = await self._upsert(collection, item_id, sanitize(payload))
        self._written.add(collection)
        return item

    async def save_all(
        self, collection: str, items: Iterable[Tuple[str, Any]]
    ) -> List[StorageItem]:
        """Upsert each (id, payload) pair.

        Writes are per item with no atomicity across items. If any item fails,
        BatchPersistenceError names the failed ids and carries the saved items.
        """
        await self._ensure_migrated(collection)
        saved: List[StorageItem] = []
        failed: List[str] = []
        for item_id, payload in items:
            try:
                saved.append(await self._upsert(collection, item_id, sanitize(payload)))
            except PersistenceError as e:
                logger.error(f"saveAll: item {item_id} in '{collection}' failed: {e}")
                failed.append(item_id)
        if saved:
            self._written.add(collection)
        if failed:
            raise BatchPersistenceError(collection, failed, saved)
        return saved

    async def delete(self, collection: str, item_id: str) -> bool:
        """Returns True if something was removed."""
        await self._ensure_migrated(collection)
        return await self._remove(collection, item_id)

    async def clear(self, collection: str) -> bool:
        await self._ensure_migrated(collection)
        cleared = await self._remove_all(collection)
        logger.info(f"Cleared collection '{collection}'")
        return cleared

    async def clear_all(self) -> bool:
        for collection in self._collections():
            await self.clear(collection)
        return True

    async def find_by(self, collection: str, field: str, value: Any) -> List[StorageItem]:
        """Items whose payload has `field` equal to `value`."""
        items = await self.get_all(collection)
        return [
            item for item in items
            if isinstance(item.payload, dict) and item.payload.get(field) == value
        ]

    async def usage_statistics(self) -> Dict[str, Any]:
        """Per-collection count and approximate byte size, plus totals."""
        per_collection = {}
        total_count = 0
        total_bytes = 0
        for collection in self._collections():
            items = await self.get_all(collection)
            size = sum(estimate_size(item.payload) for item in items)
            per_collection[collection] = {
                "count": len(items),
                "approximate_byte_size": size,
            }
            total_count += len(items)
            total_bytes += size
        return {
            "per_collection": per_collection,
            "total": {"count": total_count, "approximate_byte_size": total_bytes},
        }

    def _collections(self) -> List[str]:
        extra = sorted(c for c in self._written if c not in KNOWN_COLLECTIONS)
        return [*KNOWN_COLLECTIONS, *extra]


class MongoKeyValueStore(KeyValueStore):
    """
    MongoDB-backed store.
    Documents are {_id, payload, created_at, updated_at}.
    """

    # BSON dates carry milliseconds
    timestamp_resolution = timedelta(milliseconds=1)

    def _get_collection(self, collection: str, operation: str):
        db = database.get_db()
        if db is None:
            raise PersistenceError(collection, operation, "database not connected")
        return db[collection]

    @staticmethod
    def _to_item(collection: str, doc: Dict[str, Any]) -> StorageItem:
        return StorageItem(
            id=doc["_id"],
            collection=collection,
            payload=doc.get("payload"),
            created_at=_aware(doc.get("created_at")),
            updated_at=_aware(doc.get("updated_at")),
        )

    async def _load_all(self, collection: str) -> List[StorageItem]:
        coll = self._get_collection(collection, "getAll")
        try:
            docs = await coll.find({}).sort("created_at", 1).to_list(None)
        except PyMongoError as e:
            logger.error(f"getAll on '{collection}' failed: {e}")
            raise PersistenceError(collection, "getAll", str(e)) from e
        return [self._to_item(collection, doc) for doc in docs]

    async def _load(self, collection: str, item_id: str) -> Optional[StorageItem]:
        coll = self._get_collection(collection, "getById")
        try:
            doc = await coll.find_one({"_id": item_id})
        except PyMongoError as e:
            logger.error(f"getById on '{collection}' failed: {e}")
            raise PersistenceError(collection, "getById", str(e)) from e
        return self._to_item(collection, doc) if doc else None

    async def _upsert(self, collection: str, item_id: str, payload: Any) -> StorageItem:
        coll = self._get_collection(collection, "save")
        payload = _bson_value(payload)
        try:
            existing = await coll.find_one(
                {"_id": item_id}, {"created_at": 1, "updated_at": 1}
            )
            previous = _aware(existing.get("updated_at")) if existing else None
            now = self._next_updated_at(previous)
            created_at = _aware(existing.get("created_at")) if existing else now

            await coll.update_one(
                {"_id": item_id},
                {
                    "$set": {"payload": payload, "updated_at": now},
                    "$setOnInsert": {"created_at": created_at},
                },
                upsert=True,
            )
        except (PyMongoError, InvalidDocument) as e:
            logger.error(f"save of {item_id} on '{collection}' failed: {e}")
            raise PersistenceError(collection, "save", str(e)) from e

        return StorageItem(
            id=item_id,
            collection=collection,
            payload=payload,
            created_at=created_at,
            updated_at=now,
        )

    async def _remove(self, collection: str, item_id: str) -> bool:
        coll = self._get_collection(collection, "delete")
        try:
            result = await coll.delete_one({"_id": item_id})
        except PyMongoError as e:
            logger.error(f"delete on '{collection}' failed: {e}")
            raise PersistenceError(collection, "delete", str(e)) from e
        return result.deleted_count > 0

    async def _remove_all(self, collection: str) -> bool:
        coll = self._get_collection(collection, "clear")
        try:
            await coll.delete_many({})
        except PyMongoError as e:
            logger.error(f"clear on '{collection}' failed: {e}")
            raise PersistenceError(collection, "clear", str(e)) from e
        return True

    async def find_by(self, collection: str, field: str, value: Any) -> List[StorageItem]:
        await self._ensure_migrated(collection)
        coll = self._get_collection(collection, "findBy")
        try:
            docs = await coll.find({f"payload.{field}": value}).sort("created_at", 1).to_list(None)
        except PyMongoError as e:
            raise PersistenceError(collection, "findBy", str(e)) from e
        return [self._to_item(collection, doc) for doc in docs]


class InMemoryKeyValueStore(KeyValueStore):
    """Process-local store. Payloads are deep-copied on the way in and out."""

    def __init__(self):
        super().__init__()
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}

    def _to_item(self, collection: str, item_id: str, record: Dict[str, Any]) -> StorageItem:
        return StorageItem(
            id=item_id,
            collection=collection,
            payload=copy.deepcopy(record["payload"]),
            created_at=record["created_at"],
            updated_at=record["updated_at"],
        )

    async def _load_all(self, collection: str) -> List[StorageItem]:
        records = self._data.get(collection, {})
        return [self._to_item(collection, item_id, r) for item_id, r in records.items()]

    async def _load(self, collection: str, item_id: str) -> Optional[StorageItem]:
        record = self._data.get(collection, {}).get(item_id)
        return self._to_item(collection, item_id, record) if record else None

    async def _upsert(self, collection: str, item_id: str, payload: Any) -> StorageItem:
        records = self._data.setdefault(collection, {})
        existing = records.get(item_id)
        now = self._next_updated_at(existing["updated_at"] if existing else None)
        try:
            stored = copy.deepcopy(payload)
        except Exception as e:
            raise PersistenceError(collection, "save", str(e)) from e
        records[item_id] = {
            "payload": stored,
            "created_at": existing["created_at"] if existing else now,
            "updated_at": now,
        }
        return self._to_item(collection, item_id, records[item_id])

    async def _remove(self, collection: str, item_id: str) -> bool:
        return self._data.get(collection, {}).pop(item_id, None) is not None

    async def _remove_all(self, collection: str) -> bool:
        self._data.pop(collection, None)
        return True


def create_key_value_store(backend: Optional[str] = None) -> KeyValueStore:
    backend = (backend or KV_BACKEND).lower()
    if backend == "memory":
        return InMemoryKeyValueStore()
    if backend == "mongo":
        return MongoKeyValueStore()
    raise ValueError(f"Unknown KV_BACKEND: {backend}")


# Singleton instance
key_value_store = create_key_value_store()
