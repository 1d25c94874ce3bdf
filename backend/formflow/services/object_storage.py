"""
Object Storage - the cloud-upload capability behind the cloudUpload channel.

GridFSStorageAdapter keeps artifacts in a MongoDB GridFS bucket;
InMemoryStorageAdapter keeps them in process for tests and local runs.
Both return a location reference of the form <scheme>://<bucket>/<object id>.
"""
import hashlib
import io
import logging
import os
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

from motor.motor_asyncio import AsyncIOMotorGridFSBucket

from database import database
from formflow.services.kv_store import KV_BACKEND

logger = logging.getLogger(__name__)

OBJECT_STORAGE_BACKEND = os.getenv(
    "OBJECT_STORAGE_BACKEND", "gridfs" if KV_BACKEND == "mongo" else "memory"
).lower()
GRIDFS_BUCKET = os.getenv("GRIDFS_BUCKET", "submission_artifacts")


class ObjectStorageError(Exception):
    """Base exception for object storage operations."""
    pass


class StoredObject:
    """Stored object metadata."""
    def __init__(
        self,
        object_id: str,
        name: str,
        content_type: str,
        size_bytes: int,
        sha256_hash: str,
        location: str,
        upload_timestamp: datetime,
        metadata: Optional[Dict[str, Any]] = None,
    ):
        self.object_id = object_id
        self.name = name
        self.content_type = content_type
        self.size_bytes = size_bytes
        self.sha256_hash = sha256_hash
        self.location = location
        self.upload_timestamp = upload_timestamp
        self.metadata = metadata or {}


class StorageAdapter(ABC):
    """Abstract base class for object storage implementations."""

    @abstractmethod
    async def upload(
        self,
        content: bytes,
        name: str,
        content_type: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> StoredObject:
        """Store bytes and return their metadata, including the location reference."""
        pass


class GridFSStorageAdapter(StorageAdapter):
    """
    GridFS-based storage implementation.
    Stores artifacts in MongoDB GridFS with full metadata tracking.
    """

    def __init__(self, bucket_name: str = GRIDFS_BUCKET):
        self.bucket_name = bucket_name
        self._bucket = None

    def _get_bucket(self) -> AsyncIOMotorGridFSBucket:
        """Get or create GridFS bucket."""
        if self._bucket is None:
            db = database.get_db()
            if db is None:
                raise ObjectStorageError("database not connected")
            self._bucket = AsyncIOMotorGridFSBucket(db, bucket_name=self.bucket_name)
        return self._bucket

    async def upload(
        self,
        content: bytes,
        name: str,
        content_type: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> StoredObject:
        """Upload bytes to GridFS."""
        bucket = self._get_bucket()
        sha256_hash = hashlib.sha256(content).hexdigest()
        now = datetime.now(timezone.utc)

        gridfs_metadata = {
            "content_type": content_type,
            "sha256_hash": sha256_hash,
            "upload_timestamp": now.isoformat(),
            "custom_metadata": metadata or {},
        }

        file_id = await bucket.upload_from_stream(
            name,
            io.BytesIO(content),
            metadata=gridfs_metadata,
        )

        stored = StoredObject(
            object_id=str(file_id),
            name=name,
            content_type=content_type,
            size_bytes=len(content),
            sha256_hash=sha256_hash,
            location=f"gridfs://{self.bucket_name}/{file_id}",
            upload_timestamp=now,
            metadata=metadata,
        )
        logger.info(f"Object uploaded to GridFS: {name} ({stored.object_id})")
        return stored


class InMemoryStorageAdapter(StorageAdapter):
    """Process-local object storage; `objects` maps object id -> (bytes, metadata)."""

    def __init__(self, bucket_name: str = GRIDFS_BUCKET):
        self.bucket_name = bucket_name
        self.objects: Dict[str, Tuple[bytes, StoredObject]] = {}

    async def upload(
        self,
        content: bytes,
        name: str,
        content_type: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> StoredObject:
        object_id = uuid.uuid4().hex
        stored = StoredObject(
            object_id=object_id,
            name=name,
            content_type=content_type,
            size_bytes=len(content),
            sha256_hash=hashlib.sha256(content).hexdigest(),
            location=f"memory://{self.bucket_name}/{object_id}",
            upload_timestamp=datetime.now(timezone.utc),
            metadata=metadata,
        )
        self.objects[object_id] = (bytes(content), stored)
        logger.info(f"Object stored in memory: {name} ({object_id})")
        return stored


def create_storage_adapter(backend: Optional[str] = None) -> StorageAdapter:
    backend = (backend or OBJECT_STORAGE_BACKEND).lower()
    if backend == "memory":
        return InMemoryStorageAdapter()
    if backend == "gridfs":
        return GridFSStorageAdapter()
    raise ValueError(f"Unknown OBJECT_STORAGE_BACKEND: {backend}")


# Singleton instance
storage_adapter = create_storage_adapter()
