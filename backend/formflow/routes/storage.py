"""FormFlow Storage Routes

Administrative view of the key-value store: usage statistics, an explicit
legacy migration run and collection clearing.
"""

from fastapi import APIRouter, HTTPException
import logging

from formflow.errors import PersistenceError
from formflow.models.storage import KNOWN_COLLECTIONS, TEMPLATES, DOCUMENT_TEMPLATES
from formflow.services.kv_store import key_value_store
from formflow.services.legacy_migration import legacy_migration
from formflow.services.template_repository import template_repository

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/storage", tags=["Storage"])


@router.get("/statistics")
async def storage_statistics():
    """Record counts and approximate byte sizes per collection."""
    try:
        return await key_value_store.usage_statistics()
    except PersistenceError as e:
        logger.error(f"Storage statistics unavailable: {e}")
        raise HTTPException(status_code=503, detail="Storage unavailable")


@router.post("/migrate")
async def migrate_legacy_storage():
    """Move every legacy blob into its collection. Failures are reported, not raised."""
    result = await legacy_migration.migrate_all()
    template_repository.invalidate_cache()
    return result


@router.delete("/{collection}")
async def clear_collection(collection: str):
    if collection not in KNOWN_COLLECTIONS:
        raise HTTPException(status_code=404, detail=f"Unknown collection: {collection}")
    try:
        await key_value_store.clear(collection)
    except PersistenceError as e:
        logger.error(f"Clearing {collection} failed: {e}")
        raise HTTPException(status_code=503, detail="Storage unavailable")

    if collection in (TEMPLATES, DOCUMENT_TEMPLATES):
        template_repository.invalidate_cache()
    logger.info(f"Collection cleared: {collection}")
    return {"cleared": True, "collection": collection}
