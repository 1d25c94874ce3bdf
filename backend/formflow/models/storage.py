"""Key-Value Store record model"""

from dataclasses import dataclass
from datetime import datetime
from typing import Generic, TypeVar

T = TypeVar("T")


# Logical collection names
SUBMISSIONS = "submissions"
TEMPLATES = "templates"
DOCUMENT_TEMPLATES = "documentTemplates"

KNOWN_COLLECTIONS = (SUBMISSIONS, TEMPLATES, DOCUMENT_TEMPLATES)


@dataclass
class StorageItem(Generic[T]):
    """
    One record in a named collection.

    `id` is unique within `collection`; `created_at` is set once and
    `updated_at` moves forward on every write.
    """
    id: str
    collection: str
    payload: T
    created_at: datetime
    updated_at: datetime
