"""FormFlow Template Models

Templates are parsed once on upload (placeholders computed immediately)
and their content is immutable afterwards. Edits produce a clone.
"""

from pydantic import BaseModel, Field, field_validator
from typing import Optional, Dict, Any, List
from datetime import datetime, timezone
from enum import Enum
import base64
import uuid


UNIVERSAL_FORM_TYPE = "universal"


class DocumentKind(str, Enum):
    """Source format of the uploaded template file."""
    WORD = "word"
    HTML = "html"
    TEXT = "text"
    MARKDOWN = "markdown"


EXTENSION_KINDS = {
    ".docx": DocumentKind.WORD,
    ".html": DocumentKind.HTML,
    ".htm": DocumentKind.HTML,
    ".txt": DocumentKind.TEXT,
    ".md": DocumentKind.MARKDOWN,
}

BINARY_KINDS = {DocumentKind.WORD}


def generate_template_id() -> str:
    """Generate a template ID like TPL-3F9A0C12B7DE."""
    return f"TPL-{uuid.uuid4().hex[:12].upper()}"


class TemplateMetadata(BaseModel):
    author: Optional[str] = None
    version: Optional[str] = None
    description: Optional[str] = None
    tags: List[str] = Field(default_factory=list)

    model_config = {"extra": "ignore"}


class Template(BaseModel):
    """A document template.

    Exactly one of `body` / `binary_payload` carries the content.
    """
    template_id: str = Field(default_factory=generate_template_id)
    name: str
    form_type: str
    is_universal: bool = False
    document_kind: DocumentKind = DocumentKind.TEXT

    # Content
    body: Optional[str] = None
    binary_payload: Optional[bytes] = None

    # Derived at upload time
    placeholders: List[str] = Field(default_factory=list)
    size_bytes: int = 0

    metadata: TemplateMetadata = Field(default_factory=TemplateMetadata)
    usage_count: int = 0
    uploaded_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = {"extra": "ignore"}

    @field_validator("uploaded_at")
    @classmethod
    def _uploaded_at_utc(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    @property
    def has_binary(self) -> bool:
        return bool(self.binary_payload)

    @property
    def has_body(self) -> bool:
        return bool(self.body and self.body.strip())

    def applies_to(self, form_type: str) -> bool:
        return self.is_universal or self.form_type == form_type

    def to_payload(self) -> Dict[str, Any]:
        """Storage form: binary content as base64, timestamps as ISO strings."""
        doc = self.model_dump(mode="json", exclude={"binary_payload"})
        doc["binary_payload"] = (
            base64.b64encode(self.binary_payload).decode("ascii") if self.binary_payload else None
        )
        return doc

    def to_summary(self) -> Dict[str, Any]:
        """API form: everything but the raw content."""
        doc = self.model_dump(mode="json", exclude={"binary_payload", "body"})
        doc["has_binary"] = self.has_binary
        doc["body_preview"] = (self.body or "")[:200]
        return doc

    @classmethod
    def from_payload(cls, data: Dict[str, Any], item_id: Optional[str] = None) -> "Template":
        """Load a stored template, including records written by the legacy store.

        `item_id` is the record's key in the store and, when given, the
        template id; delete and usage tracking address records by that key.
        """
        data = dict(data)
        raw = data.pop("binary_payload", None)
        if raw is None:
            raw = data.pop("binaryContent", None)
        if isinstance(raw, str):
            raw = base64.b64decode(raw)
        elif isinstance(raw, list):
            raw = bytes(raw)
        elif not isinstance(raw, (bytes, bytearray)):
            raw = None

        # Legacy camelCase records
        if item_id:
            data["template_id"] = item_id
        elif "template_id" not in data:
            legacy_id = data.get("id") or data.get("templateId")
            if legacy_id:
                data["template_id"] = str(legacy_id)
        if "form_type" not in data and "formType" in data:
            data["form_type"] = data["formType"]
        if not data.get("form_type"):
            data["form_type"] = UNIVERSAL_FORM_TYPE if data.get("isUniversal") else "unknown"
        if not data.get("name"):
            data["name"] = data.get("fileName") or data.get("template_id") or "Untitled template"
        if "is_universal" not in data and "isUniversal" in data:
            data["is_universal"] = data["isUniversal"]
        if "body" not in data and isinstance(data.get("content"), str):
            data["body"] = data["content"]
        if "uploaded_at" not in data and data.get("uploadedAt"):
            data["uploaded_at"] = data["uploadedAt"]
        if "size_bytes" not in data and isinstance(data.get("size"), int):
            data["size_bytes"] = data["size"]
        for key in ("metadata", "placeholders", "usage_count"):
            if data.get(key) is None:
                data.pop(key, None)
        if data.get("document_kind") not in {k.value for k in DocumentKind}:
            data["document_kind"] = DocumentKind.WORD if raw else DocumentKind.TEXT

        return cls(binary_payload=raw or None, **data)


class PlaceholderValidation(BaseModel):
    """Author-time placeholder feedback. Never used at generation time."""
    is_valid: bool
    warnings: List[str] = Field(default_factory=list)


class TemplateMetadataUpdate(BaseModel):
    author: Optional[str] = None
    version: Optional[str] = None
    description: Optional[str] = None
    tags: Optional[List[str]] = None


class CloneTemplateRequest(BaseModel):
    form_type: str
    name: Optional[str] = None
