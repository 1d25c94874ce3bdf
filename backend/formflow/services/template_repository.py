"""FormFlow Template Repository

Owns template records. Content is parsed once on creation (placeholders
computed immediately) and never changes afterwards; edits produce a clone.

Text templates live in the "templates" collection; templates carrying a
binary document live in "documentTemplates", which also tracks usage counts.
The template list is cached read-through and invalidated on every write.
"""

import asyncio
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from formflow.errors import NotFoundError, ValidationError
from formflow.models.storage import DOCUMENT_TEMPLATES, TEMPLATES
from formflow.models.templates import (
    BINARY_KINDS,
    EXTENSION_KINDS,
    UNIVERSAL_FORM_TYPE,
    DocumentKind,
    PlaceholderValidation,
    Template,
    TemplateMetadata,
    TemplateMetadataUpdate,
    generate_template_id,
)
from formflow.services.document_pipeline import has_container_signature, normalize_template
from formflow.services.kv_store import KeyValueStore, key_value_store
from formflow.services.placeholders import (
    extract_placeholders,
    repair_placeholder_formatting,
    validate_placeholders,
)

logger = logging.getLogger(__name__)

MAX_TEMPLATE_BYTES = int(os.getenv("MAX_TEMPLATE_BYTES", str(10 * 1024 * 1024)))

TEMPLATE_COLLECTIONS = (TEMPLATES, DOCUMENT_TEMPLATES)


class TemplateRepository:
    """Template storage, selection and author-time tooling."""

    def __init__(self, store: Optional[KeyValueStore] = None):
        self.store = store if store is not None else key_value_store
        self._cache: Optional[List[Template]] = None
        self._write_lock = asyncio.Lock()

    # =========================================================================
    # CREATION
    # =========================================================================

    async def upload(
        self,
        filename: str,
        content: bytes,
        form_type: str,
        is_universal: bool = False,
        name: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Template:
        """Create a template from an uploaded file."""
        if not content:
            raise ValidationError("Template file is empty", field="file")
        if len(content) > MAX_TEMPLATE_BYTES:
            raise ValidationError(
                f"Template file is {len(content)} bytes; the limit is {MAX_TEMPLATE_BYTES}",
                field="file",
            )

        extension = Path(filename or "").suffix.lower()
        kind = EXTENSION_KINDS.get(extension)
        if kind is None:
            supported = ", ".join(sorted(EXTENSION_KINDS))
            raise ValidationError(
                f"Unsupported template file type '{extension or filename}'. Supported: {supported}",
                field="file",
            )

        name = (name or Path(filename).stem).strip()

        if kind in BINARY_KINDS:
            if not has_container_signature(content):
                raise ValidationError("not a supported document container", field="file")
            return await self.create(
                name=name,
                form_type=form_type,
                binary_payload=content,
                is_universal=is_universal,
                document_kind=kind,
                metadata=metadata,
                strict=True,
            )

        try:
            body = content.decode("utf-8-sig")
        except UnicodeDecodeError:
            raise ValidationError("Template text must be UTF-8 encoded", field="file")

        return await self.create(
            name=name,
            form_type=form_type,
            body=body,
            is_universal=is_universal,
            document_kind=kind,
            metadata=metadata,
        )

    async def create(
        self,
        name: str,
        form_type: str,
        body: Optional[str] = None,
        binary_payload: Optional[bytes] = None,
        is_universal: bool = False,
        document_kind: Optional[DocumentKind] = None,
        metadata: Optional[Dict[str, Any]] = None,
        strict: bool = False,
    ) -> Template:
        """
        Create and persist a template.

        Exactly one of `body` / `binary_payload` must be present and non-empty.
        With `strict`, an unreadable binary document is rejected instead of
        stored without placeholders.
        """
        has_body = bool(body and body.strip())
        has_binary = bool(binary_payload)
        if has_body == has_binary:
            raise ValidationError(
                "A template needs exactly one of body or binary content", field="body"
            )
        if not (name or "").strip():
            raise ValidationError("Template name is required", field="name")
        form_type = (form_type or "").strip()
        if not form_type:
            raise ValidationError("Template form type is required", field="form_type")

        if has_body:
            body = repair_placeholder_formatting(body)
            kind = document_kind or DocumentKind.TEXT
        else:
            kind = document_kind or DocumentKind.WORD

        template = Template(
            name=name.strip(),
            form_type=form_type,
            is_universal=is_universal or form_type == UNIVERSAL_FORM_TYPE,
            document_kind=kind,
            body=body if has_body else None,
            binary_payload=binary_payload if has_binary else None,
            size_bytes=len(binary_payload) if has_binary else len(body.encode("utf-8")),
            metadata=TemplateMetadata(**(metadata or {})),
        )
        template.placeholders = self._extract(template, strict)

        await self._persist(template)
        logger.info(
            f"Template created: {template.template_id} '{template.name}' "
            f"({template.form_type}, {len(template.placeholders)} placeholders)"
        )
        return template

    def _extract(self, template: Template, strict: bool = False) -> List[str]:
        if template.has_body:
            return extract_placeholders(template.body)
        try:
            return extract_placeholders(normalize_template(template))
        except Exception as e:
            if strict:
                raise ValidationError(f"Could not read document: {e}", field="file")
            logger.warning(f"Template {template.template_id}: placeholders not extracted ({e})")
            return []

    # =========================================================================
    # STORAGE
    # =========================================================================

    @staticmethod
    def _collection_for(template: Template) -> str:
        return DOCUMENT_TEMPLATES if template.has_binary else TEMPLATES

    async def _persist(self, template: Template) -> None:
        await self.store.save(
            self._collection_for(template), template.template_id, template.to_payload()
        )
        self.invalidate_cache()

    def invalidate_cache(self) -> None:
        self._cache = None

    async def list_templates(self) -> List[Template]:
        """All templates, oldest upload first."""
        if self._cache is None:
            templates = []
            for collection in TEMPLATE_COLLECTIONS:
                for item in await self.store.get_all(collection):
                    try:
                        templates.append(Template.from_payload(item.payload, item.id))
                    except Exception as e:
                        logger.warning(f"Skipping unreadable template {item.id} in {collection}: {e}")
            templates.sort(key=lambda t: t.uploaded_at)
            self._cache = templates
        return list(self._cache)

    async def get(self, template_id: str) -> Template:
        for template in await self.list_templates():
            if template.template_id == template_id:
                return template
        raise NotFoundError("Template", template_id)

    async def delete(self, template_id: str) -> bool:
        removed = False
        for collection in TEMPLATE_COLLECTIONS:
            removed = await self.store.delete(collection, template_id) or removed
        self.invalidate_cache()
        if removed:
            logger.info(f"Template deleted: {template_id}")
        return removed

    # =========================================================================
    # SELECTION
    # =========================================================================

    async def templates_for(self, form_type: str) -> List[Template]:
        """Templates whose form type matches, plus every universal template."""
        return [t for t in await self.list_templates() if t.applies_to(form_type)]

    async def select_for(self, form_type: str) -> Optional[Template]:
        """First exact form-type match, else first universal template, else None."""
        candidates = await self.templates_for(form_type)
        for template in candidates:
            if template.form_type == form_type:
                return template
        for template in candidates:
            if template.is_universal:
                return template
        return None

    async def record_usage(self, template_id: str) -> None:
        """Bump usage_count on a document template."""
        async with self._write_lock:
            item = await self.store.get_by_id(DOCUMENT_TEMPLATES, template_id)
            if item is None:
                return
            payload = dict(item.payload)
            payload["usage_count"] = int(payload.get("usage_count") or 0) + 1
            await self.store.save(DOCUMENT_TEMPLATES, template_id, payload)
            self.invalidate_cache()

    # =========================================================================
    # AUTHOR-TIME TOOLING
    # =========================================================================

    async def validate(self, template_id: str) -> PlaceholderValidation:
        template = await self.get(template_id)
        return validate_placeholders(template.placeholders)

    async def update_metadata(self, template_id: str, update: TemplateMetadataUpdate) -> Template:
        """The only in-place edit; content stays as uploaded."""
        async with self._write_lock:
            template = await self.get(template_id)
            changes = update.model_dump(exclude_none=True)
            template.metadata = template.metadata.model_copy(update=changes)
            await self._persist(template)
        return template

    async def clone(
        self, template_id: str, new_form_type: str, new_name: Optional[str] = None
    ) -> Template:
        original = await self.get(template_id)
        if not (new_form_type or "").strip():
            raise ValidationError("Clone needs a form type", field="form_type")

        metadata = original.metadata.model_copy(update={"version": "1.0 (cloned)"})
        clone = original.model_copy(update={
            "template_id": generate_template_id(),
            "name": new_name or f"{original.name} ({new_form_type})",
            "form_type": new_form_type,
            "is_universal": new_form_type == UNIVERSAL_FORM_TYPE,
            "metadata": metadata,
            "usage_count": 0,
            "uploaded_at": datetime.now(timezone.utc),
        })
        await self._persist(clone)
        logger.info(f"Template {template_id} cloned to {clone.template_id} for {new_form_type}")
        return clone

    async def search(self, query: str) -> List[Template]:
        """Case-insensitive match on name, form type or any placeholder."""
        needle = (query or "").strip().lower()
        templates = await self.list_templates()
        if not needle:
            return templates
        return [
            t for t in templates
            if needle in t.name.lower()
            or needle in t.form_type.lower()
            or any(needle in p.lower() for p in t.placeholders)
        ]

    async def available_form_types(self) -> List[str]:
        return sorted({t.form_type for t in await self.list_templates()})

    async def grouped_by_form_type(self) -> Dict[str, List[Template]]:
        grouped: Dict[str, List[Template]] = {}
        for template in await self.list_templates():
            grouped.setdefault(template.form_type, []).append(template)
        return grouped

    async def statistics(self, template_id: str) -> Dict[str, Any]:
        template = await self.get(template_id)
        if template.has_body:
            text = template.body
        else:
            try:
                text = normalize_template(template)
            except Exception as e:
                logger.warning(f"Template {template_id}: statistics without content ({e})")
                text = ""
        return {
            "template_id": template.template_id,
            "placeholder_count": len(template.placeholders),
            "content_length": len(text),
            "estimated_words": len(text.split()),
            "created_days_ago": (datetime.now(timezone.utc) - template.uploaded_at).days,
            "usage_count": template.usage_count,
        }


# Singleton instance
template_repository = TemplateRepository()
