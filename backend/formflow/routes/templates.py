"""FormFlow Template Routes

Upload, selection and author-time tooling for document templates.
Template content is immutable once uploaded; edits go through clone.
"""

from fastapi import APIRouter, File, Form, HTTPException, UploadFile
from typing import Optional
import logging

from formflow.errors import NotFoundError, PersistenceError, ValidationError
from formflow.models.templates import CloneTemplateRequest, TemplateMetadataUpdate
from formflow.services.template_repository import template_repository

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/templates", tags=["Templates"])


# ============================================================================
# UPLOAD & LISTING
# ============================================================================

@router.post("", status_code=201)
async def upload_template(
    file: UploadFile = File(...),
    form_type: str = Form(...),
    is_universal: bool = Form(False),
    name: Optional[str] = Form(None),
    author: Optional[str] = Form(None),
    version: Optional[str] = Form(None),
    description: Optional[str] = Form(None),
    tags: Optional[str] = Form(None),
):
    """Upload a .docx, .html, .txt or .md template."""
    content = await file.read()
    metadata = {
        "author": author,
        "version": version,
        "description": description,
        "tags": [t.strip() for t in (tags or "").split(",") if t.strip()],
    }
    try:
        template = await template_repository.upload(
            filename=file.filename,
            content=content,
            form_type=form_type,
            is_universal=is_universal,
            name=name,
            metadata=metadata,
        )
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=e.message)
    except PersistenceError as e:
        logger.error(f"Template not saved: {e}")
        raise HTTPException(status_code=503, detail="Template could not be saved")

    return template.to_summary()


@router.get("")
async def list_templates(form_type: Optional[str] = None, q: Optional[str] = None):
    """List templates; form_type adds universal templates, q searches."""
    if q:
        templates = await template_repository.search(q)
        if form_type:
            templates = [t for t in templates if t.applies_to(form_type)]
    elif form_type:
        templates = await template_repository.templates_for(form_type)
    else:
        templates = await template_repository.list_templates()
    return {
        "templates": [t.to_summary() for t in templates],
        "total": len(templates),
    }


@router.get("/form-types")
async def list_form_types():
    """Form types with at least one template, and template counts per type."""
    grouped = await template_repository.grouped_by_form_type()
    return {
        "form_types": await template_repository.available_form_types(),
        "counts": {form_type: len(templates) for form_type, templates in grouped.items()},
    }


# ============================================================================
# SINGLE TEMPLATE
# ============================================================================

@router.get("/{template_id}")
async def get_template(template_id: str):
    try:
        template = await template_repository.get(template_id)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Template not found")
    summary = template.to_summary()
    summary["body"] = template.body
    return summary


@router.get("/{template_id}/statistics")
async def template_statistics(template_id: str):
    try:
        return await template_repository.statistics(template_id)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Template not found")


@router.get("/{template_id}/validation")
async def validate_template(template_id: str):
    """Placeholder naming warnings for the template author."""
    try:
        result = await template_repository.validate(template_id)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Template not found")
    return result.model_dump()


@router.post("/{template_id}/clone", status_code=201)
async def clone_template(template_id: str, request: CloneTemplateRequest):
    """Copy a template to another form type."""
    try:
        clone = await template_repository.clone(template_id, request.form_type, request.name)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Template not found")
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=e.message)
    return clone.to_summary()


@router.patch("/{template_id}/metadata")
async def update_template_metadata(template_id: str, request: TemplateMetadataUpdate):
    try:
        template = await template_repository.update_metadata(template_id, request)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Template not found")
    return template.to_summary()


@router.delete("/{template_id}")
async def delete_template(template_id: str):
    if not await template_repository.delete(template_id):
        raise HTTPException(status_code=404, detail="Template not found")
    return {"deleted": True, "template_id": template_id}
