"""FormFlow Download Routes - retrieval side of the download channel."""

from fastapi import APIRouter, HTTPException
from fastapi.responses import Response

from formflow.services.channels import download_registry

router = APIRouter(prefix="/api/downloads", tags=["Downloads"])


@router.get("/{token}")
async def download_artifact(token: str):
    artifact = download_registry.get(token)
    if artifact is None:
        raise HTTPException(status_code=404, detail="Download not found or expired")
    return Response(
        content=artifact.content,
        media_type=artifact.content_type,
        headers={"Content-Disposition": f'attachment; filename="{artifact.filename}"'},
    )
