"""FormFlow Submission Routes

Submissions are persisted synchronously; conversion and distribution run in
the background. Pass wait_for_distribution=true to get the settled outcomes
in the response instead of re-reading the submission later.
"""

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel
from typing import Optional, List
import logging

from formflow.errors import NotFoundError, PersistenceError, ValidationError
from formflow.models.submissions import ChannelType, SubmissionCreate, SubmissionStatus
from formflow.services.submission_service import submission_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/submissions", tags=["Submissions"])


class RepeatSubmissionRequest(BaseModel):
    """Channels for the repeated run; all channels when omitted."""
    channels: Optional[List[ChannelType]] = None


# ============================================================================
# SUBMISSION ENDPOINTS
# ============================================================================

@router.post("", status_code=201)
async def create_submission(
    request: SubmissionCreate,
    wait_for_distribution: bool = False,
    timeout: Optional[float] = None,
):
    """Persist a submission and start its document run."""
    try:
        submission = await submission_service.create_submission(
            form_type=request.form_type,
            title=request.title,
            field_data=request.field_data,
            field_schema_snapshot=request.field_schema_snapshot,
            channels=request.channels,
            cc_emails=request.cc_emails,
        )
        if wait_for_distribution:
            submission = await submission_service.wait_for_distribution(
                submission.submission_id, timeout=timeout
            )
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=e.message)
    except PersistenceError as e:
        logger.error(f"Submission not saved: {e}")
        raise HTTPException(status_code=503, detail="Submission could not be saved")

    return submission.model_dump(mode="json")


@router.get("")
async def list_submissions(
    form_type: Optional[str] = None,
    status: Optional[SubmissionStatus] = None,
):
    """List submissions, newest first."""
    submissions = await submission_service.list_submissions(form_type=form_type, status=status)
    return {
        "submissions": [s.model_dump(mode="json") for s in submissions],
        "total": len(submissions),
    }


@router.get("/{submission_id}")
async def get_submission(submission_id: str):
    """Get a submission with its current distribution status."""
    try:
        submission = await submission_service.get_submission(submission_id)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Submission not found")
    return submission.model_dump(mode="json")


@router.delete("/{submission_id}")
async def delete_submission(submission_id: str):
    if not await submission_service.delete_submission(submission_id):
        raise HTTPException(status_code=404, detail="Submission not found")
    return {"deleted": True, "submission_id": submission_id}


@router.post("/{submission_id}/complete")
async def complete_submission(submission_id: str):
    """Mark a submitted submission as completed."""
    try:
        submission = await submission_service.complete_submission(submission_id)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Submission not found")
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=e.message)
    return submission.model_dump(mode="json")


@router.post("/{submission_id}/repeat", status_code=201)
async def repeat_submission(submission_id: str, request: Optional[RepeatSubmissionRequest] = None):
    """Submit again from a previous submission's data."""
    try:
        submission = await submission_service.repeat_submission(
            submission_id, channels=request.channels if request else None
        )
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Submission not found")
    except PersistenceError as e:
        logger.error(f"Repeated submission not saved: {e}")
        raise HTTPException(status_code=503, detail="Submission could not be saved")
    return submission.model_dump(mode="json")
