"""FormFlow Submission and Distribution Models"""

from pydantic import BaseModel, Field
from typing import Optional, Dict, Any, List
from datetime import datetime, timezone
from enum import Enum
import uuid


class SubmissionStatus(str, Enum):
    """Submission lifecycle. DRAFT is reserved and never entered."""
    DRAFT = "draft"
    SUBMITTED = "submitted"
    COMPLETED = "completed"


class ChannelType(str, Enum):
    """Distribution channels. Values are the keys of distribution_status."""
    DOWNLOAD = "download"
    EMAIL = "email"
    CLOUD_UPLOAD = "cloudUpload"
    SERVER_SAVE = "serverSave"


ALL_CHANNELS = [
    ChannelType.DOWNLOAD,
    ChannelType.EMAIL,
    ChannelType.CLOUD_UPLOAD,
    ChannelType.SERVER_SAVE,
]

# Synthetic distribution_status key recorded when conversion fails
CONVERSION_KEY = "conversion"


class OutcomeStatus(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


def generate_submission_id(form_type: str) -> str:
    """Generate a submission ID like RFQ-3F9A0C12B7DE."""
    prefix = "".join(ch for ch in (form_type or "FORM").upper() if ch.isalnum()) or "FORM"
    return f"{prefix}-{uuid.uuid4().hex[:12].upper()}"


class DistributionOutcome(BaseModel):
    """Result of one channel for one pipeline run. Immutable once created."""
    channel: str
    status: OutcomeStatus
    detail: Optional[str] = None
    completed_at: Optional[datetime] = None
    stage: Optional[str] = None

    model_config = {"frozen": True, "extra": "ignore"}

    @classmethod
    def pending(cls, channel: str) -> "DistributionOutcome":
        return cls(channel=channel, status=OutcomeStatus.PENDING)

    @classmethod
    def succeeded(cls, channel: str, detail: Optional[str] = None) -> "DistributionOutcome":
        return cls(
            channel=channel,
            status=OutcomeStatus.SUCCEEDED,
            detail=detail,
            completed_at=datetime.now(timezone.utc),
        )

    @classmethod
    def failed(cls, channel: str, detail: str, stage: Optional[str] = None) -> "DistributionOutcome":
        return cls(
            channel=channel,
            status=OutcomeStatus.FAILED,
            detail=detail,
            completed_at=datetime.now(timezone.utc),
            stage=stage,
        )


class ChannelConfig(BaseModel):
    """Per-run distribution settings, derived from the submission's field data."""
    channels: List[ChannelType] = Field(default_factory=lambda: list(ALL_CHANNELS))
    client_email: Optional[str] = None
    cc_emails: List[str] = Field(default_factory=list)
    client_name: Optional[str] = None
    rep_name: Optional[str] = None
    email_subject: Optional[str] = None

    @property
    def recipients(self) -> List[str]:
        """CC list first, then the client, blanks and duplicates removed."""
        seen = []
        for address in [*self.cc_emails, self.client_email]:
            address = (address or "").strip()
            if address and address not in seen:
                seen.append(address)
        return seen


class Submission(BaseModel):
    """A persisted form submission, owned by the submission service."""
    submission_id: str
    form_type: str
    title: str
    field_data: Dict[str, Any] = Field(default_factory=dict)
    field_schema_snapshot: List[Dict[str, Any]] = Field(default_factory=list)
    status: SubmissionStatus = SubmissionStatus.SUBMITTED
    distribution_status: Dict[str, DistributionOutcome] = Field(default_factory=dict)

    template_id: Optional[str] = None
    is_repeated_submission: bool = False
    original_submission_id: Optional[str] = None

    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: Optional[datetime] = None

    model_config = {"extra": "ignore"}

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")

    @classmethod
    def from_payload(cls, data: Dict[str, Any], item_id: Optional[str] = None) -> "Submission":
        """Load a stored submission, including records written by the legacy store.

        `item_id` is the record's key in the store; when given it is the
        submission id, so migrated records without an id field stay addressable.
        """
        data = dict(data)
        legacy_fields = {
            "submission_id": ("submissionId", "id"),
            "form_type": ("formType",),
            "title": ("formTitle",),
            "field_data": ("formData", "fieldData"),
            "field_schema_snapshot": ("formStructure", "fieldSchemaSnapshot"),
            "distribution_status": ("distributionStatus",),
            "is_repeated_submission": ("isRepeatedSubmission",),
            "original_submission_id": ("originalSubmissionId",),
            "created_at": ("submittedAt", "createdAt"),
            "updated_at": ("updatedAt",),
        }
        for field, aliases in legacy_fields.items():
            if data.get(field) is not None:
                continue
            for alias in aliases:
                if data.get(alias) is not None:
                    data[field] = data[alias]
                    break

        if item_id:
            data["submission_id"] = item_id
        data["form_type"] = data.get("form_type") or "unknown"
        data["title"] = data.get("title") or data["form_type"]
        if not isinstance(data.get("field_data"), dict):
            data["field_data"] = {}
        if not isinstance(data.get("field_schema_snapshot"), list):
            data["field_schema_snapshot"] = []
        if not isinstance(data.get("distribution_status"), dict):
            data["distribution_status"] = {}
        data["distribution_status"] = {
            key: {"channel": key, **value}
            for key, value in data["distribution_status"].items()
            if isinstance(value, dict) and value.get("status") in {s.value for s in OutcomeStatus}
        }
        if data.get("status") not in {s.value for s in SubmissionStatus}:
            data["status"] = SubmissionStatus.SUBMITTED
        return cls(**data)


class SubmissionCreate(BaseModel):
    """Submission intake from a UI collaborator."""
    form_type: str
    title: str
    field_data: Dict[str, Any] = Field(default_factory=dict)
    field_schema_snapshot: List[Dict[str, Any]] = Field(default_factory=list)
    channels: Optional[List[ChannelType]] = None
    cc_emails: List[str] = Field(default_factory=list)

