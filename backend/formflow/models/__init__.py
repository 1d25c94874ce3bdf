"""FormFlow Data Models"""

from .storage import (
    StorageItem,
    SUBMISSIONS,
    TEMPLATES,
    DOCUMENT_TEMPLATES,
    KNOWN_COLLECTIONS,
)
from .templates import (
    Template,
    TemplateMetadata,
    TemplateMetadataUpdate,
    CloneTemplateRequest,
    DocumentKind,
    PlaceholderValidation,
    UNIVERSAL_FORM_TYPE,
    generate_template_id,
)
from .submissions import (
    Submission,
    SubmissionCreate,
    SubmissionStatus,
    ChannelType,
    ChannelConfig,
    OutcomeStatus,
    DistributionOutcome,
    ALL_CHANNELS,
    CONVERSION_KEY,
    generate_submission_id,
)

__all__ = [
    "StorageItem",
    "SUBMISSIONS",
    "TEMPLATES",
    "DOCUMENT_TEMPLATES",
    "KNOWN_COLLECTIONS",
    "Template",
    "TemplateMetadata",
    "TemplateMetadataUpdate",
    "CloneTemplateRequest",
    "DocumentKind",
    "PlaceholderValidation",
    "UNIVERSAL_FORM_TYPE",
    "generate_template_id",
    "Submission",
    "SubmissionCreate",
    "SubmissionStatus",
    "ChannelType",
    "ChannelConfig",
    "OutcomeStatus",
    "DistributionOutcome",
    "ALL_CHANNELS",
    "CONVERSION_KEY",
    "generate_submission_id",
]
