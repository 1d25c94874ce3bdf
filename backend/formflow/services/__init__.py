"""FormFlow Services"""

from .sanitizer import sanitize
from .kv_store import KeyValueStore, key_value_store, create_key_value_store
from .legacy_migration import LegacyMigration, legacy_migration
from .template_repository import TemplateRepository, template_repository
from .interpolation import interpolate, interpolate_submission
from .document_pipeline import DocumentPipeline, document_pipeline
from .distribution import DistributionOrchestrator, distribution_orchestrator
from .submission_service import SubmissionService, submission_service

__all__ = [
    "sanitize",
    "KeyValueStore",
    "key_value_store",
    "create_key_value_store",
    "LegacyMigration",
    "legacy_migration",
    "TemplateRepository",
    "template_repository",
    "interpolate",
    "interpolate_submission",
    "DocumentPipeline",
    "document_pipeline",
    "DistributionOrchestrator",
    "distribution_orchestrator",
    "SubmissionService",
    "submission_service",
]
