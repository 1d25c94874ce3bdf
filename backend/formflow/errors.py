"""
FormFlow Exceptions

Error taxonomy for the generation and distribution pipeline.

- ValidationError: malformed template or submission input, rejected before persistence
- ConversionError: a conversion pipeline stage failed; distribution is aborted
- ChannelError: one distribution channel failed; captured, never escalated
- PersistenceError: storage I/O failure, carries collection + operation
- MigrationError: legacy migration failure; the legacy blob is kept
"""
from typing import Any, List, Optional


class FormFlowError(Exception):
    """Base exception for all FormFlow errors."""
    pass


class ValidationError(FormFlowError):
    """Raised when template or submission input is malformed."""
    def __init__(self, message: str, field: Optional[str] = None):
        self.field = field
        self.message = message
        super().__init__(message)


class NotFoundError(FormFlowError):
    """Raised when a template or submission does not exist."""
    def __init__(self, resource: str, resource_id: str):
        self.resource = resource
        self.resource_id = resource_id
        super().__init__(f"{resource} not found: {resource_id}")


class ConversionError(FormFlowError):
    """
    Raised when a document conversion stage fails.

    The pipeline stops at the first failing stage; `stage` names it.
    """
    def __init__(self, stage: str, message: str):
        self.stage = stage
        self.message = message
        super().__init__(message)

    def __str__(self) -> str:
        return f"[{self.stage}] {self.message}"


class ContainerValidationError(ConversionError, ValidationError):
    """Template binary does not carry the expected container signature."""
    def __init__(self, message: str = "not a supported document container"):
        super().__init__("validate", message)


class ChannelError(FormFlowError):
    """Raised inside a distribution channel handler."""
    def __init__(self, channel: str, message: str):
        self.channel = channel
        self.message = message
        super().__init__(message)


class PersistenceError(FormFlowError):
    """Raised when the underlying storage fails. Never retried."""
    def __init__(self, collection: str, operation: str, message: str):
        self.collection = collection
        self.operation = operation
        self.message = message
        super().__init__(f"{operation} on '{collection}' failed: {message}")


class BatchPersistenceError(PersistenceError):
    """Raised by save_all when some items could not be written."""
    def __init__(
        self,
        collection: str,
        failed_ids: List[str],
        saved: Optional[List[Any]] = None,
        message: str = "",
    ):
        self.failed_ids = failed_ids
        self.saved = saved or []
        super().__init__(
            collection,
            "saveAll",
            message or f"{len(failed_ids)} item(s) failed: {', '.join(failed_ids)}",
        )


class MigrationError(FormFlowError):
    """Raised when a legacy blob cannot be migrated."""
    def __init__(self, legacy_key: str, message: str):
        self.legacy_key = legacy_key
        self.message = message
        super().__init__(f"Migration of '{legacy_key}' failed: {message}")
