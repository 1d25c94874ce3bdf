"""FormFlow Submission Service

Orchestration root. A submission is validated, sanitized and persisted before
anything else happens; conversion and distribution then run as a background
task while the persisted submission is returned to the caller.

Status: submitted on creation; completed only through complete_submission.
Distribution never completes a submission by itself. Draft is reserved.

distribution_status is merged one channel at a time as outcomes arrive,
each merge a read-modify-write serialized per submission id.
"""

import asyncio
import logging
import os
import re
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

from formflow.errors import ConversionError, FormFlowError, NotFoundError, ValidationError
from formflow.models.storage import SUBMISSIONS
from formflow.models.submissions import (
    ALL_CHANNELS,
    CONVERSION_KEY,
    ChannelConfig,
    ChannelType,
    DistributionOutcome,
    Submission,
    SubmissionStatus,
    generate_submission_id,
)
from formflow.services.distribution import DistributionOrchestrator, distribution_orchestrator
from formflow.services.document_pipeline import DocumentPipeline, document_pipeline
from formflow.services.interpolation import format_value
from formflow.services.kv_store import KeyValueStore, key_value_store
from formflow.services.sanitizer import sanitize
from formflow.services.template_repository import TemplateRepository, template_repository

logger = logging.getLogger(__name__)

DEFAULT_CC_EMAILS = [
    address.strip()
    for address in os.getenv("DISTRIBUTION_CC_EMAILS", "").split(",")
    if address.strip()
]


def _text(value: Any) -> Optional[str]:
    text = format_value(value).strip()
    return text or None


def _addresses(value: Any) -> List[str]:
    """Email addresses from a comma/semicolon separated string or a list."""
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return [a for item in value for a in _addresses(item)]
    return [part.strip() for part in re.split(r"[,;]", str(value)) if part.strip()]


class SubmissionService:
    """Submission lifecycle and the conversion/distribution run behind it."""

    def __init__(
        self,
        store: Optional[KeyValueStore] = None,
        templates: Optional[TemplateRepository] = None,
        pipeline: Optional[DocumentPipeline] = None,
        orchestrator: Optional[DistributionOrchestrator] = None,
    ):
        self.store = store if store is not None else key_value_store
        self.templates = templates if templates is not None else template_repository
        self.pipeline = pipeline if pipeline is not None else document_pipeline
        self.orchestrator = orchestrator if orchestrator is not None else distribution_orchestrator
        self._runs: Dict[str, asyncio.Task] = {}
        # submission id -> (lock, number of holders and waiters)
        self._locks: Dict[str, Tuple[asyncio.Lock, int]] = {}

    # =========================================================================
    # CREATE
    # =========================================================================

    async def create_submission(
        self,
        form_type: str,
        title: str,
        field_data: Dict[str, Any],
        field_schema_snapshot: Optional[List[Dict[str, Any]]] = None,
        channels: Optional[List[ChannelType]] = None,
        cc_emails: Optional[List[str]] = None,
        is_repeated_submission: bool = False,
        original_submission_id: Optional[str] = None,
    ) -> Submission:
        """
        Persist a new submission and start its pipeline run.

        ValidationError / PersistenceError propagate; in that case the
        submission does not exist. Distribution outcomes arrive later and are
        visible by re-reading the submission.
        """
        if not isinstance(form_type, str) or not form_type.strip():
            raise ValidationError("form_type is required", field="form_type")
        if not isinstance(title, str) or not title.strip():
            raise ValidationError("title is required", field="title")
        if not isinstance(field_data, dict):
            raise ValidationError("field_data must be a mapping", field="field_data")
        if field_schema_snapshot is not None and not isinstance(field_schema_snapshot, list):
            raise ValidationError("field_schema_snapshot must be a list", field="field_schema_snapshot")

        form_type = form_type.strip()
        submission = Submission(
            submission_id=generate_submission_id(form_type),
            form_type=form_type,
            title=title.strip(),
            field_data=sanitize(field_data),
            field_schema_snapshot=sanitize(field_schema_snapshot or []),
            status=SubmissionStatus.SUBMITTED,
            distribution_status={},
            is_repeated_submission=is_repeated_submission,
            original_submission_id=original_submission_id,
        )

        await self._save(submission)
        logger.info(f"Submission persisted: {submission.submission_id} ({form_type})")

        config = self.channel_config(submission, channels, cc_emails)
        self._start_run(submission, config)
        return submission

    def channel_config(
        self,
        submission: Submission,
        channels: Optional[List[ChannelType]] = None,
        cc_emails: Optional[List[str]] = None,
    ) -> ChannelConfig:
        """Distribution settings from the submission's field data."""
        data = submission.field_data or {}
        return ChannelConfig(
            channels=list(channels) if channels else list(ALL_CHANNELS),
            client_email=_text(data.get("clientEmail")),
            cc_emails=[*DEFAULT_CC_EMAILS, *_addresses(data.get("ccMail")), *_addresses(cc_emails)],
            client_name=_text(data.get("clientName")),
            rep_name=_text(data.get("repName")),
        )

    # =========================================================================
    # PIPELINE RUN
    # =========================================================================

    def _start_run(self, submission: Submission, config: ChannelConfig) -> None:
        submission_id = submission.submission_id
        task = asyncio.create_task(self._run(submission, config))
        self._runs[submission_id] = task

        def _finished(t: asyncio.Task) -> None:
            if self._runs.get(submission_id) is t:
                del self._runs[submission_id]

        task.add_done_callback(_finished)

    async def _run(self, submission: Submission, config: ChannelConfig) -> None:
        submission_id = submission.submission_id
        try:
            template = await self.templates.select_for(submission.form_type)
            if template is None:
                logger.info(
                    f"No template applies to '{submission.form_type}'; "
                    f"distribution skipped for {submission_id}"
                )
                return

            await self._update(submission_id, template_id=template.template_id)
            if template.has_binary:
                await self.templates.record_usage(template.template_id)

            try:
                artifact = await self.pipeline.convert(template, submission)
            except ConversionError as e:
                logger.error(f"Conversion failed for {submission_id}: {e}")
                await self._merge_outcome(
                    submission_id,
                    DistributionOutcome.failed(CONVERSION_KEY, e.message, stage=e.stage),
                )
                return

            for channel in dict.fromkeys(config.channels):
                await self._merge_outcome(submission_id, DistributionOutcome.pending(ChannelType(channel).value))

            async def record(outcome: DistributionOutcome) -> None:
                await self._merge_outcome(submission_id, outcome)

            await self.orchestrator.distribute(artifact, submission, config, on_outcome=record)
        except FormFlowError as e:
            logger.error(f"Pipeline run for {submission_id} stopped: {e}")
        except Exception as e:
            logger.error(f"Pipeline run for {submission_id} failed unexpectedly: {e!r}")

    @asynccontextmanager
    async def _locked(self, submission_id: str) -> AsyncIterator[None]:
        """Serialize read-modify-writes of one submission.

        The lock is dropped once nobody holds or waits for it.
        """
        lock, users = self._locks.get(submission_id, (None, 0))
        if lock is None:
            lock = asyncio.Lock()
        self._locks[submission_id] = (lock, users + 1)
        try:
            async with lock:
                yield
        finally:
            lock, users = self._locks[submission_id]
            if users == 1:
                del self._locks[submission_id]
            else:
                self._locks[submission_id] = (lock, users - 1)

    async def _save(self, submission: Submission) -> None:
        submission.updated_at = datetime.now(timezone.utc)
        await self.store.save(SUBMISSIONS, submission.submission_id, submission.to_payload())

    async def _load(self, submission_id: str) -> Optional[Submission]:
        item = await self.store.get_by_id(SUBMISSIONS, submission_id)
        return Submission.from_payload(item.payload, item.id) if item else None

    async def _merge_outcome(self, submission_id: str, outcome: DistributionOutcome) -> None:
        """Read-modify-write of one distribution_status key."""
        async with self._locked(submission_id):
            submission = await self._load(submission_id)
            if submission is None:
                logger.warning(f"Submission {submission_id} is gone; {outcome.channel} outcome dropped")
                return
            submission.distribution_status[outcome.channel] = outcome
            await self._save(submission)

    async def _update(self, submission_id: str, **changes: Any) -> Optional[Submission]:
        async with self._locked(submission_id):
            submission = await self._load(submission_id)
            if submission is None:
                return None
            for key, value in changes.items():
                setattr(submission, key, value)
            await self._save(submission)
            return submission

    async def wait_for_distribution(
        self, submission_id: str, timeout: Optional[float] = None
    ) -> Submission:
        """Wait for the submission's pipeline run to finish, then re-read it."""
        task = self._runs.get(submission_id)
        if task is not None and task.get_loop() is asyncio.get_running_loop():
            await asyncio.wait([task], timeout=timeout)
        return await self.get_submission(submission_id)

    async def drain(self) -> None:
        """Wait for every in-flight pipeline run on this event loop."""
        loop = asyncio.get_running_loop()
        tasks = [t for t in self._runs.values() if t.get_loop() is loop]
        if tasks:
            logger.info(f"Draining {len(tasks)} in-flight pipeline run(s)")
            await asyncio.gather(*tasks, return_exceptions=True)

    # =========================================================================
    # QUERIES & ADMINISTRATION
    # =========================================================================

    async def get_submission(self, submission_id: str) -> Submission:
        submission = await self._load(submission_id)
        if submission is None:
            raise NotFoundError("Submission", submission_id)
        return submission

    async def list_submissions(
        self,
        form_type: Optional[str] = None,
        status: Optional[SubmissionStatus] = None,
    ) -> List[Submission]:
        """Newest first."""
        submissions = []
        for item in await self.store.get_all(SUBMISSIONS):
            try:
                submissions.append(Submission.from_payload(item.payload, item.id))
            except Exception as e:
                logger.warning(f"Skipping unreadable submission {item.id}: {e}")

        if form_type:
            submissions = [s for s in submissions if s.form_type == form_type]
        if status:
            submissions = [s for s in submissions if s.status == status]
        submissions.sort(key=lambda s: s.created_at, reverse=True)
        return submissions

    async def delete_submission(self, submission_id: str) -> bool:
        removed = await self.store.delete(SUBMISSIONS, submission_id)
        if removed:
            logger.info(f"Submission deleted: {submission_id}")
        return removed

    async def complete_submission(self, submission_id: str) -> Submission:
        """Administrative transition submitted -> completed."""
        async with self._locked(submission_id):
            submission = await self.get_submission(submission_id)
            if submission.status != SubmissionStatus.SUBMITTED:
                raise ValidationError(
                    f"Only submitted submissions can be completed (status: {submission.status.value})",
                    field="status",
                )
            submission.status = SubmissionStatus.COMPLETED
            submission.completed_at = datetime.now(timezone.utc)
            await self._save(submission)
        logger.info(f"Submission completed: {submission_id}")
        return submission

    async def repeat_submission(
        self,
        submission_id: str,
        channels: Optional[List[ChannelType]] = None,
    ) -> Submission:
        """New submission from a previous one's field data and schema snapshot."""
        original = await self.get_submission(submission_id)
        return await self.create_submission(
            form_type=original.form_type,
            title=original.title,
            field_data=original.field_data,
            field_schema_snapshot=original.field_schema_snapshot,
            channels=channels,
            is_repeated_submission=True,
            original_submission_id=original.submission_id,
        )


# Singleton instance
submission_service = SubmissionService()
