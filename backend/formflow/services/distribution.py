"""
Distribution Orchestrator - fans one artifact out to independent channels.

Every configured channel is dispatched as its own task before any is awaited.
The join waits for all of them to settle (settle-all, never fail-fast); a
channel's failure, exception or timeout becomes a failed outcome for that
channel alone. Nothing is retried.

Channels:
- download: registers the artifact and returns a retrieval URI
- email: sends the artifact to the client and CC list; no recipients = failed
- cloudUpload: uploads the artifact with submission metadata
- serverSave: writes the artifact under <year>/<month>/<submission id>/
"""
import asyncio
import logging
import os
from typing import Awaitable, Callable, Dict, Optional

from formflow.errors import ChannelError
from formflow.models.submissions import (
    ChannelConfig,
    ChannelType,
    DistributionOutcome,
    OutcomeStatus,
    Submission,
)
from formflow.services.channels import (
    CloudUploader,
    DownloadRegistry,
    EmailAttachment,
    EmailSender,
    FileSaver,
    cloud_uploader,
    download_registry,
    email_sender,
    file_saver,
)
from formflow.services.interpolation import format_date
from formflow.services.renderers import RenderedArtifact

logger = logging.getLogger(__name__)

CHANNEL_TIMEOUT_SECONDS = float(os.getenv("CHANNEL_TIMEOUT_SECONDS", "60"))
PUBLIC_API_URL = os.getenv("PUBLIC_API_URL", "http://localhost:8001").rstrip("/")

OutcomeCallback = Callable[[DistributionOutcome], Awaitable[None]]


def email_subject(submission: Submission, config: ChannelConfig) -> str:
    if config.email_subject:
        return config.email_subject
    if config.client_name:
        return f"{submission.title} Submission - {config.client_name}"
    return f"{submission.title} Submission"


def email_body(submission: Submission, artifact: RenderedArtifact, config: ChannelConfig) -> str:
    submitted = submission.created_at
    lines = [
        f"A new {submission.title} submission has been received.",
        "",
        f"Submission ID: {submission.submission_id}",
        f"Form type: {submission.form_type}",
    ]
    if config.client_name:
        lines.append(f"Client: {config.client_name}")
    if config.rep_name:
        lines.append(f"Representative: {config.rep_name}")
    lines.append(f"Submitted: {format_date(submitted)} {submitted.strftime('%H:%M')} UTC")
    lines.append("")
    if artifact.is_placeholder:
        lines.append("Document rendering is not configured; a placeholder document is attached.")
    else:
        lines.append(f"The generated document ({artifact.filename}) is attached.")
    return "\n".join(lines)


class DistributionOrchestrator:
    """Settle-all fan-out of an artifact to its channels."""

    def __init__(
        self,
        email: Optional[EmailSender] = None,
        uploader: Optional[CloudUploader] = None,
        saver: Optional[FileSaver] = None,
        downloads: Optional[DownloadRegistry] = None,
        timeout_seconds: Optional[float] = None,
        public_api_url: str = PUBLIC_API_URL,
    ):
        self.email = email if email is not None else email_sender
        self.uploader = uploader if uploader is not None else cloud_uploader
        self.saver = saver if saver is not None else file_saver
        self.downloads = downloads if downloads is not None else download_registry
        timeout = CHANNEL_TIMEOUT_SECONDS if timeout_seconds is None else timeout_seconds
        self.timeout_seconds = timeout if timeout > 0 else None
        self.public_api_url = public_api_url.rstrip("/")

        self._handlers = {
            ChannelType.DOWNLOAD: self._download,
            ChannelType.EMAIL: self._email,
            ChannelType.CLOUD_UPLOAD: self._cloud_upload,
            ChannelType.SERVER_SAVE: self._server_save,
        }

    async def distribute(
        self,
        artifact: RenderedArtifact,
        submission: Submission,
        config: ChannelConfig,
        on_outcome: Optional[OutcomeCallback] = None,
    ) -> Dict[str, DistributionOutcome]:
        """
        Run every configured channel concurrently and wait for all to settle.

        `on_outcome` is awaited as each channel settles, before the join returns.
        """
        channels = list(dict.fromkeys(ChannelType(c) for c in config.channels))
        tasks = [
            asyncio.create_task(self._run_channel(channel, artifact, submission, config, on_outcome))
            for channel in channels
        ]
        results = await asyncio.gather(*tasks, return_exceptions=True)

        outcomes: Dict[str, DistributionOutcome] = {}
        for channel, result in zip(channels, results):
            if isinstance(result, BaseException):
                logger.error(f"[{submission.submission_id}] {channel.value} task ended abnormally: {result!r}")
                result = DistributionOutcome.failed(channel.value, f"channel aborted: {result!r}")
            outcomes[channel.value] = result

        failed = [name for name, outcome in outcomes.items() if outcome.status == OutcomeStatus.FAILED]
        logger.info(
            f"[{submission.submission_id}] Distribution settled: "
            f"{len(outcomes) - len(failed)} succeeded, {len(failed)} failed"
            + (f" ({', '.join(failed)})" if failed else "")
        )
        return outcomes

    async def _run_channel(
        self,
        channel: ChannelType,
        artifact: RenderedArtifact,
        submission: Submission,
        config: ChannelConfig,
        on_outcome: Optional[OutcomeCallback],
    ) -> DistributionOutcome:
        handler = self._handlers[channel]
        try:
            detail = await asyncio.wait_for(
                handler(artifact, submission, config), timeout=self.timeout_seconds
            )
            outcome = DistributionOutcome.succeeded(channel.value, detail)
            logger.info(f"[{submission.submission_id}] {channel.value} succeeded: {detail}")
        except asyncio.TimeoutError:
            outcome = DistributionOutcome.failed(
                channel.value, f"timed out after {self.timeout_seconds:g}s"
            )
            logger.warning(f"[{submission.submission_id}] {channel.value} timed out")
        except ChannelError as e:
            outcome = DistributionOutcome.failed(channel.value, e.message)
            logger.warning(f"[{submission.submission_id}] {channel.value} failed: {e.message}")
        except Exception as e:
            outcome = DistributionOutcome.failed(channel.value, str(e) or type(e).__name__)
            logger.warning(f"[{submission.submission_id}] {channel.value} failed: {e!r}")

        if on_outcome is not None:
            try:
                await on_outcome(outcome)
            except Exception as e:
                logger.error(
                    f"[{submission.submission_id}] Recording {channel.value} outcome failed: {e}"
                )
        return outcome

    # ========================================================================
    # Channel handlers; each returns the success detail or raises
    # ========================================================================

    async def _download(
        self, artifact: RenderedArtifact, submission: Submission, config: ChannelConfig
    ) -> str:
        if not artifact.content:
            raise ChannelError(ChannelType.DOWNLOAD.value, "artifact is empty")
        token = self.downloads.register(artifact)
        return f"{self.public_api_url}/api/downloads/{token}"

    async def _email(
        self, artifact: RenderedArtifact, submission: Submission, config: ChannelConfig
    ) -> str:
        recipients = config.recipients
        if not recipients:
            raise ChannelError(ChannelType.EMAIL.value, "no recipients")

        attachment = None
        if artifact.content:
            attachment = EmailAttachment(artifact.filename, artifact.content, artifact.content_type)

        await self.email.send(
            recipients,
            email_subject(submission, config),
            email_body(submission, artifact, config),
            attachment,
        )
        return f"sent to {', '.join(recipients)}"

    async def _cloud_upload(
        self, artifact: RenderedArtifact, submission: Submission, config: ChannelConfig
    ) -> str:
        submitted = submission.created_at
        folder = f"{submission.form_type}-{submitted.year}-{submitted.month:02d}"
        metadata = {
            "submission_id": submission.submission_id,
            "client_name": config.client_name or "",
            "form_type": submission.form_type,
            "submission_date": submitted.isoformat(),
        }
        if config.rep_name:
            metadata["rep_name"] = config.rep_name

        return await self.uploader.upload(
            artifact.content, f"{folder}/{artifact.filename}", artifact.content_type, metadata
        )

    async def _server_save(
        self, artifact: RenderedArtifact, submission: Submission, config: ChannelConfig
    ) -> str:
        submitted = submission.created_at
        relative_path = (
            f"{submitted.year}/{submitted.month:02d}/{submission.submission_id}/{artifact.filename}"
        )
        return await self.saver.save(artifact.content, relative_path)


# Singleton instance
distribution_orchestrator = DistributionOrchestrator()
