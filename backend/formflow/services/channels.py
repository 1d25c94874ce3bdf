"""
Channel Capabilities - the external collaborators distribution talks to.

- EmailSender: recipients + subject + body + attachment (Postmark)
- CloudUploader: bytes + metadata -> location reference (object storage)
- FileSaver: bytes + relative path -> saved path (local filesystem)
- DownloadRegistry: keeps recent artifacts retrievable by token
"""
import asyncio
import base64
import logging
import os
import secrets
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

from postmarker.core import PostmarkClient

from formflow.services.object_storage import StorageAdapter, storage_adapter
from formflow.services.renderers import RenderedArtifact

logger = logging.getLogger(__name__)

# Email sender configuration
DEFAULT_SENDER = os.getenv("EMAIL_SENDER", "forms@formflow.local")

DATA_DIR = os.getenv("DATA_DIR", "/tmp")
DOCUMENT_STORAGE_PATH = Path(
    os.environ.get("DOCUMENT_STORAGE_PATH", str(Path(DATA_DIR) / "data" / "submissions"))
)

DOWNLOAD_REGISTRY_SIZE = int(os.getenv("DOWNLOAD_REGISTRY_SIZE", "200"))


@dataclass
class EmailAttachment:
    name: str
    content: bytes
    content_type: str


# ============================================================================
# Email
# ============================================================================

class EmailSender(ABC):
    @abstractmethod
    async def send(
        self,
        recipients: List[str],
        subject: str,
        body: str,
        attachment: Optional[EmailAttachment] = None,
    ) -> str:
        """Send one message. Returns a provider message reference."""
        pass


class PostmarkEmailSender(EmailSender):
    """Postmark delivery. Without a server token, emails are logged and reported as sent."""

    def __init__(self, server_token: Optional[str] = None, sender: str = DEFAULT_SENDER):
        server_token = server_token if server_token is not None else os.getenv("POSTMARK_SERVER_TOKEN")
        self.sender = sender
        if not server_token:
            logger.warning("POSTMARK_SERVER_TOKEN not set - emails will be logged but not sent")
            self.client = None
        else:
            self.client = PostmarkClient(server_token=server_token)
            logger.info("Postmark email client initialized")

    async def send(
        self,
        recipients: List[str],
        subject: str,
        body: str,
        attachment: Optional[EmailAttachment] = None,
    ) -> str:
        if self.client is None:
            # Dev mode - just log
            logger.info(f"[DEV MODE] Email logged (not sent) to {', '.join(recipients)}: {subject}")
            return "dev-mode"

        message: Dict[str, Any] = {
            "From": self.sender,
            "To": ", ".join(recipients),
            "Subject": subject,
            "TextBody": body,
            "Tag": "form-submission",
        }
        if attachment is not None:
            message["Attachments"] = [{
                "Name": attachment.name,
                "Content": base64.b64encode(attachment.content).decode("ascii"),
                "ContentType": attachment.content_type,
            }]

        loop = asyncio.get_event_loop()
        response = await loop.run_in_executor(None, lambda: self.client.emails.send(**message))
        logger.info(f"Submission email sent to {', '.join(recipients)}: {response['MessageID']}")
        return response["MessageID"]


# ============================================================================
# Cloud upload
# ============================================================================

class CloudUploader:
    """Uploads artifacts through an object storage adapter."""

    def __init__(self, adapter: Optional[StorageAdapter] = None):
        self.adapter = adapter if adapter is not None else storage_adapter

    async def upload(
        self,
        content: bytes,
        name: str,
        content_type: str,
        metadata: Dict[str, Any],
    ) -> str:
        stored = await self.adapter.upload(content, name, content_type, metadata)
        return stored.location


# ============================================================================
# Server save
# ============================================================================

class FileSaver(ABC):
    @abstractmethod
    async def save(self, content: bytes, relative_path: str) -> str:
        """Write bytes under the save root. Returns the saved path."""
        pass


class LocalFileSaver(FileSaver):
    def __init__(self, base_path: Optional[Path] = None):
        self.base_path = Path(base_path) if base_path is not None else DOCUMENT_STORAGE_PATH

    def _write(self, content: bytes, relative_path: str) -> str:
        base = self.base_path.resolve()
        target = (base / relative_path).resolve()
        if base not in target.parents:
            raise ValueError(f"Refusing to write outside {base}: {relative_path}")
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(content)
        return str(target)

    async def save(self, content: bytes, relative_path: str) -> str:
        loop = asyncio.get_event_loop()
        path = await loop.run_in_executor(None, lambda: self._write(content, relative_path))
        logger.info(f"Artifact saved to {path}")
        return path


# ============================================================================
# Download
# ============================================================================

class DownloadRegistry:
    """Bounded token -> artifact map; the oldest entries fall out first."""

    def __init__(self, max_entries: int = DOWNLOAD_REGISTRY_SIZE):
        self.max_entries = max(1, max_entries)
        self._entries: "OrderedDict[str, RenderedArtifact]" = OrderedDict()

    def register(self, artifact: RenderedArtifact) -> str:
        token = secrets.token_urlsafe(16)
        self._entries[token] = artifact
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)
        return token

    def get(self, token: str) -> Optional[RenderedArtifact]:
        return self._entries.get(token)

    def __len__(self) -> int:
        return len(self._entries)


# Singleton instances
email_sender = PostmarkEmailSender()
cloud_uploader = CloudUploader()
file_saver = LocalFileSaver()
download_registry = DownloadRegistry()
