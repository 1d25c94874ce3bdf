"""
Document Renderers - turn resolved template text into a deliverable artifact.

Resolved text uses a light markup:
- "# Heading" lines become section headings
- lines containing " | " are table rows; consecutive rows form one table
- blank lines separate paragraphs

PdfRenderer produces an A4 PDF with reportlab. PlaceholderRenderer produces a
clearly labelled text notice so channels keep working when no real renderer
is configured.
"""
import asyncio
import hashlib
import io
import logging
import os
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional
from xml.sax.saxutils import escape

from reportlab.lib import colors
from reportlab.lib.enums import TA_CENTER
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import mm
from reportlab.platypus import (
    HRFlowable, Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle,
)

from formflow.models.submissions import Submission
from formflow.services.interpolation import CELL_SEPARATOR, format_value

logger = logging.getLogger(__name__)

DOCUMENT_RENDERER = os.getenv("DOCUMENT_RENDERER", "pdf").lower()

HEADING_PREFIX = "# "


@dataclass
class RenderedArtifact:
    """The deliverable produced for one submission."""
    filename: str
    content_type: str
    content: bytes
    sha256_hash: str
    size_bytes: int
    is_placeholder: bool = False

    @classmethod
    def build(
        cls, filename: str, content_type: str, content: bytes, is_placeholder: bool = False
    ) -> "RenderedArtifact":
        return cls(
            filename=filename,
            content_type=content_type,
            content=content,
            sha256_hash=hashlib.sha256(content).hexdigest(),
            size_bytes=len(content),
            is_placeholder=is_placeholder,
        )


def artifact_filename(submission: Submission, extension: str) -> str:
    """<submissionId>-<Client-Name>.<ext>; submission ids already lead with the form type."""
    client = format_value((submission.field_data or {}).get("clientName"))
    client = re.sub(r"[^A-Za-z0-9]+", "-", client).strip("-")
    stem = re.sub(r"[^A-Za-z0-9_-]+", "-", submission.submission_id)
    return f"{stem}-{client}.{extension}" if client else f"{stem}.{extension}"


class DocumentRenderer(ABC):
    """Abstract base class for artifact renderers."""

    @abstractmethod
    async def render(self, text: str, submission: Submission) -> RenderedArtifact:
        pass


class PdfRenderer(DocumentRenderer):
    """A4 PDF: header line, resolved body, generated-at footer."""

    async def render(self, text: str, submission: Submission) -> RenderedArtifact:
        loop = asyncio.get_event_loop()
        content = await loop.run_in_executor(None, lambda: self._render_pdf(text, submission))
        return RenderedArtifact.build(
            artifact_filename(submission, "pdf"), "application/pdf", content
        )

    def _styles(self):
        styles = getSampleStyleSheet()
        styles.add(ParagraphStyle(
            name='FormTitle',
            parent=styles['Title'],
            fontSize=18,
            textColor=colors.HexColor('#0B1D3A'),
            spaceAfter=10,
        ))
        styles.add(ParagraphStyle(
            name='FormHeading',
            parent=styles['Heading2'],
            fontSize=13,
            textColor=colors.HexColor('#1F4E79'),
            spaceBefore=10,
            spaceAfter=6,
        ))
        styles.add(ParagraphStyle(
            name='FormBody',
            parent=styles['Normal'],
            fontSize=10,
            leading=14,
        ))
        styles.add(ParagraphStyle(
            name='Footer',
            parent=styles['Normal'],
            fontSize=8,
            textColor=colors.HexColor('#888888'),
            alignment=TA_CENTER,
        ))
        return styles

    def _render_pdf(self, text: str, submission: Submission) -> bytes:
        buffer = io.BytesIO()

        doc = SimpleDocTemplate(
            buffer,
            pagesize=A4,
            rightMargin=20*mm,
            leftMargin=20*mm,
            topMargin=20*mm,
            bottomMargin=20*mm,
            title=submission.title,
        )
        styles = self._styles()
        story = []

        # Header
        header_text = f"{escape(submission.title)} | Submission: {escape(submission.submission_id)}"
        story.append(Paragraph(header_text, styles['Normal']))
        story.append(HRFlowable(width="100%", thickness=1, color=colors.HexColor('#1F4E79')))
        story.append(Spacer(1, 10))
        story.append(Paragraph(escape(submission.title), styles['FormTitle']))

        self._add_body(story, styles, text)

        # Footer
        story.append(Spacer(1, 20))
        story.append(HRFlowable(width="100%", thickness=1, color=colors.HexColor('#CCCCCC')))
        generated = datetime.now(timezone.utc).strftime('%d/%m/%Y %H:%M UTC')
        story.append(Paragraph(f"Generated {generated} | {escape(submission.submission_id)}", styles['Footer']))

        doc.build(story)
        buffer.seek(0)
        return buffer.getvalue()

    def _add_body(self, story: List, styles, text: str) -> None:
        rows: List[List[str]] = []
        paragraph: List[str] = []

        def flush_paragraph():
            if paragraph:
                story.append(Paragraph("<br/>".join(escape(line) for line in paragraph), styles['FormBody']))
                story.append(Spacer(1, 6))
                paragraph.clear()

        def flush_table():
            if rows:
                width = max(len(row) for row in rows)
                data = [
                    [Paragraph(escape(cell), styles['FormBody']) for cell in row + [""] * (width - len(row))]
                    for row in rows
                ]
                table = Table(data, hAlign='LEFT')
                table.setStyle(TableStyle([
                    ('GRID', (0, 0), (-1, -1), 0.5, colors.HexColor('#CCCCCC')),
                    ('VALIGN', (0, 0), (-1, -1), 'TOP'),
                ]))
                story.append(table)
                story.append(Spacer(1, 6))
                rows.clear()

        for line in text.splitlines():
            stripped = line.strip()
            if stripped.startswith(HEADING_PREFIX):
                flush_paragraph()
                flush_table()
                story.append(Paragraph(escape(stripped[len(HEADING_PREFIX):]), styles['FormHeading']))
            elif CELL_SEPARATOR in line:
                # Tested unstripped so rows with an empty last cell still count
                flush_paragraph()
                rows.append([cell.strip() for cell in line.split(CELL_SEPARATOR)])
            elif not stripped:
                flush_paragraph()
                flush_table()
            else:
                flush_table()
                paragraph.append(stripped)

        flush_paragraph()
        flush_table()


class PlaceholderRenderer(DocumentRenderer):
    """Labelled plain-text stand-in for a rendered document."""

    NOTICE = (
        "PLACEHOLDER DOCUMENT\n"
        "High-fidelity rendering is not configured on this server.\n"
        "The resolved template content follows.\n"
    )

    async def render(self, text: str, submission: Submission) -> RenderedArtifact:
        logger.warning(f"Producing placeholder artifact for submission {submission.submission_id}")
        body = (
            f"{self.NOTICE}\n"
            f"Form: {submission.title}\n"
            f"Submission: {submission.submission_id}\n"
            f"{'-' * 40}\n"
            f"{text}\n"
        )
        return RenderedArtifact.build(
            artifact_filename(submission, "txt"),
            "text/plain; charset=utf-8",
            body.encode("utf-8"),
            is_placeholder=True,
        )


def create_renderer(kind: Optional[str] = None) -> DocumentRenderer:
    kind = (kind or DOCUMENT_RENDERER).lower()
    if kind == "placeholder":
        return PlaceholderRenderer()
    if kind == "pdf":
        return PdfRenderer()
    raise ValueError(f"Unknown DOCUMENT_RENDERER: {kind}")
