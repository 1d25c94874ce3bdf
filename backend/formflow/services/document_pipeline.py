"""
Document Conversion Pipeline

FLOW:
Template → validate container → normalize to marked-up text →
interpolate field data → render artifact

Each stage can fail on its own. The pipeline stops at the first failure and
raises a ConversionError naming that stage; later stages never run.
"""
import asyncio
import io
import logging
import re
from typing import Optional

from bs4 import BeautifulSoup
from docx import Document
from docx.oxml.ns import qn
from docx.table import Table
from docx.text.paragraph import Paragraph

from formflow.errors import ContainerValidationError, ConversionError
from formflow.models.submissions import Submission
from formflow.models.templates import DocumentKind, Template
from formflow.services.interpolation import CELL_SEPARATOR, interpolate_submission
from formflow.services.placeholders import repair_placeholder_formatting
from formflow.services.renderers import (
    HEADING_PREFIX,
    DocumentRenderer,
    RenderedArtifact,
    create_renderer,
)

logger = logging.getLogger(__name__)

# Word documents are ZIP containers
DOCX_SIGNATURE = b"PK\x03\x04"

HTML_BLOCK_TAGS = ["h1", "h2", "h3", "h4", "h5", "h6", "p", "li", "tr"]
HTML_HEADING_TAGS = {"h1", "h2", "h3", "h4", "h5", "h6"}

_MARKDOWN_HEADING = re.compile(r"^#{1,6}\s+")
_MARKDOWN_TABLE_RULE = re.compile(r"^\|?\s*:?-{3,}:?\s*(\|\s*:?-{3,}:?\s*)*\|?$")


# ============================================================================
# Stage 1: container validation
# ============================================================================

def has_container_signature(data: Optional[bytes]) -> bool:
    return bool(data) and data[:len(DOCX_SIGNATURE)] == DOCX_SIGNATURE


def validate_container(data: bytes) -> None:
    if not has_container_signature(data):
        raise ContainerValidationError()


# ============================================================================
# Stage 2: normalization to intermediate text
# ============================================================================

def _clean(text: str) -> str:
    return " ".join(text.split())


def docx_to_text(data: bytes) -> str:
    """Body paragraphs and tables in document order, as light markup."""
    document = Document(io.BytesIO(data))
    lines = []

    for child in document.element.body.iterchildren():
        if child.tag == qn("w:p"):
            paragraph = Paragraph(child, document)
            text = paragraph.text.strip()
            style_name = paragraph.style.name if paragraph.style is not None else ""
            if text and (style_name.startswith("Heading") or style_name == "Title"):
                lines.append(f"{HEADING_PREFIX}{text}")
            else:
                lines.append(text)
        elif child.tag == qn("w:tbl"):
            table = Table(child, document)
            for row in table.rows:
                cells = []
                previous = None
                for cell in row.cells:
                    # Merged cells repeat; keep one
                    if previous is not None and cell._tc is previous:
                        continue
                    previous = cell._tc
                    cells.append(_clean(cell.text))
                lines.append(CELL_SEPARATOR.join(cells))
            lines.append("")

    return "\n".join(lines)


def html_to_text(markup: str) -> str:
    soup = BeautifulSoup(markup, "html.parser")
    for tag in soup(["script", "style", "head"]):
        tag.decompose()

    lines = []
    for element in soup.find_all(HTML_BLOCK_TAGS):
        if element.find_parent(HTML_BLOCK_TAGS) is not None:
            continue
        if element.name == "tr":
            cells = [_clean(cell.get_text("")) for cell in element.find_all(["td", "th"])]
            lines.append(CELL_SEPARATOR.join(cells))
        elif element.name in HTML_HEADING_TAGS:
            lines.append(f"{HEADING_PREFIX}{_clean(element.get_text(''))}")
        else:
            for br in element.find_all("br"):
                br.replace_with("\n")
            lines.extend(_clean(part) for part in element.get_text("").split("\n"))
        lines.append("")

    if not any(lines):
        return soup.get_text("\n").strip()
    return "\n".join(lines).strip()


def markdown_to_text(source: str) -> str:
    lines = []
    for line in source.splitlines():
        stripped = line.strip()
        if _MARKDOWN_HEADING.match(stripped):
            lines.append(HEADING_PREFIX + _MARKDOWN_HEADING.sub("", stripped))
        elif _MARKDOWN_TABLE_RULE.match(stripped):
            continue
        elif stripped.startswith("|") and stripped.endswith("|") and len(stripped) > 1:
            cells = [cell.strip() for cell in stripped[1:-1].split("|")]
            lines.append(CELL_SEPARATOR.join(cells))
        else:
            lines.append(line)
    return "\n".join(lines)


def normalize_template(template: Template) -> str:
    """Intermediate text for a template, placeholders repaired."""
    if template.has_binary:
        text = docx_to_text(template.binary_payload)
    elif template.document_kind == DocumentKind.HTML:
        text = html_to_text(template.body or "")
    elif template.document_kind == DocumentKind.MARKDOWN:
        text = markdown_to_text(template.body or "")
    else:
        text = template.body or ""
    return repair_placeholder_formatting(text)


# ============================================================================
# Pipeline
# ============================================================================

class DocumentPipeline:
    """Converts a template plus a submission into a RenderedArtifact."""

    def __init__(self, renderer: Optional[DocumentRenderer] = None):
        self._renderer = renderer

    @property
    def renderer(self) -> DocumentRenderer:
        if self._renderer is None:
            self._renderer = create_renderer()
        return self._renderer

    async def convert(self, template: Template, submission: Submission) -> RenderedArtifact:
        submission_id = submission.submission_id

        # Stage 1: binary templates must be real document containers
        if template.has_binary:
            validate_container(template.binary_payload)

        # Stage 2
        try:
            loop = asyncio.get_event_loop()
            text = await loop.run_in_executor(None, lambda: normalize_template(template))
        except Exception as e:
            logger.error(f"Normalize failed for {submission_id} ({template.template_id}): {e}")
            raise ConversionError("normalize", str(e)) from e

        # Stage 3
        try:
            resolved = interpolate_submission(text, submission)
        except Exception as e:
            logger.error(f"Interpolation failed for {submission_id}: {e}")
            raise ConversionError("interpolate", str(e)) from e

        # Stage 4
        try:
            artifact = await self.renderer.render(resolved, submission)
        except Exception as e:
            logger.error(f"Render failed for {submission_id}: {e}")
            raise ConversionError("render", str(e)) from e

        logger.info(
            f"Converted {submission_id} with template {template.template_id}: "
            f"{artifact.filename} ({artifact.size_bytes} bytes)"
        )
        return artifact


# Singleton instance
document_pipeline = DocumentPipeline()
