"""
Pytest configuration and shared fixtures for backend tests.
"""
import asyncio
import os
import sys
import tempfile
from pathlib import Path

BACKEND_DIR = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(BACKEND_DIR))

# In-process backends only: no MongoDB, no Postmark, artifacts under a temp dir.
os.environ["KV_BACKEND"] = "memory"
os.environ["LEGACY_BACKEND"] = "memory"
os.environ["OBJECT_STORAGE_BACKEND"] = "memory"
os.environ["DOCUMENT_RENDERER"] = "pdf"
os.environ["POSTMARK_SERVER_TOKEN"] = ""
os.environ["DISTRIBUTION_CC_EMAILS"] = ""
os.environ["DOCUMENT_STORAGE_PATH"] = tempfile.mkdtemp(prefix="formflow-tests-")

import pytest
from fastapi.testclient import TestClient

from formflow.models.submissions import Submission
from formflow.services.kv_store import InMemoryKeyValueStore, key_value_store
from formflow.services.template_repository import TemplateRepository, template_repository


@pytest.fixture
def store():
    """A fresh in-memory key-value store."""
    return InMemoryKeyValueStore()


@pytest.fixture
def repository(store):
    return TemplateRepository(store)


@pytest.fixture
def submission():
    return Submission(
        submission_id="RFQ-0123456789AB",
        form_type="rfq",
        title="Request for Quote",
        field_data={"clientName": "Acme Ltd", "clientEmail": "buyer@acme.test"},
    )


def build_docx(*paragraphs, heading=None, table=None) -> bytes:
    """Small .docx built with python-docx."""
    import io
    from docx import Document

    document = Document()
    if heading:
        document.add_heading(heading, level=1)
    for text in paragraphs:
        document.add_paragraph(text)
    if table:
        grid = document.add_table(rows=len(table), cols=len(table[0]))
        for r, row in enumerate(table):
            for c, value in enumerate(row):
                grid.cell(r, c).text = value
    buffer = io.BytesIO()
    document.save(buffer)
    return buffer.getvalue()


@pytest.fixture
def docx_factory():
    return build_docx


@pytest.fixture
def client():
    """TestClient for server:app with lifespan; shared stores are emptied afterwards."""
    from server import app
    with TestClient(app) as test_client:
        yield test_client
    asyncio.run(key_value_store.clear_all())
    template_repository.invalidate_cache()
