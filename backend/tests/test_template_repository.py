"""
Template repository tests: creation rules, selection, author tooling.
"""
import pytest

from formflow.errors import NotFoundError, ValidationError
from formflow.models.storage import DOCUMENT_TEMPLATES, TEMPLATES
from formflow.models.templates import DocumentKind, Template, TemplateMetadataUpdate
from formflow.services.template_repository import TemplateRepository

pytestmark = pytest.mark.asyncio


class TestCreate:

    async def test_text_template_placeholders_computed(self, repository, store):
        template = await repository.create(
            name="Quote letter",
            form_type="rfq",
            body="Dear {{ clientName }}, quote {{refNo}} for {{clientName}}.",
        )
        assert template.placeholders == ["clientName", "refNo"]
        assert template.body == "Dear {{clientName}}, quote {{refNo}} for {{clientName}}."
        assert template.template_id.startswith("TPL-")
        assert (await store.get_by_id(TEMPLATES, template.template_id)) is not None

    async def test_binary_template_goes_to_document_collection(
        self, repository, store, docx_factory
    ):
        content = docx_factory("Client: {{clientName}}", heading="Quote {{refNo}}")
        template = await repository.create(name="Quote", form_type="rfq", binary_payload=content)

        assert template.document_kind == DocumentKind.WORD
        assert template.placeholders == ["refNo", "clientName"]
        assert template.size_bytes == len(content)
        assert (await store.get_by_id(DOCUMENT_TEMPLATES, template.template_id)) is not None
        assert (await store.get_by_id(TEMPLATES, template.template_id)) is None

    async def test_needs_exactly_one_content(self, repository, docx_factory):
        with pytest.raises(ValidationError):
            await repository.create(name="Empty", form_type="rfq")
        with pytest.raises(ValidationError):
            await repository.create(
                name="Both", form_type="rfq", body="x", binary_payload=docx_factory("x")
            )
        with pytest.raises(ValidationError):
            await repository.create(name="Blank", form_type="rfq", body="   ")

    async def test_name_and_form_type_required(self, repository):
        with pytest.raises(ValidationError) as exc_info:
            await repository.create(name="", form_type="rfq", body="x")
        assert exc_info.value.field == "name"
        with pytest.raises(ValidationError) as exc_info:
            await repository.create(name="A", form_type=" ", body="x")
        assert exc_info.value.field == "form_type"

    async def test_universal_form_type_marks_template_universal(self, repository):
        template = await repository.create(name="Any", form_type="universal", body="x")
        assert template.is_universal is True

    async def test_unreadable_binary_stored_without_placeholders(self, repository):
        template = await repository.create(
            name="Broken", form_type="rfq", binary_payload=b"not a zip file"
        )
        assert template.placeholders == []


class TestUpload:

    async def test_text_upload(self, repository):
        template = await repository.upload(
            "welcome.txt", "Hello {{clientName}}".encode("utf-8"), form_type="onboarding"
        )
        assert template.name == "welcome"
        assert template.document_kind == DocumentKind.TEXT
        assert template.placeholders == ["clientName"]

    async def test_html_upload(self, repository):
        markup = b"<html><body><h1>Quote</h1><p>For {{clientName}}</p></body></html>"
        template = await repository.upload("quote.html", markup, form_type="rfq", name="HTML quote")
        assert template.name == "HTML quote"
        assert template.document_kind == DocumentKind.HTML
        assert template.placeholders == ["clientName"]

    async def test_docx_upload(self, repository, docx_factory):
        template = await repository.upload(
            "quote.docx", docx_factory("{{clientName}}"), form_type="rfq",
            metadata={"author": "Ops", "tags": ["sales"]},
        )
        assert template.has_binary
        assert template.metadata.author == "Ops"
        assert template.metadata.tags == ["sales"]

    async def test_docx_without_container_signature_rejected(self, repository, store):
        with pytest.raises(ValidationError) as exc_info:
            await repository.upload("quote.docx", b"plain bytes", form_type="rfq")
        assert "not a supported document container" in exc_info.value.message
        assert await store.get_all(DOCUMENT_TEMPLATES) == []

    async def test_unsupported_extension_rejected(self, repository):
        with pytest.raises(ValidationError) as exc_info:
            await repository.upload("quote.pdf", b"%PDF-1.4", form_type="rfq")
        assert "Unsupported" in exc_info.value.message

    async def test_empty_file_rejected(self, repository):
        with pytest.raises(ValidationError):
            await repository.upload("quote.txt", b"", form_type="rfq")

    async def test_non_utf8_text_rejected(self, repository):
        with pytest.raises(ValidationError):
            await repository.upload("quote.txt", b"\xff\xfe\xfa bad", form_type="rfq")


class TestSelection:

    async def test_exact_match_beats_universal(self, repository):
        await repository.create(name="Universal", form_type="universal", body="u")
        exact = await repository.create(name="RFQ", form_type="rfq", body="r")
        selected = await repository.select_for("rfq")
        assert selected.template_id == exact.template_id

    async def test_universal_fallback(self, repository):
        universal = await repository.create(name="Universal", form_type="universal", body="u")
        await repository.create(name="Invoice", form_type="invoice", body="i")
        selected = await repository.select_for("rfq")
        assert selected.template_id == universal.template_id

    async def test_first_uploaded_match_wins(self, repository):
        first = await repository.create(name="First", form_type="rfq", body="1")
        await repository.create(name="Second", form_type="rfq", body="2")
        assert (await repository.select_for("rfq")).template_id == first.template_id

    async def test_no_template(self, repository):
        await repository.create(name="Invoice", form_type="invoice", body="i")
        assert await repository.select_for("rfq") is None

    async def test_templates_for_includes_universal(self, repository):
        await repository.create(name="Universal", form_type="universal", body="u")
        await repository.create(name="RFQ", form_type="rfq", body="r")
        await repository.create(name="Invoice", form_type="invoice", body="i")
        names = [t.name for t in await repository.templates_for("rfq")]
        assert names == ["Universal", "RFQ"]

    async def test_record_usage_counts_document_templates(self, repository, docx_factory):
        template = await repository.create(
            name="Doc", form_type="rfq", binary_payload=docx_factory("x")
        )
        await repository.record_usage(template.template_id)
        await repository.record_usage(template.template_id)
        assert (await repository.get(template.template_id)).usage_count == 2


class TestCache:

    async def test_writes_through_another_repository_seen_after_invalidate(self, store):
        first = TemplateRepository(store)
        second = TemplateRepository(store)
        assert await first.list_templates() == []

        await second.create(name="RFQ", form_type="rfq", body="r")
        assert await first.list_templates() == []
        first.invalidate_cache()
        assert len(await first.list_templates()) == 1

    async def test_legacy_records_are_readable(self, repository, store):
        await store.save(TEMPLATES, "legacy-1", {
            "id": "legacy-1",
            "name": "Old letter",
            "formType": "rfq",
            "content": "Hi {{clientName}}",
            "placeholders": ["clientName"],
            "uploadedAt": "2023-01-02T03:04:05",
        })
        template = await repository.get("legacy-1")
        assert isinstance(template, Template)
        assert template.form_type == "rfq"
        assert template.body == "Hi {{clientName}}"
        assert template.uploaded_at.tzinfo is not None


class TestAuthorTooling:

    async def test_get_missing_raises(self, repository):
        with pytest.raises(NotFoundError):
            await repository.get("TPL-MISSING")

    async def test_validate(self, repository):
        template = await repository.create(
            name="Letter", form_type="rfq", body="{{client name}} {{ok}}"
        )
        result = await repository.validate(template.template_id)
        assert result.is_valid is False
        assert len(result.warnings) == 2

    async def test_update_metadata_keeps_content(self, repository):
        template = await repository.create(name="Letter", form_type="rfq", body="{{a}}")
        updated = await repository.update_metadata(
            template.template_id, TemplateMetadataUpdate(author="Sam", version="2.0")
        )
        assert updated.metadata.author == "Sam"
        assert updated.metadata.version == "2.0"
        reloaded = await repository.get(template.template_id)
        assert reloaded.body == "{{a}}"
        assert reloaded.metadata.author == "Sam"

    async def test_clone(self, repository):
        original = await repository.create(name="Letter", form_type="rfq", body="{{a}}")
        clone = await repository.clone(original.template_id, "invoice")

        assert clone.template_id != original.template_id
        assert clone.name == "Letter (invoice)"
        assert clone.form_type == "invoice"
        assert clone.metadata.version == "1.0 (cloned)"
        assert clone.usage_count == 0
        assert clone.body == original.body
        assert len(await repository.list_templates()) == 2

    async def test_clone_needs_form_type(self, repository):
        original = await repository.create(name="Letter", form_type="rfq", body="x")
        with pytest.raises(ValidationError):
            await repository.clone(original.template_id, "")

    async def test_search(self, repository):
        await repository.create(name="Quote letter", form_type="rfq", body="{{refNo}}")
        await repository.create(name="Invoice", form_type="invoice", body="{{total}}")
        assert [t.name for t in await repository.search("QUOTE")] == ["Quote letter"]
        assert [t.name for t in await repository.search("total")] == ["Invoice"]
        assert len(await repository.search("")) == 2

    async def test_form_types_and_grouping(self, repository):
        await repository.create(name="A", form_type="rfq", body="a")
        await repository.create(name="B", form_type="invoice", body="b")
        await repository.create(name="C", form_type="rfq", body="c")
        assert await repository.available_form_types() == ["invoice", "rfq"]
        grouped = await repository.grouped_by_form_type()
        assert [t.name for t in grouped["rfq"]] == ["A", "C"]

    async def test_statistics(self, repository):
        template = await repository.create(
            name="Letter", form_type="rfq", body="Dear {{clientName}} thanks"
        )
        stats = await repository.statistics(template.template_id)
        assert stats["placeholder_count"] == 1
        assert stats["estimated_words"] == 3
        assert stats["created_days_ago"] == 0
        assert stats["usage_count"] == 0

    async def test_delete(self, repository):
        template = await repository.create(name="Letter", form_type="rfq", body="x")
        assert await repository.delete(template.template_id) is True
        assert await repository.delete(template.template_id) is False
        with pytest.raises(NotFoundError):
            await repository.get(template.template_id)
