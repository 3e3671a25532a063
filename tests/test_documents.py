"""Tests for corrections, replacements and document lifecycle actions."""

from decimal import Decimal

import pytest

from conftest import OTHER_TENANT, TENANT, BrokenEvaluator, process_next
from invoice_ingest.context import TenantContext
from invoice_ingest.errors import ConflictError, NotFoundError
from invoice_ingest.schemas.extracted_data import ExtractionSource
from invoice_ingest.schemas.validation import Severity
from invoice_ingest.services.job_queue import PROCESS_DOCUMENT
from invoice_ingest.state_store import Channel, DocumentStatus


@pytest.fixture
def ctx() -> TenantContext:
    return TenantContext(TENANT, "user-1")


@pytest.fixture
def processed(app, ctx, sample_pdf):
    """A document that went through extraction (PROCESSED, version 1)."""
    doc = app.gateway.ingest(ctx, sample_pdf, "application/pdf", file_name="invoice.pdf")
    process_next(app)
    return app.store.get_document(doc.id)


class TestApplyCorrection:
    def test_creates_next_version(self, app, ctx, processed):
        version = app.documents.apply_correction(
            ctx, processed.id, {"invoiceNumber": "RE-2024-0043"}, reason="typo"
        )

        assert version.version == 2
        assert version.source == ExtractionSource.MANUAL
        assert version.edited_by == "user-1"
        assert version.edit_reason == "typo"
        assert version.fields.invoice_number == "RE-2024-0043"
        # Untouched fields carried over
        assert version.fields.issuer_name == "Muster Handel GmbH"

        original = app.store.get_version(processed.id, 1)
        assert original.fields.invoice_number == "RE-2024-0042"
        assert app.store.get_document(processed.id).invoice_number == "RE-2024-0043"

    def test_default_reason(self, app, ctx, processed):
        version = app.documents.apply_correction(ctx, processed.id, {"currency": "EUR"})
        assert version.edit_reason == "Manual correction"

    def test_correction_revalidates(self, app, ctx, processed):
        app.documents.apply_correction(ctx, processed.id, {"invoiceNumber": None})

        doc = app.store.get_document(processed.id)
        assert doc.status == DocumentStatus.REVIEW_REQUIRED
        assert doc.validation_status == Severity.INVALID
        assert doc.latest_version == 2

        app.documents.apply_correction(ctx, processed.id, {"invoiceNumber": "RE-2024-0042"})
        assert app.store.get_document(processed.id).status == DocumentStatus.PROCESSED

    def test_failing_checks_keep_previous_version(self, app, ctx, processed, monkeypatch):
        """Without a validation run the corrected version is not stored either."""
        monkeypatch.setattr(app.validation, "evaluator", BrokenEvaluator())

        with pytest.raises(RuntimeError, match="rule table missing"):
            app.documents.apply_correction(ctx, processed.id, {"invoiceNumber": "RE-2024-0043"})

        doc = app.store.get_document(processed.id)
        assert doc.latest_version == 1
        assert doc.invoice_number == "RE-2024-0042"
        assert doc.status == DocumentStatus.PROCESSED
        assert len(app.store.list_versions(processed.id)) == 1

    def test_gross_only_keeps_net_and_vat(self, app, ctx, processed):
        version = app.documents.apply_correction(ctx, processed.id, {"grossAmount": "1.300,00"})

        assert version.fields.gross_amount == Decimal("1300.00")
        assert version.fields.net_amount == Decimal("1000.00")
        assert version.fields.vat_amount == Decimal("200.00")
        assert app.store.get_document(processed.id).status == DocumentStatus.REVIEW_REQUIRED

    def test_gross_only_recompute_policy(self, app, ctx, processed, config):
        config.corrections.recompute_on_gross_only = True

        version = app.documents.apply_correction(ctx, processed.id, {"grossAmount": "1.300,00"})

        assert version.fields.net_amount == Decimal("1083.33")
        assert version.fields.vat_amount == Decimal("216.67")
        assert app.store.get_document(processed.id).status == DocumentStatus.PROCESSED

    def test_unknown_field_rejected(self, app, ctx, processed):
        with pytest.raises(ValueError):
            app.documents.apply_correction(ctx, processed.id, {"favouriteColour": "red"})
        assert app.store.get_latest_version(processed.id).version == 1

    def test_unparseable_value_rejected(self, app, ctx, processed):
        with pytest.raises(ValueError):
            app.documents.apply_correction(ctx, processed.id, {"invoiceDate": "someday"})

    def test_other_tenant_cannot_correct(self, app, processed):
        with pytest.raises(NotFoundError):
            app.documents.apply_correction(
                TenantContext(OTHER_TENANT, "user-9"), processed.id, {"currency": "USD"}
            )

    def test_correction_audited(self, app, ctx, processed):
        app.documents.apply_correction(ctx, processed.id, {"invoiceNumber": "RE-9"})
        app.audit.flush()

        (entry,) = app.store.list_audit_entries(TENANT, action="MANUAL_CORRECTION")
        assert entry.actor_id == "user-1"
        assert entry.after["version"] == 2
        assert entry.after["changes"] == ["invoice_number"]
        assert entry.before["invoice_number"] == "RE-2024-0042"

    def test_versions_listed_newest_first(self, app, ctx, processed):
        app.documents.apply_correction(ctx, processed.id, {"currency": "EUR"})
        app.documents.apply_correction(ctx, processed.id, {"currency": "CHF"})

        versions = app.documents.list_versions(ctx, processed.id)
        assert [v.version for v in versions] == [3, 2, 1]


class TestCreateReplacement:
    def test_replacement_links_both_documents(self, app, ctx, processed):
        replacement, outcome = app.documents.create_replacement(
            ctx, processed.id, "Wrong recipient", patch={"recipientName": "Neu AG"}
        )

        assert replacement.sequential_number == 2
        assert replacement.channel == Channel.REPLACEMENT
        assert replacement.replaces_document_id == processed.id
        assert replacement.direction == processed.direction
        assert replacement.storage_path == processed.storage_path
        assert replacement.status == DocumentStatus.PROCESSED
        assert outcome.aggregate_severity == Severity.VALID

        original = app.store.get_document(processed.id)
        assert original.status == DocumentStatus.REPLACED
        assert original.replaced_by_document_id == replacement.id

        (version,) = app.store.list_versions(replacement.id)
        assert version.source == ExtractionSource.MANUAL
        assert version.edit_reason == "Wrong recipient"
        assert version.fields.recipient_name == "Neu AG"

    def test_replaced_document_cannot_be_replaced_again(self, app, ctx, processed):
        app.documents.create_replacement(ctx, processed.id, "first")

        with pytest.raises(ConflictError):
            app.documents.create_replacement(ctx, processed.id, "second")

    def test_replaced_document_cannot_be_corrected(self, app, ctx, processed):
        app.documents.create_replacement(ctx, processed.id, "first")

        with pytest.raises(ConflictError):
            app.documents.apply_correction(ctx, processed.id, {"currency": "EUR"})

    def test_unprocessed_document_not_replaceable(self, app, ctx, sample_pdf):
        doc = app.gateway.ingest(ctx, sample_pdf, "application/pdf")

        with pytest.raises(ConflictError):
            app.documents.create_replacement(ctx, doc.id, "too early")
        assert len(app.store.list_documents(TENANT)) == 1

    def test_default_vat_rate(self, app, ctx, processed):
        replacement, _ = app.documents.create_replacement(
            ctx, processed.id, "no rate", patch={"vatRate": None}
        )
        version = app.store.get_latest_version(replacement.id)
        assert version.fields.vat_rate == Decimal("20")

    def test_failing_checks_leave_original_untouched(self, app, ctx, processed, monkeypatch):
        monkeypatch.setattr(app.validation, "evaluator", BrokenEvaluator())

        with pytest.raises(RuntimeError, match="rule table missing"):
            app.documents.create_replacement(ctx, processed.id, "wrong amount")

        assert len(app.store.list_documents(TENANT)) == 1
        original = app.store.get_document(processed.id)
        assert original.status == DocumentStatus.PROCESSED
        assert original.replaced_by_document_id is None


class TestLifecycle:
    def test_delete_uploaded_document(self, app, ctx, storage, sample_pdf):
        doc = app.gateway.ingest(ctx, sample_pdf, "application/pdf")

        app.documents.delete_document(ctx, doc.id)

        assert app.store.get_document(doc.id) is None
        assert not storage.exists(doc.storage_path)

    def test_processed_document_not_deletable(self, app, ctx, processed):
        with pytest.raises(ConflictError):
            app.documents.delete_document(ctx, processed.id)
        assert app.store.get_document(processed.id) is not None

    def test_requeue_error_document(self, app, ctx, extraction_client, sample_pdf):
        extraction_client.error = RuntimeError("timeout")
        doc = app.gateway.ingest(ctx, sample_pdf, "application/pdf")
        job = app.queue.claim([PROCESS_DOCUMENT])
        with pytest.raises(RuntimeError):
            app.handle_process_document(job)
        app.queue.fail(job, "timeout")

        extraction_client.error = None
        job_id = app.documents.requeue(ctx, doc.id)

        assert app.store.get_document(doc.id).status == DocumentStatus.UPLOADED
        assert app.store.get_job(job_id).payload["document_id"] == doc.id

    def test_requeue_requires_error_status(self, app, ctx, processed):
        with pytest.raises(ConflictError):
            app.documents.requeue(ctx, processed.id)

    def test_download_url(self, app, ctx, processed):
        url = app.documents.download_url(ctx, processed.id)
        assert url.startswith(f"http://files.test/blobs/{processed.storage_path}?")

    def test_unknown_document(self, app, ctx):
        with pytest.raises(NotFoundError):
            app.documents.download_url(ctx, 999)
