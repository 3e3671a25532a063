"""Tests for the extraction worker."""

import pytest

from conftest import SAMPLE_CONFIDENCE, TENANT, BrokenEvaluator, process_next
from invoice_ingest.context import TenantContext
from invoice_ingest.schemas.extracted_data import (
    Direction,
    ExtractionSource,
    overall_confidence,
)
from invoice_ingest.schemas.validation import Severity
from invoice_ingest.services.entity_resolver import CUSTOMER, VENDOR
from invoice_ingest.services.job_queue import PROCESS_DOCUMENT
from invoice_ingest.state_store import DocumentStatus
from invoice_ingest.storage.local import StorageError


@pytest.fixture
def ctx() -> TenantContext:
    return TenantContext(TENANT, "user-1")


class TestExtractionWorker:
    def test_happy_path(self, app, ctx, extraction_client, sample_pdf):
        doc = app.gateway.ingest(ctx, sample_pdf, "application/pdf", file_name="invoice.pdf")

        result = process_next(app)

        assert result.document_id == doc.id
        assert result.version == 1
        assert result.aggregate_severity == Severity.VALID
        assert result.status == DocumentStatus.PROCESSED
        assert result.vendor_id is not None
        assert result.customer_id is None
        assert extraction_client.calls == [(sample_pdf, "application/pdf", "INCOMING")]

        stored = app.store.get_document(doc.id)
        assert stored.status == DocumentStatus.PROCESSED
        assert stored.latest_version == 1
        assert stored.vendor_id == result.vendor_id
        assert stored.ai_confidence == pytest.approx(overall_confidence(SAMPLE_CONFIDENCE))
        assert stored.raw_response == '{"fields": "..."}'

        version = app.store.get_latest_version(doc.id)
        assert version.source == ExtractionSource.AUTOMATED
        assert version.stage_tag == "llm-v1"
        # Delivery date falls back to the invoice date
        assert version.fields.delivery_date == "2024-11-18"
        assert version.fields.vat_amount is not None

    def test_vendor_reused_across_documents(self, app, ctx):
        app.gateway.ingest(ctx, b"invoice one", "application/pdf")
        app.gateway.ingest(ctx, b"invoice two", "application/pdf")

        first = process_next(app)
        second = process_next(app)

        assert first.vendor_id == second.vendor_id
        vendor = app.store.get_counterparty(VENDOR, first.vendor_id)
        assert vendor.tax_id == "ATU12345678"
        assert vendor.iban == "AT61 1904 3002 3457 3201"

    def test_outgoing_resolves_customer(self, app, ctx, sample_pdf):
        app.gateway.ingest(ctx, sample_pdf, "application/pdf", direction=Direction.OUTGOING)

        result = process_next(app)

        assert result.vendor_id is None
        assert app.store.get_counterparty(CUSTOMER, result.customer_id).name == "Beispiel AG"

    def test_incomplete_extraction_requires_review(self, app, ctx, extraction_client, sample_pdf):
        extraction_client.fields.pop("invoiceNumber")
        doc = app.gateway.ingest(ctx, sample_pdf, "application/pdf")

        result = process_next(app)

        assert result.status == DocumentStatus.REVIEW_REQUIRED
        assert app.store.get_document(doc.id).validation_status == Severity.INVALID

    def test_without_counterpart_name(self, app, ctx, extraction_client, sample_pdf):
        extraction_client.fields.pop("issuerName")
        app.gateway.ingest(ctx, sample_pdf, "application/pdf")

        result = process_next(app)

        assert result.vendor_id is None
        assert result.status == DocumentStatus.REVIEW_REQUIRED

    def test_redelivery_after_processing_is_noop(self, app, ctx, extraction_client, sample_pdf):
        """A job handed out again neither extracts nor appends a second version."""
        doc = app.gateway.ingest(ctx, sample_pdf, "application/pdf")
        job = app.queue.claim([PROCESS_DOCUMENT])

        app.handle_process_document(job)
        again = app.handle_process_document(job)

        assert again is None
        assert len(extraction_client.calls) == 1
        assert len(app.store.list_versions(doc.id)) == 1
        assert app.store.get_document(doc.id).status == DocumentStatus.PROCESSED

    def test_redelivery_after_correction_keeps_status(self, app, ctx, sample_pdf):
        doc = app.gateway.ingest(ctx, sample_pdf, "application/pdf")
        job = app.queue.claim([PROCESS_DOCUMENT])
        app.handle_process_document(job)
        app.documents.apply_correction(ctx, doc.id, {"invoiceNumber": None})

        assert app.handle_process_document(job) is None

        stored = app.store.get_document(doc.id)
        assert stored.status == DocumentStatus.REVIEW_REQUIRED
        assert stored.latest_version == 2
        assert len(app.store.list_versions(doc.id)) == 2

    def test_redelivery_after_replacement_keeps_replaced(self, app, ctx, sample_pdf):
        doc = app.gateway.ingest(ctx, sample_pdf, "application/pdf")
        job = app.queue.claim([PROCESS_DOCUMENT])
        app.handle_process_document(job)
        replacement, _ = app.documents.create_replacement(ctx, doc.id, "wrong amount")

        assert app.handle_process_document(job) is None

        assert app.store.get_document(doc.id).status == DocumentStatus.REPLACED
        assert app.store.get_document(replacement.id).status == DocumentStatus.PROCESSED

    def test_retry_after_late_failure_reuses_version(
        self, app, ctx, extraction_client, sample_pdf, monkeypatch
    ):
        """A version stored by a failed delivery is picked up, not extracted again."""
        doc = app.gateway.ingest(ctx, sample_pdf, "application/pdf")
        job = app.queue.claim([PROCESS_DOCUMENT])

        def fail(*args, **kwargs):
            raise RuntimeError("disk full")

        with monkeypatch.context() as m:
            m.setattr(app.store, "update_processing_result", fail)
            with pytest.raises(RuntimeError):
                app.handle_process_document(job)
        assert app.store.get_document(doc.id).status == DocumentStatus.ERROR

        result = app.handle_process_document(job)

        assert result.version == 1
        assert result.status == DocumentStatus.PROCESSED
        assert len(extraction_client.calls) == 1
        assert len(app.store.list_versions(doc.id)) == 1
        assert app.store.get_document(doc.id).error_message is None

    def test_failing_checks_store_nothing(self, app, ctx, sample_pdf, monkeypatch):
        """Version and validation are written together or not at all."""
        doc = app.gateway.ingest(ctx, sample_pdf, "application/pdf")
        job = app.queue.claim([PROCESS_DOCUMENT])
        monkeypatch.setattr(app.validation, "evaluator", BrokenEvaluator())

        with pytest.raises(RuntimeError, match="rule table missing"):
            app.handle_process_document(job)

        stored = app.store.get_document(doc.id)
        assert stored.status == DocumentStatus.ERROR
        assert stored.latest_version is None
        assert stored.validation_status is None
        assert app.store.list_versions(doc.id) == []

    def test_extraction_failure_marks_error(self, app, ctx, extraction_client, sample_pdf):
        extraction_client.error = RuntimeError("extraction service down")
        doc = app.gateway.ingest(ctx, sample_pdf, "application/pdf")
        job = app.queue.claim([PROCESS_DOCUMENT])

        with pytest.raises(RuntimeError):
            app.handle_process_document(job)
        app.audit.flush()

        stored = app.store.get_document(doc.id)
        assert stored.status == DocumentStatus.ERROR
        assert stored.error_message == "extraction service down"
        assert app.store.list_versions(doc.id) == []
        (entry,) = app.store.list_audit_entries(TENANT, action="PROCESSING_ERROR")
        assert entry.after["job_id"] == job.id

    def test_missing_blob_marks_error(self, app, ctx, storage, sample_pdf):
        doc = app.gateway.ingest(ctx, sample_pdf, "application/pdf")
        storage.delete(doc.storage_path)
        job = app.queue.claim([PROCESS_DOCUMENT])

        with pytest.raises(StorageError):
            app.handle_process_document(job)
        assert app.store.get_document(doc.id).status == DocumentStatus.ERROR

    def test_deleted_document_skipped(self, app, ctx, sample_pdf):
        doc = app.gateway.ingest(ctx, sample_pdf, "application/pdf")
        app.documents.delete_document(ctx, doc.id)

        job = app.queue.claim([PROCESS_DOCUMENT])
        assert app.handle_process_document(job) is None

    def test_processed_audited(self, app, ctx, sample_pdf):
        doc = app.gateway.ingest(ctx, sample_pdf, "application/pdf")
        process_next(app)
        app.audit.flush()

        (entry,) = app.store.list_audit_entries(TENANT, action="AI_PROCESSED")
        assert entry.entity_id == str(doc.id)
        assert entry.after["validation_status"] == Severity.VALID.value == "valid"
