"""
Versioned Correction Store and document lifecycle operations.

Extracted data is append-only: a correction never edits a version, it
stores version N+1 (source MANUAL) built from version N plus the patch,
then runs the same Validation & Sync path the worker uses.

Status machine:
    UPLOADED -> PROCESSING -> PROCESSED | REVIEW_REQUIRED | ERROR
    PROCESSED / REVIEW_REQUIRED -> APPROVED (external) | REPLACED
    ERROR -> UPLOADED only through requeue()
"""

import logging
from collections.abc import Mapping
from dataclasses import replace
from decimal import Decimal
from typing import Any

from ..config import Config
from ..context import TenantContext
from ..errors import ConflictError, NotFoundError, NumberingExhaustedError
from ..schemas.extracted_data import (
    ExtractedFields,
    ExtractionSource,
    normalize_extraction,
    patched_field_names,
)
from ..state_store.sqlite_store import (
    DocumentRecord,
    DocumentStatus,
    ExtractedVersionRecord,
    StateStore,
)
from ..storage.local import BlobStorage
from .audit import AuditSink
from .job_queue import JobQueue
from .retry import retry_bounded
from .validation_sync import ValidationOutcome, ValidationSyncEngine

logger = logging.getLogger(__name__)

DELETABLE_STATUSES = (DocumentStatus.UPLOADED, DocumentStatus.ERROR)


class DocumentService:
    """Corrections, versions, replacements and lifecycle actions."""

    def __init__(
        self,
        store: StateStore,
        storage: BlobStorage,
        validation: ValidationSyncEngine,
        audit: AuditSink,
        queue: JobQueue,
        config: Config | None = None,
    ):
        self.store = store
        self.storage = storage
        self.validation = validation
        self.audit = audit
        self.queue = queue
        self.config = config or Config()

    def get_document(self, ctx: TenantContext, document_id: int) -> DocumentRecord:
        document = self.store.get_document(document_id, ctx.tenant_id)
        if document is None:
            raise NotFoundError("Document", document_id)
        return document

    def list_versions(self, ctx: TenantContext, document_id: int) -> list[ExtractedVersionRecord]:
        """All versions, newest first."""
        self.get_document(ctx, document_id)
        return self.store.list_versions(document_id)

    def get_latest_version(
        self, ctx: TenantContext, document_id: int
    ) -> ExtractedVersionRecord | None:
        self.get_document(ctx, document_id)
        return self.store.get_latest_version(document_id)

    def apply_correction(
        self,
        ctx: TenantContext,
        document_id: int,
        patch: Mapping[str, Any],
        reason: str | None = None,
    ) -> ExtractedVersionRecord:
        """
        Store a manual correction as a new version and re-validate.

        Fields absent from the patch are carried over from the latest
        version. A patch that only changes the gross amount keeps net and
        VAT unless corrections.recompute_on_gross_only is enabled.

        Raises:
            NotFoundError: Unknown document
            ConflictError: Document was replaced
            ValueError: Unknown field names or unparseable values in the patch
        """
        document = self.get_document(ctx, document_id)
        if document.status == DocumentStatus.REPLACED:
            raise ConflictError(
                f"Document {document_id} was replaced by document "
                f"{document.replaced_by_document_id} and can no longer be corrected",
                existing_id=document.replaced_by_document_id,
            )

        latest = self.store.get_latest_version(document_id)
        base = latest.fields if latest else ExtractedFields()
        corrected = base.overlay(patch)

        if self.config.corrections.recompute_on_gross_only and self._is_gross_only(patch):
            corrected = replace(corrected, net_amount=None, vat_amount=None)
        corrected = normalize_extraction(corrected)

        version, outcome = self.validation.append_and_validate(
            document_id,
            ctx.tenant_id,
            corrected,
            ExtractionSource.MANUAL,
            document.direction,
            edited_by=ctx.actor_id,
            edit_reason=reason or self.config.corrections.default_reason,
        )

        self.audit.append(
            ctx.tenant_id,
            ctx.actor_id,
            "Document",
            document_id,
            "MANUAL_CORRECTION",
            before=base.to_dict(),
            after={
                "version": version.version,
                "changes": patched_field_names(patch),
                "reason": version.edit_reason,
                "validation_status": outcome.aggregate_severity.value,
            },
        )
        logger.info(
            f"Document {document_id}: stored manual version {version.version} "
            f"({outcome.aggregate_severity.value})"
        )
        return version

    @staticmethod
    def _is_gross_only(patch: Mapping[str, Any]) -> bool:
        return patched_field_names(patch) == ["gross_amount"]

    def create_replacement(
        self,
        ctx: TenantContext,
        original_id: int,
        reason: str,
        patch: Mapping[str, Any] | None = None,
    ) -> tuple[DocumentRecord, ValidationOutcome]:
        """
        Create a replacement document for a processed original.

        The replacement takes a new sequential number, inherits direction
        and file, gets version 1 (MANUAL) from the original's latest data
        plus the patch, and is validated like any other document. The
        original becomes REPLACED.

        Raises:
            NotFoundError: Unknown original
            ConflictError: Original already replaced or not in a replaceable status
            NumberingExhaustedError: No sequential number could be claimed
        """
        original = self.get_document(ctx, original_id)
        latest = self.store.get_latest_version(original_id)
        fields = (latest.fields if latest else ExtractedFields()).overlay(patch or {})
        if fields.vat_rate is None and not fields.vat_breakdown:
            fields = replace(
                fields, vat_rate=Decimal(self.config.corrections.replacement_default_vat_rate)
            )
        fields = normalize_extraction(fields)

        # Checked before the replacement row exists, so a failing check
        # leaves the original untouched
        evaluated = self.validation.evaluate(fields, original.direction)

        replacement = retry_bounded(
            lambda attempt: self.store.try_insert_replacement(
                ctx.tenant_id, original_id, created_by=ctx.actor_id
            ),
            max_attempts=self.config.numbering.max_attempts,
            jitter_ms=self.config.numbering.jitter_ms,
            exhausted=NumberingExhaustedError,
        )

        version, outcome = self.validation.append_and_validate(
            replacement.id,
            ctx.tenant_id,
            fields,
            ExtractionSource.MANUAL,
            original.direction,
            evaluated=evaluated,
            edited_by=ctx.actor_id,
            edit_reason=reason,
        )

        self.audit.append(
            ctx.tenant_id,
            ctx.actor_id,
            "Document",
            replacement.id,
            "CREATE_REPLACEMENT",
            before={"original_id": original_id, "original_number": original.sequential_number},
            after={
                "sequential_number": replacement.sequential_number,
                "reason": reason,
                "validation_status": outcome.aggregate_severity.value,
            },
        )
        logger.info(
            f"Document {original_id} replaced by {replacement.id} "
            f"(#{replacement.sequential_number})"
        )
        return self.store.get_document(replacement.id) or replacement, outcome

    def delete_document(self, ctx: TenantContext, document_id: int) -> None:
        """
        Delete a document that never got past extraction.

        Raises:
            ConflictError: Document is in any status other than UPLOADED / ERROR
        """
        document = self.get_document(ctx, document_id)
        if document.status not in DELETABLE_STATUSES:
            raise ConflictError(
                f"Document {document_id} cannot be deleted in status {document.status.value}"
            )

        self.store.delete_document(document_id)
        if document.storage_path:
            try:
                self.storage.delete(document.storage_path)
            except Exception as e:
                logger.warning(f"Could not delete blob {document.storage_path}: {e}")

        self.audit.append(
            ctx.tenant_id,
            ctx.actor_id,
            "Document",
            document_id,
            "DELETE",
            before={
                "sequential_number": document.sequential_number,
                "status": document.status.value,
                "file_name": document.original_file_name,
            },
        )

    def download_url(self, ctx: TenantContext, document_id: int) -> str:
        """Short-lived signed URL for the original file."""
        document = self.get_document(ctx, document_id)
        if not document.storage_path:
            raise NotFoundError("File of document", document_id)
        return self.storage.presigned_download_url(document.storage_path)

    def requeue(self, ctx: TenantContext, document_id: int) -> int:
        """
        Send an ERROR document through extraction again.

        Returns:
            The new job ID
        """
        document = self.get_document(ctx, document_id)
        moved = self.store.set_document_status(
            document_id, DocumentStatus.UPLOADED, expected=[DocumentStatus.ERROR]
        )
        if not moved:
            raise ConflictError(
                f"Only documents in ERROR can be re-queued (status {document.status.value})"
            )
        job_id = self.queue.enqueue_document(
            document_id,
            ctx.tenant_id,
            document.storage_path or "",
            document.mime_type or "application/octet-stream",
            document.direction.value,
        )
        self.audit.append(
            ctx.tenant_id,
            ctx.actor_id,
            "Document",
            document_id,
            "REQUEUE",
            after={"job_id": job_id},
        )
        return job_id
