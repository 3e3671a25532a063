"""
Extraction Worker.

Handles one "process-document" job:

    PROCESSING -> extract -> ExtractedFields (validated once) -> derive amounts
    -> delivery date fallback -> version 1 (AUTOMATED) -> Validation & Sync
    -> Entity Resolver -> confidence / raw response

Any failure marks the document ERROR and re-raises so the queue applies its
retry and backoff policy. A redelivered job reuses the version its first
delivery stored (idempotency key "{document_id}:{job_id}"), and does nothing
at all once the document was processed, corrected or replaced.
"""

import logging
import time
from dataclasses import dataclass

from ..clients.extraction_client import ExtractionClient
from ..clients.registry_client import RegistryInfo
from ..config import Config
from ..context import TenantContext
from ..schemas.dedupe import extraction_idempotency_key
from ..schemas.extracted_data import (
    Direction,
    ExtractedFields,
    ExtractionSource,
    normalize_extraction,
    overall_confidence,
)
from ..schemas.validation import Severity
from ..state_store.sqlite_store import DocumentRecord, DocumentStatus, JobRecord, StateStore
from ..storage.local import BlobStorage
from .audit import AuditSink
from .entity_resolver import CUSTOMER, VENDOR, EntityResolver
from .validation_sync import ValidationSyncEngine

logger = logging.getLogger(__name__)

# A failing delivery never overwrites REPLACED or APPROVED
FAILABLE_STATUSES = [
    DocumentStatus.PROCESSING,
    DocumentStatus.PROCESSED,
    DocumentStatus.REVIEW_REQUIRED,
]


@dataclass
class ProcessingResult:
    """Outcome of a processed document."""

    document_id: int
    version: int
    aggregate_severity: Severity
    status: DocumentStatus
    confidence: float | None
    vendor_id: int | None = None
    customer_id: int | None = None
    duration_ms: int = 0


class ExtractionWorker:
    """Runs extraction for queued documents."""

    def __init__(
        self,
        store: StateStore,
        storage: BlobStorage,
        extraction_client: ExtractionClient,
        validation: ValidationSyncEngine,
        resolver: EntityResolver,
        audit: AuditSink,
        config: Config | None = None,
    ):
        self.store = store
        self.storage = storage
        self.extraction_client = extraction_client
        self.validation = validation
        self.resolver = resolver
        self.audit = audit
        self.config = config or Config()

    def process(self, job: JobRecord) -> ProcessingResult | None:
        """
        Process one extraction job.

        Returns:
            ProcessingResult, or None when the document no longer exists or
            has moved on (processed, corrected, replaced) since this job
            was first delivered

        Raises:
            Whatever failed; the document is in ERROR by then
        """
        payload = job.payload
        document_id = int(payload["document_id"])
        tenant_id = payload["tenant_id"]

        document = self.store.get_document(document_id, tenant_id)
        if document is None:
            logger.warning(f"Job #{job.id}: document {document_id} no longer exists, skipping")
            return None

        key = extraction_idempotency_key(document_id, job.id)
        if not self.store.claim_for_processing(document_id, key):
            logger.info(
                f"Job #{job.id}: document {document_id} is {document.status.value}, "
                "nothing to do"
            )
            return None

        ctx = TenantContext.system(tenant_id)
        started = time.monotonic()
        try:
            return self._process(job, document, ctx, key, started)
        except Exception as e:
            message = str(e) or type(e).__name__
            logger.error(f"Processing document {document_id} failed: {message}")
            self.store.set_document_status(
                document_id,
                DocumentStatus.ERROR,
                error_message=message,
                expected=FAILABLE_STATUSES,
            )
            self.audit.append(
                tenant_id,
                ctx.actor_id,
                "Document",
                document_id,
                "PROCESSING_ERROR",
                after={"error": message, "job_id": job.id, "attempt": job.attempts},
            )
            raise

    def _process(
        self,
        job: JobRecord,
        document: DocumentRecord,
        ctx: TenantContext,
        key: str,
        started: float,
    ) -> ProcessingResult:
        payload = job.payload
        direction = Direction(payload.get("direction") or document.direction)

        version = self.store.find_version_by_idempotency_key(key)
        if version is not None:
            # An earlier delivery of this job stored the version but failed later
            logger.info(f"Job #{job.id}: reusing stored version {version.version}")
            outcome = self.validation.validate_and_sync(
                document.id, ctx.tenant_id, version.fields, version.version, direction
            )
            confidence = version.overall_confidence
            stage_tag = version.stage_tag
            raw_response = None
        else:
            storage_path = payload.get("storage_path") or document.storage_path
            mime_type = (
                payload.get("mime_type") or document.mime_type or "application/octet-stream"
            )
            data = self.storage.get(storage_path)
            response = self.extraction_client.extract(data, mime_type, direction.value)

            fields = normalize_extraction(ExtractedFields.from_raw(response.fields))
            confidence = overall_confidence(response.confidence_scores)
            stage_tag = response.stage_tag
            raw_response = response.raw_response

            version, outcome = self.validation.append_and_validate(
                document.id,
                ctx.tenant_id,
                fields,
                ExtractionSource.AUTOMATED,
                direction,
                stage_tag=stage_tag,
                confidence_scores=response.confidence_scores,
                overall_confidence=confidence,
                idempotency_key=key,
            )

        vendor_id, customer_id = self._resolve_counterpart(
            ctx, direction, version.fields, outcome.registry_info
        )
        self.store.update_processing_result(
            document.id,
            ai_confidence=confidence,
            raw_response=raw_response,
            vendor_id=vendor_id,
            customer_id=customer_id,
        )

        duration_ms = int((time.monotonic() - started) * 1000)
        self.audit.append(
            ctx.tenant_id,
            ctx.actor_id,
            "Document",
            document.id,
            "AI_PROCESSED",
            after={
                "version": version.version,
                "confidence": confidence,
                "stage_tag": stage_tag,
                "validation_status": outcome.aggregate_severity.value,
                "duration_ms": duration_ms,
            },
        )

        refreshed = self.store.get_document(document.id)
        status = refreshed.status if refreshed else DocumentStatus.PROCESSING
        logger.info(
            f"Processed document {document.id}: {status.value} "
            f"({outcome.aggregate_severity.value}, {duration_ms} ms)"
        )
        return ProcessingResult(
            document_id=document.id,
            version=version.version,
            aggregate_severity=outcome.aggregate_severity,
            status=status,
            confidence=confidence,
            vendor_id=vendor_id,
            customer_id=customer_id,
            duration_ms=duration_ms,
        )

    def _resolve_counterpart(
        self,
        ctx: TenantContext,
        direction: Direction,
        fields: ExtractedFields,
        registry_info: RegistryInfo | None,
    ) -> tuple[int | None, int | None]:
        """Vendor for incoming documents, customer for outgoing. Never raises."""
        name, tax_id, address = fields.counterpart(direction)
        if not name:
            return None, None
        role = VENDOR if direction == Direction.INCOMING else CUSTOMER
        try:
            entity_id = self.resolver.resolve(
                ctx,
                role,
                name,
                tax_id=tax_id,
                address=address,
                iban=fields.iban if direction == Direction.INCOMING else None,
                registry_info=registry_info,
            )
        except Exception as e:
            logger.warning(f"Could not resolve {role} {name!r}: {e}")
            return None, None
        if role == VENDOR:
            return entity_id, None
        return None, entity_id
