"""
Ingestion Gateway.

Single entry point for new documents from every channel:
1. Content hash, tenant-scoped duplicate check
2. Bytes to blob storage
3. Row with the next gap-free sequential number (bounded optimistic retry)
4. Extraction job
5. UPLOAD audit event

If no number can be assigned the stored blob is removed again, so a failed
ingest leaves neither a row nor an object behind. A document whose
extraction job cannot be queued is marked ERROR and can be requeued.
"""

import logging
import uuid
from dataclasses import dataclass

from ..config import Config
from ..context import TenantContext
from ..errors import ConflictError, NumberingExhaustedError
from ..schemas.dedupe import compute_file_hash, file_extension
from ..schemas.extracted_data import Direction
from ..state_store.sqlite_store import Channel, DocumentRecord, DocumentStatus, StateStore
from ..storage.local import BlobStorage
from .audit import AuditSink
from .job_queue import JobQueue
from .retry import retry_bounded

logger = logging.getLogger(__name__)


@dataclass
class ChannelMetadata:
    """Mailbox metadata for documents arriving by email."""

    sender: str | None = None
    subject: str | None = None
    message_id: str | None = None


class IngestionGateway:
    """Accepts documents and hands them to the extraction queue."""

    def __init__(
        self,
        store: StateStore,
        storage: BlobStorage,
        queue: JobQueue,
        audit: AuditSink,
        config: Config,
    ):
        self.store = store
        self.storage = storage
        self.queue = queue
        self.audit = audit
        self.config = config

    def ingest(
        self,
        ctx: TenantContext,
        data: bytes,
        mime_type: str,
        direction: Direction = Direction.INCOMING,
        channel: Channel = Channel.UPLOAD,
        channel_metadata: ChannelMetadata | None = None,
        file_name: str | None = None,
    ) -> DocumentRecord:
        """
        Ingest one document.

        Args:
            ctx: Tenant and acting user
            data: Original file bytes
            mime_type: MIME type of the file
            direction: INCOMING or OUTGOING
            channel: UPLOAD or EMAIL
            channel_metadata: Sender, subject and message id (email channel)
            file_name: Original file name

        Returns:
            The created document (status UPLOADED)

        Raises:
            ConflictError: If the tenant already has a document with these bytes
            NumberingExhaustedError: If no sequential number could be claimed
        """
        if not data:
            raise ValueError("Document is empty")
        direction = Direction(direction)
        channel = Channel(channel)
        content_hash = compute_file_hash(data)

        existing = self.store.find_document_by_hash(ctx.tenant_id, content_hash)
        if existing:
            raise ConflictError(
                f"Document with identical content already exists: "
                f"#{existing.sequential_number} (id {existing.id})",
                existing_id=existing.id,
            )

        storage_path = (
            f"{ctx.tenant_id}/inbox/{uuid.uuid4()}.{file_extension(mime_type, file_name)}"
        )
        self.storage.put(storage_path, data, mime_type)

        try:
            document = retry_bounded(
                lambda attempt: self.store.try_insert_document(
                    ctx.tenant_id,
                    content_hash,
                    storage_path,
                    mime_type,
                    direction,
                    channel,
                    original_file_name=file_name,
                    file_size=len(data),
                    created_by=ctx.actor_id,
                ),
                max_attempts=self.config.numbering.max_attempts,
                jitter_ms=self.config.numbering.jitter_ms,
                exhausted=NumberingExhaustedError,
            )
        except Exception:
            self._discard_blob(storage_path)
            raise

        if channel_metadata is not None:
            self.store.set_email_metadata(
                document.id,
                channel_metadata.sender,
                channel_metadata.subject,
                channel_metadata.message_id,
            )

        try:
            self.queue.enqueue_document(
                document.id, ctx.tenant_id, storage_path, mime_type, direction.value
            )
        except Exception as e:
            # The number stays assigned; ERROR documents can be requeued
            message = f"Could not queue extraction: {e}"
            logger.error(f"Document {document.id}: {message}")
            self.store.set_document_status(document.id, DocumentStatus.ERROR, error_message=message)
            raise

        self.audit.append(
            ctx.tenant_id,
            ctx.actor_id,
            "Document",
            document.id,
            "UPLOAD",
            after={
                "sequential_number": document.sequential_number,
                "file_name": file_name,
                "mime_type": mime_type,
                "direction": direction.value,
                "channel": channel.value,
            },
        )
        logger.info(
            f"Ingested document {document.id} (#{document.sequential_number}) "
            f"for tenant {ctx.tenant_id} via {channel.value}"
        )
        return self.store.get_document(document.id) or document

    def _discard_blob(self, storage_path: str) -> None:
        try:
            self.storage.delete(storage_path)
        except Exception as e:
            logger.warning(f"Could not remove orphaned blob {storage_path}: {e}")
