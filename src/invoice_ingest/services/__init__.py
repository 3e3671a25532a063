"""Pipeline services: intake, extraction, validation and mailbox polling."""

from invoice_ingest.services.documents import DocumentService
from invoice_ingest.services.email_connectors import EmailConnectorService
from invoice_ingest.services.email_sync import EmailSyncService, SyncResult
from invoice_ingest.services.entity_resolver import EntityResolver
from invoice_ingest.services.extraction_worker import ExtractionWorker, ProcessingResult
from invoice_ingest.services.ingestion import ChannelMetadata, IngestionGateway
from invoice_ingest.services.job_queue import JobQueue
from invoice_ingest.services.validation_sync import ValidationOutcome, ValidationSyncEngine

__all__ = [
    "ChannelMetadata",
    "DocumentService",
    "EmailConnectorService",
    "EmailSyncService",
    "EntityResolver",
    "ExtractionWorker",
    "IngestionGateway",
    "JobQueue",
    "ProcessingResult",
    "SyncResult",
    "ValidationOutcome",
    "ValidationSyncEngine",
]
