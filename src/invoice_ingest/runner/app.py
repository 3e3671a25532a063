"""
Application wiring.

Builds the store, collaborators and services from a Config and exposes the
queue handlers the workers run.
"""

import logging

from ..clients.extraction_client import ExtractionClient, HttpExtractionClient
from ..clients.mailbox import ImapMailboxClient
from ..clients.registry_client import RegistryClient, ViesRegistryClient
from ..config import Config
from ..context import TenantContext
from ..errors import NotFoundError
from ..rules import ComplianceRuleEvaluator
from ..services.audit import AuditSink
from ..services.documents import DocumentService
from ..services.email_connectors import EmailConnectorService, MailboxFactory
from ..services.email_sync import EmailSyncService, SyncResult
from ..services.entity_resolver import EntityResolver
from ..services.extraction_worker import ExtractionWorker, ProcessingResult
from ..services.ingestion import IngestionGateway
from ..services.job_queue import PROCESS_DOCUMENT, SYNC_CONNECTOR, JobQueue
from ..services.secret_vault import SecretVault
from ..services.validation_sync import ValidationSyncEngine
from ..state_store.sqlite_store import JobRecord, StateStore
from ..storage.local import BlobStorage, LocalBlobStorage
from .worker import JobWorker, WorkerPool

logger = logging.getLogger(__name__)


class Application:
    """Container for all services of one process."""

    def __init__(
        self,
        config: Config,
        storage: BlobStorage | None = None,
        extraction_client: ExtractionClient | None = None,
        registry_client: RegistryClient | None = None,
        mailbox_factory: MailboxFactory = ImapMailboxClient,
    ):
        self.config = config
        self.store = StateStore(config.state_db_path)
        self.storage = storage or LocalBlobStorage(
            config.storage.root,
            base_url=config.storage.base_url,
            signing_key=config.storage.signing_key,
            url_ttl_seconds=config.storage.url_ttl_seconds,
        )
        self.audit = AuditSink(self.store)
        self.queue = JobQueue(self.store, config.queue)
        self.vault = SecretVault(config.encryption_key)

        if registry_client is None and config.registry.enabled:
            registry_client = ViesRegistryClient(
                config.registry.url, timeout=config.registry.timeout_seconds
            )
        self.validation = ValidationSyncEngine(
            self.store, ComplianceRuleEvaluator(), registry_client
        )
        self.resolver = EntityResolver(self.store)

        self.extraction_client = extraction_client or HttpExtractionClient(
            config.extraction.base_url,
            token=config.extraction.token,
            timeout=config.extraction.timeout_seconds,
            max_retries=config.extraction.max_retries,
            backoff_factor=config.extraction.backoff_factor,
        )

        self.gateway = IngestionGateway(self.store, self.storage, self.queue, self.audit, config)
        self.documents = DocumentService(
            self.store, self.storage, self.validation, self.audit, self.queue, config
        )
        self.connectors = EmailConnectorService(
            self.store, self.vault, self.queue, self.audit, config, mailbox_factory
        )
        self.email_sync = EmailSyncService(
            self.store, self.gateway, self.vault, self.queue, self.audit, config, mailbox_factory
        )
        self.extraction_worker = ExtractionWorker(
            self.store,
            self.storage,
            self.extraction_client,
            self.validation,
            self.resolver,
            self.audit,
            config,
        )

    # Queue handlers

    def handle_process_document(self, job: JobRecord) -> ProcessingResult | None:
        return self.extraction_worker.process(job)

    def handle_sync_connector(self, job: JobRecord) -> SyncResult | None:
        ctx = TenantContext.system(job.payload["tenant_id"])
        connector_id = int(job.payload["connector_id"])
        try:
            return self.email_sync.sync_connector(ctx, connector_id)
        except NotFoundError:
            logger.warning(f"Job #{job.id}: connector {connector_id} no longer exists")
            self.queue.unschedule_connector(connector_id)
            return None

    def start_workers(self, pool: WorkerPool | None = None) -> WorkerPool:
        """Recover stalled jobs, rebuild schedules and start the worker threads."""
        pool = pool or WorkerPool()
        self.queue.recover_stalled()
        self.connectors.register_all_active()

        poll = self.config.queue.poll_interval_seconds
        pool.add(
            JobWorker(
                self.queue,
                {PROCESS_DOCUMENT: self.handle_process_document},
                poll_interval=poll,
                name="extraction",
            ),
            count=self.config.queue.worker_concurrency,
        )
        pool.add(
            JobWorker(
                self.queue,
                {SYNC_CONNECTOR: self.handle_sync_connector},
                poll_interval=poll,
                name="email-sync",
            ),
            count=self.config.queue.email_concurrency,
        )
        return pool

    def close(self) -> None:
        self.audit.close()
