"""
Email channel poll run.

One run for one connector:
    RUNNING -> decrypt password -> connect -> open folder
    -> fetch messages after the UID cursor (UNSEEN without a cursor)
    -> ingest allow-listed attachments -> SUCCESS (cursor advanced)

A failing message is recorded and skipped; the cursor still moves past it.
A failing run (connect, login, folder, decryption) counts towards the
connector's failure threshold, after which the connector is deactivated
and its schedule removed.

Runs are single-flight per connector: a run that finds another run of the
same connector in progress returns immediately with skipped=True.
"""

import logging
import threading
from dataclasses import dataclass, field

from ..clients.mail_parser import MailAttachment, parse_message
from ..clients.mailbox import ImapMailboxClient, MailboxMessage
from ..config import Config
from ..context import SYSTEM_ACTOR, TenantContext
from ..errors import ConflictError, NotFoundError
from ..schemas.dedupe import file_extension
from ..schemas.extracted_data import Direction
from ..state_store.sqlite_store import Channel, EmailConnectorRecord, StateStore
from .audit import AuditSink
from .email_connectors import MailboxFactory
from .ingestion import ChannelMetadata, IngestionGateway
from .job_queue import JobQueue
from .secret_vault import SecretVault

logger = logging.getLogger(__name__)


@dataclass
class SyncResult:
    """Summary of one poll run."""

    processed_emails: int = 0
    created_documents: int = 0
    skipped_duplicates: int = 0
    errors: list[str] = field(default_factory=list)
    # Another run of the same connector was in progress
    skipped: bool = False
    highest_uid: int | None = None


class EmailSyncService:
    """Polls mailboxes and feeds attachments into the ingestion gateway."""

    def __init__(
        self,
        store: StateStore,
        gateway: IngestionGateway,
        vault: SecretVault,
        queue: JobQueue,
        audit: AuditSink,
        config: Config | None = None,
        mailbox_factory: MailboxFactory = ImapMailboxClient,
    ):
        self.store = store
        self.gateway = gateway
        self.vault = vault
        self.queue = queue
        self.audit = audit
        self.config = config or Config()
        self.mailbox_factory = mailbox_factory
        self._locks: dict[int, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _connector_lock(self, connector_id: int) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(connector_id, threading.Lock())

    def sync_connector(self, ctx: TenantContext, connector_id: int) -> SyncResult:
        """
        Run one poll for a connector.

        Raises:
            NotFoundError: Unknown connector
        """
        connector = self.store.get_email_connector(connector_id, ctx.tenant_id)
        if connector is None:
            raise NotFoundError("EmailConnector", connector_id)
        if not connector.is_active:
            logger.info(f"Connector {connector_id} is inactive, skipping sync")
            return SyncResult()

        lock = self._connector_lock(connector_id)
        if not lock.acquire(blocking=False):
            logger.info(f"Connector {connector_id} is already syncing, skipping")
            return SyncResult(skipped=True)
        try:
            return self._run(connector)
        finally:
            lock.release()

    def _run(self, connector: EmailConnectorRecord) -> SyncResult:
        result = SyncResult()
        self.store.mark_connector_running(connector.id)
        client = self.mailbox_factory(connector.host, connector.port, connector.secure)
        # Documents are created on behalf of whoever set up the connector
        creator = TenantContext(connector.tenant_id, connector.created_by or SYSTEM_ACTOR)

        try:
            password = self.vault.decrypt(connector.password_encrypted)
            client.connect(connector.username, password)
            client.open_folder(connector.folder)

            for message in client.fetch_since(connector.last_synced_uid):
                result.processed_emails += 1
                try:
                    self._process_message(creator, message, result)
                except Exception as e:
                    logger.warning(
                        f"Connector {connector.id}: message UID {message.uid} failed: {e}"
                    )
                    result.errors.append(f"UID {message.uid}: {e}")
                if result.highest_uid is None or message.uid > result.highest_uid:
                    result.highest_uid = message.uid
        except Exception as e:
            self._record_failure(connector, e, result)
            return result
        finally:
            try:
                client.logout()
            except Exception as e:
                logger.debug(f"Connector {connector.id}: logout failed: {e}")

        self.store.record_connector_success(connector.id, result.highest_uid)
        if result.created_documents:
            self.audit.append(
                connector.tenant_id,
                SYSTEM_ACTOR,
                "EmailConnector",
                connector.id,
                "EMAIL_SYNC_COMPLETED",
                after={
                    "processed_emails": result.processed_emails,
                    "created_documents": result.created_documents,
                    "skipped_duplicates": result.skipped_duplicates,
                    "errors": len(result.errors),
                },
            )
        logger.info(
            f"Connector {connector.id}: {result.processed_emails} emails, "
            f"{result.created_documents} documents, {result.skipped_duplicates} duplicates, "
            f"{len(result.errors)} errors"
        )
        return result

    def _record_failure(
        self, connector: EmailConnectorRecord, error: Exception, result: SyncResult
    ) -> None:
        message = (str(error) or type(error).__name__)[: self.config.email.error_max_length]
        logger.error(f"Connector {connector.id} sync failed: {message}")
        result.errors.append(message)

        failures, deactivated = self.store.record_connector_failure(
            connector.id, message, self.config.email.max_consecutive_failures
        )
        if not deactivated:
            return

        self.queue.unschedule_connector(connector.id)
        self.audit.append(
            connector.tenant_id,
            SYSTEM_ACTOR,
            "EmailConnector",
            connector.id,
            "EMAIL_CONNECTOR_AUTO_DEACTIVATED",
            after={"consecutive_failures": failures, "last_error": message},
        )
        logger.warning(
            f"Connector {connector.id} deactivated after {failures} consecutive failures"
        )

    def _process_message(
        self, creator: TenantContext, message: MailboxMessage, result: SyncResult
    ) -> None:
        parsed = parse_message(message.raw)
        message_id = parsed.message_id or f"no-msgid-{message.uid}"
        subject = parsed.subject[: self.config.email.subject_max_length] if parsed.subject else None

        for attachment in parsed.attachments:
            if not self._accepts(attachment):
                continue
            file_name = (
                attachment.filename or f"attachment.{file_extension(attachment.content_type)}"
            )

            if self.store.find_email_attachment(creator.tenant_id, message_id, file_name):
                result.skipped_duplicates += 1
                continue

            try:
                self.gateway.ingest(
                    creator,
                    attachment.data,
                    attachment.content_type,
                    direction=Direction.INCOMING,
                    channel=Channel.EMAIL,
                    channel_metadata=ChannelMetadata(
                        sender=parsed.sender, subject=subject, message_id=message_id
                    ),
                    file_name=file_name,
                )
            except ConflictError:
                # Same bytes already arrived through another message or channel
                result.skipped_duplicates += 1
                continue
            result.created_documents += 1

    def _accepts(self, attachment: MailAttachment) -> bool:
        if attachment.content_type not in self.config.email.allowed_attachment_mimes:
            return False
        # Inline parts without a name are signatures and logos
        if attachment.inline and not attachment.filename:
            return False
        return True

