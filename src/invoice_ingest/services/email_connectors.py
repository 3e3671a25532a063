"""
Email connector administration.

Creates, updates and deletes mailbox connectors, keeps each active
connector's repeatable "sync-connector" job registered, and queues manual
sync runs. Passwords are stored encrypted through the SecretVault only.
"""

import logging
from collections.abc import Callable
from typing import Any

from ..clients.mailbox import ImapMailboxClient, MailboxClient, MailboxError
from ..config import Config
from ..context import TenantContext
from ..errors import EncryptionNotConfiguredError, NotFoundError
from ..state_store.sqlite_store import EmailConnectorRecord, StateStore
from .audit import AuditSink
from .job_queue import JobQueue
from .secret_vault import SecretVault

logger = logging.getLogger(__name__)

MailboxFactory = Callable[[str, int, bool], MailboxClient]

_UPDATABLE = {
    "label",
    "host",
    "port",
    "secure",
    "username",
    "password",
    "folder",
    "poll_interval_minutes",
    "is_active",
}


def connector_summary(connector: EmailConnectorRecord) -> dict[str, Any]:
    """Connector fields safe to show or audit (no password)."""
    return {
        "label": connector.label,
        "host": connector.host,
        "port": connector.port,
        "secure": connector.secure,
        "username": connector.username,
        "folder": connector.folder,
        "poll_interval_minutes": connector.poll_interval_minutes,
        "is_active": connector.is_active,
    }


class EmailConnectorService:
    """Connector CRUD plus poll scheduling."""

    def __init__(
        self,
        store: StateStore,
        vault: SecretVault,
        queue: JobQueue,
        audit: AuditSink,
        config: Config | None = None,
        mailbox_factory: MailboxFactory = ImapMailboxClient,
    ):
        self.store = store
        self.vault = vault
        self.queue = queue
        self.audit = audit
        self.config = config or Config()
        self.mailbox_factory = mailbox_factory

    def _require_vault(self) -> None:
        if not self.vault.is_configured():
            raise EncryptionNotConfiguredError()

    def get(self, ctx: TenantContext, connector_id: int) -> EmailConnectorRecord:
        connector = self.store.get_email_connector(connector_id, ctx.tenant_id)
        if connector is None:
            raise NotFoundError("EmailConnector", connector_id)
        return connector

    def list_for_tenant(self, ctx: TenantContext) -> list[EmailConnectorRecord]:
        return self.store.list_email_connectors(ctx.tenant_id)

    def create(
        self,
        ctx: TenantContext,
        *,
        label: str,
        host: str,
        username: str,
        password: str,
        port: int | None = None,
        secure: bool = True,
        folder: str | None = None,
        poll_interval_minutes: int | None = None,
    ) -> EmailConnectorRecord:
        """
        Create an active connector and schedule its polling.

        Raises:
            EncryptionNotConfiguredError: No encryption key configured
        """
        self._require_vault()
        interval = poll_interval_minutes or self.config.email.default_poll_interval_minutes
        if interval < 1:
            raise ValueError("poll_interval_minutes must be >= 1")

        connector = self.store.create_email_connector(
            ctx.tenant_id,
            label=label,
            host=host,
            port=port or self.config.email.default_port,
            secure=secure,
            username=username,
            password_encrypted=self.vault.encrypt(password),
            folder=folder or self.config.email.default_folder,
            poll_interval_minutes=interval,
            created_by=ctx.actor_id,
        )
        self.queue.schedule_connector(connector.id, ctx.tenant_id, connector.poll_interval_minutes)

        self.audit.append(
            ctx.tenant_id,
            ctx.actor_id,
            "EmailConnector",
            connector.id,
            "EMAIL_CONNECTOR_CREATED",
            after=connector_summary(connector),
        )
        logger.info(f"Created email connector {connector.id} ({label}) for tenant {ctx.tenant_id}")
        return connector

    def update(self, ctx: TenantContext, connector_id: int, **changes: Any) -> EmailConnectorRecord:
        """
        Update a connector.

        Reactivating an inactive connector resets its failure counter and
        last error. The repeatable job is re-registered with the current
        interval while the connector is active and removed otherwise.

        Raises:
            NotFoundError: Unknown connector
            EncryptionNotConfiguredError: Password change without encryption key
            ValueError: Unknown fields
        """
        unknown = set(changes) - _UPDATABLE
        if unknown:
            raise ValueError(f"Unknown connector fields: {sorted(unknown)}")
        before = self.get(ctx, connector_id)

        updates = {key: value for key, value in changes.items() if key != "password"}
        if changes.get("password"):
            self._require_vault()
            updates["password_encrypted"] = self.vault.encrypt(changes["password"])
        if "poll_interval_minutes" in updates and updates["poll_interval_minutes"] < 1:
            raise ValueError("poll_interval_minutes must be >= 1")
        if updates.get("is_active") and not before.is_active:
            updates["consecutive_failures"] = 0
            updates["last_sync_error"] = None

        self.store.update_email_connector(connector_id, **updates)
        after = self.get(ctx, connector_id)

        self.queue.unschedule_connector(connector_id)
        if after.is_active:
            self.queue.schedule_connector(connector_id, ctx.tenant_id, after.poll_interval_minutes)

        audit_after = connector_summary(after)
        if "password" in changes:
            audit_after["password"] = "***"
        self.audit.append(
            ctx.tenant_id,
            ctx.actor_id,
            "EmailConnector",
            connector_id,
            "EMAIL_CONNECTOR_UPDATED",
            before=connector_summary(before),
            after=audit_after,
        )
        return after

    def delete(self, ctx: TenantContext, connector_id: int) -> None:
        """Delete a connector and its schedule."""
        connector = self.get(ctx, connector_id)
        self.queue.unschedule_connector(connector_id)
        self.store.delete_email_connector(connector_id)
        self.audit.append(
            ctx.tenant_id,
            ctx.actor_id,
            "EmailConnector",
            connector_id,
            "EMAIL_CONNECTOR_DELETED",
            before=connector_summary(connector),
        )
        logger.info(f"Deleted email connector {connector_id}")

    def trigger_sync(self, ctx: TenantContext, connector_id: int) -> int:
        """
        Queue a one-off sync run.

        Raises:
            NotFoundError: Unknown or inactive connector
        """
        connector = self.store.get_email_connector(connector_id, ctx.tenant_id)
        if connector is None or not connector.is_active:
            raise NotFoundError("EmailConnector", connector_id)
        return self.queue.enqueue_manual_sync(connector_id, ctx.tenant_id)

    def register_all_active(self) -> int:
        """
        Rebuild the polling schedule on worker start.

        Returns:
            Number of connectors scheduled
        """
        if not self.vault.is_configured():
            logger.warning("ENCRYPTION_KEY not set; email connectors will not be polled")
            return 0

        self.queue.clear_connector_schedules()
        connectors = self.store.list_email_connectors(active_only=True)
        for connector in connectors:
            self.queue.schedule_connector(
                connector.id, connector.tenant_id, connector.poll_interval_minutes
            )
        logger.info(f"Registered {len(connectors)} active email connectors")
        return len(connectors)

    def test_connection(
        self,
        host: str,
        port: int,
        secure: bool,
        username: str,
        password: str,
        folder: str | None = None,
    ) -> dict[str, Any]:
        """Try the credentials without storing anything."""
        client = self.mailbox_factory(host, port, secure)
        try:
            client.connect(username, password)
            client.open_folder(folder or self.config.email.default_folder)
            return {"success": True, "message_count": client.count_messages()}
        except MailboxError as e:
            return {"success": False, "error": str(e)}
        finally:
            try:
                client.logout()
            except Exception as e:
                logger.debug(f"Logout after connection test failed: {e}")
