"""Tests for mailbox poll runs."""

import pytest

from conftest import MINIMAL_PDF, TENANT, build_email
from invoice_ingest.clients.mailbox import MailboxError
from invoice_ingest.context import TenantContext
from invoice_ingest.errors import NotFoundError
from invoice_ingest.services.job_queue import PROCESS_DOCUMENT, connector_schedule_key
from invoice_ingest.state_store import Channel, SyncStatus

PDF_A = MINIMAL_PDF + b"% invoice a\n"
PDF_B = MINIMAL_PDF + b"% invoice b\n"


@pytest.fixture
def ctx() -> TenantContext:
    return TenantContext(TENANT, "user-1")


@pytest.fixture
def connector(app, ctx):
    return app.connectors.create(
        ctx,
        label="Invoices inbox",
        host="imap.example.com",
        username="invoices@example.com",
        password="s3cret",
    )


@pytest.fixture
def mailbox(mailbox_factory):
    return mailbox_factory.mailbox


def _sync(app, connector):
    return app.email_sync.sync_connector(TenantContext.system(TENANT), connector.id)


class TestSyncRun:
    def test_attachments_become_documents(self, app, connector, mailbox, mailbox_factory):
        mailbox.messages = {
            3: build_email([("a.pdf", "application/pdf", PDF_A)], message_id="<m3@x>"),
            5: build_email([("b.pdf", "application/pdf", PDF_B)], message_id="<m5@x>"),
        }

        result = _sync(app, connector)

        assert result.processed_emails == 2
        assert result.created_documents == 2
        assert result.errors == []
        assert result.highest_uid == 5
        assert mailbox.logged_in_as == ("invoices@example.com", "s3cret")
        assert mailbox.folder == "INBOX"
        assert mailbox.logged_out
        assert mailbox_factory.connections == [("imap.example.com", 993, True)]

        documents = app.store.list_documents(TENANT)
        assert [d.original_file_name for d in documents] == ["a.pdf", "b.pdf"]
        first = documents[0]
        assert first.channel == Channel.EMAIL
        assert first.email_sender == "billing@muster.example"
        assert first.email_subject == "Rechnung RE-2024-0042"
        assert first.email_message_id == "<m3@x>"
        assert first.created_by == "user-1"
        assert len(app.store.list_jobs(job_type=PROCESS_DOCUMENT)) == 2

    def test_success_state_and_cursor(self, app, connector, mailbox):
        mailbox.messages = {7: build_email([("a.pdf", "application/pdf", PDF_A)])}

        _sync(app, connector)
        _sync(app, connector)

        stored = app.store.get_email_connector(connector.id)
        assert stored.last_sync_status == SyncStatus.SUCCESS
        assert stored.last_synced_uid == 7
        assert stored.last_sync_at is not None
        assert mailbox.fetch_cursors == [None, 7]

    def test_empty_run_keeps_cursor(self, app, connector, mailbox):
        app.store.update_email_connector(connector.id, last_synced_uid=42)

        result = _sync(app, connector)

        assert result.processed_emails == 0
        assert app.store.get_email_connector(connector.id).last_synced_uid == 42

    def test_same_attachment_not_ingested_twice(self, app, connector, mailbox):
        raw = build_email([("a.pdf", "application/pdf", PDF_A)], message_id="<dup@x>")
        mailbox.messages = {1: raw}
        _sync(app, connector)

        # Cursor lost: the message is fetched again
        app.store.update_email_connector(connector.id, last_synced_uid=None)
        result = _sync(app, connector)

        assert result.created_documents == 0
        assert result.skipped_duplicates == 1
        assert len(app.store.list_documents(TENANT)) == 1

    def test_same_bytes_in_other_message(self, app, connector, mailbox):
        mailbox.messages = {
            1: build_email([("a.pdf", "application/pdf", PDF_A)], message_id="<m1@x>"),
            2: build_email([("copy.pdf", "application/pdf", PDF_A)], message_id="<m2@x>"),
        }

        result = _sync(app, connector)

        assert result.created_documents == 1
        assert result.skipped_duplicates == 1
        assert result.errors == []

    def test_attachment_filtering(self, app, connector, mailbox):
        mailbox.messages = {
            1: build_email(
                [
                    ("notes.txt", "text/plain", b"not an invoice"),
                    ("scan.png", "image/png", b"\x89PNG scan"),
                ]
            ),
            2: build_email(
                [(None, "image/png", b"\x89PNG logo")], message_id="<m2@x>", inline=True
            ),
        }

        result = _sync(app, connector)

        assert result.created_documents == 1
        (doc,) = app.store.list_documents(TENANT)
        assert doc.original_file_name == "scan.png"
        assert doc.mime_type == "image/png"

    def test_unnamed_attachment_gets_file_name(self, app, connector, mailbox):
        mailbox.messages = {1: build_email([(None, "application/pdf", PDF_A)])}

        _sync(app, connector)

        (doc,) = app.store.list_documents(TENANT)
        assert doc.original_file_name == "attachment.pdf"

    def test_missing_message_id(self, app, connector, mailbox):
        mailbox.messages = {9: build_email([("a.pdf", "application/pdf", PDF_A)], message_id=None)}

        _sync(app, connector)

        assert app.store.list_documents(TENANT)[0].email_message_id == "no-msgid-9"

    def test_failing_message_skipped(self, app, connector, mailbox):
        mailbox.messages = {
            1: build_email([("empty.pdf", "application/pdf", b"")], message_id="<m1@x>"),
            2: build_email([("a.pdf", "application/pdf", PDF_A)], message_id="<m2@x>"),
        }

        result = _sync(app, connector)

        assert result.created_documents == 1
        assert len(result.errors) == 1
        assert result.errors[0].startswith("UID 1:")
        stored = app.store.get_email_connector(connector.id)
        assert stored.last_sync_status == SyncStatus.SUCCESS
        assert stored.last_synced_uid == 2

    def test_completed_run_audited(self, app, connector, mailbox):
        mailbox.messages = {1: build_email([("a.pdf", "application/pdf", PDF_A)])}

        _sync(app, connector)
        app.audit.flush()

        (entry,) = app.store.list_audit_entries(TENANT, action="EMAIL_SYNC_COMPLETED")
        assert entry.after["created_documents"] == 1


class TestSyncFailures:
    def test_login_failure_recorded(self, app, connector, mailbox):
        mailbox.login_error = MailboxError("authentication failed")

        result = _sync(app, connector)

        assert result.errors == ["authentication failed"]
        stored = app.store.get_email_connector(connector.id)
        assert stored.last_sync_status == SyncStatus.ERROR
        assert stored.last_sync_error == "authentication failed"
        assert stored.consecutive_failures == 1
        assert stored.is_active
        assert mailbox.logged_out

    def test_deactivated_at_threshold(self, app, connector, mailbox):
        mailbox.folder_error = MailboxError("no such folder")

        for _ in range(3):
            _sync(app, connector)
        app.audit.flush()

        stored = app.store.get_email_connector(connector.id)
        assert not stored.is_active
        assert stored.consecutive_failures == 3
        assert app.store.list_jobs(job_key=connector_schedule_key(connector.id)) == []
        (entry,) = app.store.list_audit_entries(
            TENANT, action="EMAIL_CONNECTOR_AUTO_DEACTIVATED"
        )
        assert entry.after["consecutive_failures"] == 3

    def test_success_resets_failures(self, app, connector, mailbox):
        mailbox.login_error = MailboxError("temporary")
        _sync(app, connector)
        mailbox.login_error = None

        _sync(app, connector)

        assert app.store.get_email_connector(connector.id).consecutive_failures == 0

    def test_undecryptable_password(self, app, connector, mailbox):
        app.store.update_email_connector(connector.id, password_encrypted="garbage")

        result = _sync(app, connector)

        assert result.errors
        assert mailbox.logged_in_as is None
        assert app.store.get_email_connector(connector.id).consecutive_failures == 1

    def test_long_error_truncated(self, app, connector, mailbox, config):
        mailbox.login_error = MailboxError("x" * 5000)

        _sync(app, connector)

        stored = app.store.get_email_connector(connector.id)
        assert len(stored.last_sync_error) == config.email.error_max_length


class TestSingleFlight:
    def test_concurrent_run_skipped(self, app, connector, mailbox):
        lock = app.email_sync._connector_lock(connector.id)
        lock.acquire()
        try:
            result = _sync(app, connector)
        finally:
            lock.release()

        assert result.skipped
        assert mailbox.fetch_cursors == []

    def test_inactive_connector_not_polled(self, app, ctx, connector, mailbox):
        app.connectors.update(ctx, connector.id, is_active=False)

        result = _sync(app, connector)

        assert result.processed_emails == 0
        assert mailbox.fetch_cursors == []

    def test_unknown_connector(self, app):
        with pytest.raises(NotFoundError):
            app.email_sync.sync_connector(TenantContext.system(TENANT), 999)
