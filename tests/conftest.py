"""Test fixtures and utilities."""

from collections.abc import Iterator
from email.message import EmailMessage
from pathlib import Path

import pytest

from invoice_ingest.clients.extraction_client import ExtractionResponse
from invoice_ingest.clients.mailbox import MailboxMessage
from invoice_ingest.clients.registry_client import RegistryInfo
from invoice_ingest.config import Config, NumberingConfig, RegistryConfig, StorageConfig
from invoice_ingest.runner.app import Application
from invoice_ingest.services.audit import AuditSink
from invoice_ingest.services.job_queue import PROCESS_DOCUMENT, JobQueue
from invoice_ingest.services.secret_vault import SecretVault
from invoice_ingest.state_store import StateStore
from invoice_ingest.storage.local import LocalBlobStorage

TEST_ENCRYPTION_KEY = "00112233445566778899aabbccddeeff00112233445566778899aabbccddeeff"

TENANT = "tenant-a"
OTHER_TENANT = "tenant-b"

# Fields of a complete Austrian standard-size incoming invoice
SAMPLE_INVOICE_FIELDS = {
    "issuerName": "Muster Handel GmbH",
    "issuerAddress": "Herrengasse 12, 8010 Graz",
    "issuerTaxId": "ATU12345678",
    "recipientName": "Beispiel AG",
    "recipientAddress": "Beispielweg 45, 1010 Wien",
    "invoiceNumber": "RE-2024-0042",
    "invoiceDate": "18.11.2024",
    "description": "Beratungsleistung November",
    "netAmount": "1.000,00",
    "vatRate": 20,
    "grossAmount": "1.200,00",
    "currency": "EUR",
    "iban": "AT61 1904 3002 3457 3201",
}

SAMPLE_CONFIDENCE = {
    "issuerName": 0.9,
    "grossAmount": 0.8,
    "invoiceDate": 0.7,
    "iban": 0.0,
}

MINIMAL_PDF = b"%PDF-1.4\n1 0 obj << /Type /Catalog >> endobj\ntrailer << /Root 1 0 R >>\n%%EOF\n"


class FakeExtractionClient:
    """Returns a canned response (or raises) and records calls."""

    def __init__(self, fields: dict | None = None, confidence: dict | None = None):
        self.fields = dict(SAMPLE_INVOICE_FIELDS if fields is None else fields)
        self.confidence = dict(SAMPLE_CONFIDENCE if confidence is None else confidence)
        self.error: Exception | None = None
        self.calls: list[tuple[bytes, str, str]] = []

    def extract(self, data: bytes, mime_type: str, direction: str) -> ExtractionResponse:
        self.calls.append((data, mime_type, direction))
        if self.error is not None:
            raise self.error
        return ExtractionResponse(
            fields=dict(self.fields),
            confidence_scores=dict(self.confidence),
            stage_tag="llm-v1",
            raw_response='{"fields": "..."}',
        )


class FakeRegistryClient:
    """Answers from a dict; unknown ids are unchecked."""

    def __init__(self, answers: dict[str, RegistryInfo] | None = None):
        self.answers = answers or {}
        self.calls: list[str] = []

    def check(self, tax_id: str) -> RegistryInfo:
        self.calls.append(tax_id)
        return self.answers.get(tax_id, RegistryInfo.unchecked("Registry unreachable"))


class BrokenEvaluator:
    """Rule evaluator that fails on every call."""

    def evaluate(self, fields, direction):
        raise RuntimeError("rule table missing")


class FakeMailbox:
    """In-memory mailbox; messages keyed by UID."""

    def __init__(self, messages: dict[int, bytes] | None = None):
        self.messages = dict(messages or {})
        self.login_error: Exception | None = None
        self.folder_error: Exception | None = None
        self.logged_in_as: tuple[str, str] | None = None
        self.folder: str | None = None
        self.fetch_cursors: list[int | None] = []
        self.logged_out = False

    def connect(self, username: str, password: str) -> None:
        if self.login_error is not None:
            raise self.login_error
        self.logged_in_as = (username, password)

    def open_folder(self, name: str) -> None:
        if self.folder_error is not None:
            raise self.folder_error
        self.folder = name

    def fetch_since(self, cursor: int | None) -> Iterator[MailboxMessage]:
        self.fetch_cursors.append(cursor)
        for uid in sorted(self.messages):
            if cursor is None or uid > cursor:
                yield MailboxMessage(uid=uid, raw=self.messages[uid])

    def count_messages(self) -> int:
        return len(self.messages)

    def logout(self) -> None:
        self.logged_out = True


class FakeMailboxFactory:
    """Hands out one shared FakeMailbox and records connection parameters."""

    def __init__(self, mailbox: FakeMailbox | None = None):
        self.mailbox = mailbox or FakeMailbox()
        self.connections: list[tuple[str, int, bool]] = []

    def __call__(self, host: str, port: int, secure: bool) -> FakeMailbox:
        self.connections.append((host, port, secure))
        return self.mailbox


def build_email(
    attachments: list[tuple[str | None, str, bytes]],
    message_id: str | None = "<msg-1@example.com>",
    subject: str = "Rechnung RE-2024-0042",
    sender: str = "Muster Handel <billing@muster.example>",
    inline: bool = False,
) -> bytes:
    """RFC 822 bytes with the given (filename, mime type, data) attachments."""
    msg = EmailMessage()
    msg["From"] = sender
    msg["To"] = "invoices@tenant.example"
    msg["Subject"] = subject
    if message_id:
        msg["Message-ID"] = message_id
    msg.set_content("Please find the invoice attached.")
    for filename, mime_type, data in attachments:
        maintype, subtype = mime_type.split("/", 1)
        msg.add_attachment(
            data,
            maintype=maintype,
            subtype=subtype,
            filename=filename,
            disposition="inline" if inline else "attachment",
        )
    return msg.as_bytes()


@pytest.fixture
def temp_db(tmp_path) -> Path:
    """Temporary database path for testing."""
    return tmp_path / "test_state.db"


@pytest.fixture
def store(temp_db) -> StateStore:
    """Fresh state store with all migrations applied."""
    return StateStore(temp_db)


@pytest.fixture
def config(tmp_path, temp_db) -> Config:
    """Config pointing at temporary paths, no jitter, registry off."""
    return Config(
        storage=StorageConfig(root=tmp_path / "blobs", signing_key="test-signing-key"),
        registry=RegistryConfig(enabled=False),
        numbering=NumberingConfig(max_attempts=20, jitter_ms=0),
        state_db_path=temp_db,
        encryption_key=TEST_ENCRYPTION_KEY,
    )


@pytest.fixture
def storage(config) -> LocalBlobStorage:
    return LocalBlobStorage(
        config.storage.root,
        base_url="http://files.test/blobs",
        signing_key="test-signing-key",
        url_ttl_seconds=300,
    )


@pytest.fixture
def audit(store) -> Iterator[AuditSink]:
    sink = AuditSink(store)
    yield sink
    sink.close()


@pytest.fixture
def queue(store, config) -> JobQueue:
    return JobQueue(store, config.queue)


@pytest.fixture
def vault() -> SecretVault:
    return SecretVault(TEST_ENCRYPTION_KEY)


@pytest.fixture
def extraction_client() -> FakeExtractionClient:
    return FakeExtractionClient()


@pytest.fixture
def mailbox_factory() -> FakeMailboxFactory:
    return FakeMailboxFactory()


@pytest.fixture
def sample_invoice_fields() -> dict:
    """Raw extraction fields of a complete standard invoice."""
    return dict(SAMPLE_INVOICE_FIELDS)


@pytest.fixture
def sample_pdf() -> bytes:
    return MINIMAL_PDF


@pytest.fixture
def app(config, storage, extraction_client, mailbox_factory) -> Iterator[Application]:
    """Fully wired application with fake extraction and mailbox."""
    application = Application(
        config,
        storage=storage,
        extraction_client=extraction_client,
        mailbox_factory=mailbox_factory,
    )
    yield application
    application.close()


def process_next(application: Application):
    """Claim and run the next extraction job the way a worker would."""
    job = application.queue.claim([PROCESS_DOCUMENT])
    assert job is not None, "no extraction job queued"
    result = application.handle_process_document(job)
    application.queue.complete(job)
    return result
