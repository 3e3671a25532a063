"""
SQLite-based state store implementation.

Tables:
- documents: One row per ingested document (numbering, dedup, status, synced fields)
- extracted_data: Append-only extracted data versions
- validation_results: One row per validation run
- vendors / customers: Resolved counterparties (migration 001)
- email_connectors: Mailbox credentials, cursor and health (migration 002)
- job_queue: Durable at-least-once job queue (migration 003)
- audit_log: Audit trail (migration 004)

All timestamps are fixed-width UTC ISO strings so they compare correctly
as text.
"""

import json
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Any

from ..errors import ConflictError, NotFoundError
from ..schemas.extracted_data import Direction, ExtractedFields, ExtractionSource
from ..schemas.validation import Severity, ValidationCheck


class DocumentStatus(str, Enum):
    """Lifecycle status of a document."""

    UPLOADED = "UPLOADED"
    PROCESSING = "PROCESSING"
    PROCESSED = "PROCESSED"
    REVIEW_REQUIRED = "REVIEW_REQUIRED"
    APPROVED = "APPROVED"
    REPLACED = "REPLACED"
    ERROR = "ERROR"


class Channel(str, Enum):
    """How a document entered the system."""

    UPLOAD = "UPLOAD"
    EMAIL = "EMAIL"
    REPLACEMENT = "REPLACEMENT"


class SyncStatus(str, Enum):
    """Status of the last mailbox poll run."""

    IDLE = "IDLE"
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    ERROR = "ERROR"


class JobStatus(str, Enum):
    """Status of a queued job."""

    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


# Statuses whose processing status follows the validation outcome
SYNCABLE_STATUSES = (
    DocumentStatus.PROCESSING,
    DocumentStatus.PROCESSED,
    DocumentStatus.REVIEW_REQUIRED,
)

# Statuses an extraction delivery may (re)start from
CLAIMABLE_STATUSES = (
    DocumentStatus.UPLOADED,
    DocumentStatus.ERROR,
    DocumentStatus.PROCESSING,
)

COUNTERPARTY_TABLES = {"vendor": "vendors", "customer": "customers"}


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_timestamp(dt: datetime) -> str:
    """Fixed-width UTC timestamp (microseconds always present)."""
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def _now() -> str:
    return to_timestamp(utc_now())


def _decimal(value: str | None) -> Decimal | None:
    return Decimal(value) if value is not None else None


def _dec_str(value: Decimal | None) -> str | None:
    return str(value) if value is not None else None


@dataclass
class DocumentRecord:
    """Record of an ingested document."""

    id: int
    tenant_id: str
    sequential_number: int
    content_hash: str | None
    storage_path: str | None
    mime_type: str | None
    original_file_name: str | None
    file_size: int | None
    direction: Direction
    channel: Channel
    status: DocumentStatus
    error_message: str | None
    email_sender: str | None
    email_subject: str | None
    email_message_id: str | None
    latest_version: int | None
    validation_status: Severity | None
    validation_details: list[dict]
    vendor_id: int | None
    customer_id: int | None
    replaces_document_id: int | None
    replaced_by_document_id: int | None
    counterpart_name: str | None
    counterpart_tax_id: str | None
    invoice_number: str | None
    invoice_date: str | None
    delivery_date: str | None
    net_amount: Decimal | None
    vat_amount: Decimal | None
    gross_amount: Decimal | None
    vat_rate: Decimal | None
    currency: str | None
    ai_confidence: float | None
    raw_response: str | None
    created_by: str | None
    created_at: str
    updated_at: str

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "DocumentRecord":
        """Create from database row."""
        return cls(
            id=row["id"],
            tenant_id=row["tenant_id"],
            sequential_number=row["sequential_number"],
            content_hash=row["content_hash"],
            storage_path=row["storage_path"],
            mime_type=row["mime_type"],
            original_file_name=row["original_file_name"],
            file_size=row["file_size"],
            direction=Direction(row["direction"]),
            channel=Channel(row["channel"]),
            status=DocumentStatus(row["status"]),
            error_message=row["error_message"],
            email_sender=row["email_sender"],
            email_subject=row["email_subject"],
            email_message_id=row["email_message_id"],
            latest_version=row["latest_version"],
            validation_status=(
                Severity(row["validation_status"]) if row["validation_status"] else None
            ),
            validation_details=(
                json.loads(row["validation_details"]) if row["validation_details"] else []
            ),
            vendor_id=row["vendor_id"],
            customer_id=row["customer_id"],
            replaces_document_id=row["replaces_document_id"],
            replaced_by_document_id=row["replaced_by_document_id"],
            counterpart_name=row["counterpart_name"],
            counterpart_tax_id=row["counterpart_tax_id"],
            invoice_number=row["invoice_number"],
            invoice_date=row["invoice_date"],
            delivery_date=row["delivery_date"],
            net_amount=_decimal(row["net_amount"]),
            vat_amount=_decimal(row["vat_amount"]),
            gross_amount=_decimal(row["gross_amount"]),
            vat_rate=_decimal(row["vat_rate"]),
            currency=row["currency"],
            ai_confidence=row["ai_confidence"],
            raw_response=row["raw_response"],
            created_by=row["created_by"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


@dataclass
class ExtractedVersionRecord:
    """One immutable extracted data version."""

    id: int
    document_id: int
    tenant_id: str
    version: int
    fields: ExtractedFields
    source: ExtractionSource
    stage_tag: str | None
    confidence_scores: dict[str, Any]
    overall_confidence: float | None
    edited_by: str | None
    edit_reason: str | None
    idempotency_key: str | None
    created_at: str

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "ExtractedVersionRecord":
        """Create from database row."""
        return cls(
            id=row["id"],
            document_id=row["document_id"],
            tenant_id=row["tenant_id"],
            version=row["version"],
            fields=ExtractedFields.from_dict(json.loads(row["data_json"])),
            source=ExtractionSource(row["source"]),
            stage_tag=row["stage_tag"],
            confidence_scores=(
                json.loads(row["confidence_scores"]) if row["confidence_scores"] else {}
            ),
            overall_confidence=row["overall_confidence"],
            edited_by=row["edited_by"],
            edit_reason=row["edit_reason"],
            idempotency_key=row["idempotency_key"],
            created_at=row["created_at"],
        )


@dataclass
class ValidationResultRecord:
    """Stored outcome of one validation run."""

    id: int
    document_id: int
    extracted_version: int
    aggregate_severity: Severity
    checks: list[ValidationCheck]
    created_at: str

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "ValidationResultRecord":
        """Create from database row."""
        return cls(
            id=row["id"],
            document_id=row["document_id"],
            extracted_version=row["extracted_version"],
            aggregate_severity=Severity(row["aggregate_severity"]),
            checks=[ValidationCheck.from_dict(c) for c in json.loads(row["checks_json"])],
            created_at=row["created_at"],
        )


@dataclass
class CounterpartyRecord:
    """Resolved vendor or customer."""

    id: int
    tenant_id: str
    name: str
    tax_id: str | None
    address: str | None
    email: str | None
    iban: str | None
    registry_name: str | None
    registry_address: str | None
    registry_checked_at: str | None
    created_at: str
    updated_at: str

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "CounterpartyRecord":
        """Create from database row."""
        return cls(
            id=row["id"],
            tenant_id=row["tenant_id"],
            name=row["name"],
            tax_id=row["tax_id"],
            address=row["address"],
            email=row["email"],
            iban=row["iban"],
            registry_name=row["registry_name"],
            registry_address=row["registry_address"],
            registry_checked_at=row["registry_checked_at"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


@dataclass
class EmailConnectorRecord:
    """Mailbox connector with its cursor and health counters."""

    id: int
    tenant_id: str
    label: str
    host: str
    port: int
    secure: bool
    username: str
    password_encrypted: str
    folder: str
    poll_interval_minutes: int
    last_synced_uid: int | None
    last_sync_at: str | None
    last_sync_status: SyncStatus
    last_sync_error: str | None
    consecutive_failures: int
    is_active: bool
    created_by: str | None
    created_at: str
    updated_at: str

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "EmailConnectorRecord":
        """Create from database row."""
        return cls(
            id=row["id"],
            tenant_id=row["tenant_id"],
            label=row["label"],
            host=row["host"],
            port=row["port"],
            secure=bool(row["secure"]),
            username=row["username"],
            password_encrypted=row["password_encrypted"],
            folder=row["folder"],
            poll_interval_minutes=row["poll_interval_minutes"],
            last_synced_uid=row["last_synced_uid"],
            last_sync_at=row["last_sync_at"],
            last_sync_status=SyncStatus(row["last_sync_status"]),
            last_sync_error=row["last_sync_error"],
            consecutive_failures=row["consecutive_failures"],
            is_active=bool(row["is_active"]),
            created_by=row["created_by"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


@dataclass
class JobRecord:
    """Queued job."""

    id: int
    job_type: str
    job_key: str | None
    payload: dict[str, Any]
    status: JobStatus
    attempts: int
    max_attempts: int
    backoff_seconds: float
    run_after: str
    repeat_every_seconds: int | None
    locked_at: str | None
    last_error: str | None
    created_at: str
    updated_at: str
    completed_at: str | None

    @property
    def is_repeatable(self) -> bool:
        return self.repeat_every_seconds is not None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "JobRecord":
        """Create from database row."""
        return cls(
            id=row["id"],
            job_type=row["job_type"],
            job_key=row["job_key"],
            payload=json.loads(row["payload_json"]) if row["payload_json"] else {},
            status=JobStatus(row["status"]),
            attempts=row["attempts"],
            max_attempts=row["max_attempts"],
            backoff_seconds=row["backoff_seconds"],
            run_after=row["run_after"],
            repeat_every_seconds=row["repeat_every_seconds"],
            locked_at=row["locked_at"],
            last_error=row["last_error"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            completed_at=row["completed_at"],
        )


@dataclass
class AuditEntry:
    """Audit log row."""

    id: int
    tenant_id: str
    actor_id: str | None
    entity_type: str
    entity_id: str
    action: str
    before: dict[str, Any] | None
    after: dict[str, Any] | None
    created_at: str

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "AuditEntry":
        """Create from database row."""
        return cls(
            id=row["id"],
            tenant_id=row["tenant_id"],
            actor_id=row["actor_id"],
            entity_type=row["entity_type"],
            entity_id=row["entity_id"],
            action=row["action"],
            before=json.loads(row["before_json"]) if row["before_json"] else None,
            after=json.loads(row["after_json"]) if row["after_json"] else None,
            created_at=row["created_at"],
        )


class StateStore:
    """
    SQLite-based state store for the pipeline.

    Provides persistent tracking of:
    - Documents with per-tenant sequential numbers
    - Extracted data versions (append-only)
    - Validation results
    - Vendors and customers
    - Email connectors
    - Queued jobs
    - Audit log

    Every call opens its own connection, so one store can be shared by
    worker threads. Writers wait on each other through the busy timeout.
    """

    SCHEMA_VERSION = 1
    BUSY_TIMEOUT_SECONDS = 30.0

    def __init__(self, db_path: Path | str, run_migrations: bool = True):
        """
        Initialize state store.

        Args:
            db_path: Path to SQLite database file
            run_migrations: Whether to run pending migrations (default True)
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()
        if run_migrations:
            self._run_migrations()

    def _get_connection(self) -> sqlite3.Connection:
        """Get a database connection with row factory."""
        conn = sqlite3.connect(str(self.db_path), timeout=self.BUSY_TIMEOUT_SECONDS)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def _transaction(self, immediate: bool = False) -> Iterator[sqlite3.Connection]:
        """Context manager for database transactions.

        Args:
            immediate: Take the write lock up front (read-modify-write sections)
        """
        conn = self._get_connection()
        try:
            if immediate:
                conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self) -> None:
        """Initialize database schema."""
        conn = self._get_connection()
        try:
            conn.execute("PRAGMA journal_mode = WAL")
        finally:
            conn.close()

        with self._transaction() as conn:
            # Schema version tracking
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS schema_version (
                    version INTEGER PRIMARY KEY
                )
            """
            )

            # Documents table
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS documents (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    tenant_id TEXT NOT NULL,
                    sequential_number INTEGER NOT NULL,
                    content_hash TEXT,  -- NULL for replacement documents
                    storage_path TEXT,
                    mime_type TEXT,
                    original_file_name TEXT,
                    file_size INTEGER,
                    direction TEXT NOT NULL,
                    channel TEXT NOT NULL,
                    status TEXT NOT NULL,
                    error_message TEXT,
                    email_sender TEXT,
                    email_subject TEXT,
                    email_message_id TEXT,
                    latest_version INTEGER,
                    validation_status TEXT,
                    validation_details TEXT,  -- JSON array of non-valid checks
                    vendor_id INTEGER,
                    customer_id INTEGER,
                    replaces_document_id INTEGER REFERENCES documents(id),
                    replaced_by_document_id INTEGER REFERENCES documents(id),
                    counterpart_name TEXT,
                    counterpart_tax_id TEXT,
                    invoice_number TEXT,
                    invoice_date TEXT,
                    delivery_date TEXT,
                    net_amount TEXT,
                    vat_amount TEXT,
                    gross_amount TEXT,
                    vat_rate TEXT,
                    currency TEXT,
                    ai_confidence REAL,
                    raw_response TEXT,
                    created_by TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    UNIQUE (tenant_id, sequential_number),
                    UNIQUE (tenant_id, content_hash)
                )
            """
            )

            # Extracted data versions (append-only)
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS extracted_data (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    document_id INTEGER NOT NULL,
                    tenant_id TEXT NOT NULL,
                    version INTEGER NOT NULL,
                    data_json TEXT NOT NULL,
                    source TEXT NOT NULL,
                    stage_tag TEXT,
                    confidence_scores TEXT,  -- JSON object
                    overall_confidence REAL,
                    edited_by TEXT,
                    edit_reason TEXT,
                    idempotency_key TEXT UNIQUE,
                    created_at TEXT NOT NULL,
                    UNIQUE (document_id, version),
                    FOREIGN KEY (document_id) REFERENCES documents(id)
                )
            """
            )

            # Validation results
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS validation_results (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    document_id INTEGER NOT NULL,
                    tenant_id TEXT NOT NULL,
                    extracted_version INTEGER NOT NULL,
                    aggregate_severity TEXT NOT NULL,
                    checks_json TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    FOREIGN KEY (document_id) REFERENCES documents(id)
                )
            """
            )

            # Create indexes
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_documents_tenant_status "
                "ON documents(tenant_id, status)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_documents_email "
                "ON documents(tenant_id, email_message_id, original_file_name)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_extracted_data_document "
                "ON extracted_data(document_id, version)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_validation_results_document "
                "ON validation_results(document_id)"
            )

            # Set schema version
            conn.execute(
                "INSERT OR REPLACE INTO schema_version (version) VALUES (?)", (self.SCHEMA_VERSION,)
            )

    def _run_migrations(self) -> None:
        """Run pending database migrations."""
        from .migrations import MigrationRunner

        conn = self._get_connection()
        try:
            runner = MigrationRunner(conn)
            runner.run_pending()
        finally:
            conn.close()

    # Document methods

    def find_document_by_hash(self, tenant_id: str, content_hash: str) -> DocumentRecord | None:
        """Get a tenant's document by content hash."""
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM documents WHERE tenant_id = ? AND content_hash = ?",
                (tenant_id, content_hash),
            ).fetchone()
            return DocumentRecord.from_row(row) if row else None

    def try_insert_document(
        self,
        tenant_id: str,
        content_hash: str,
        storage_path: str,
        mime_type: str,
        direction: Direction,
        channel: Channel,
        original_file_name: str | None = None,
        file_size: int | None = None,
        created_by: str | None = None,
    ) -> DocumentRecord | None:
        """
        Insert a document with the next free sequential number.

        Reads the tenant's current maximum and inserts max+1 without locking.
        The UNIQUE constraint decides races.

        Returns:
            The new record, or None when another writer took the number

        Raises:
            ConflictError: If the tenant already has a document with this hash
        """
        now = _now()
        with self._transaction() as conn:
            number = self._next_sequential_number(conn, tenant_id)
            try:
                cursor = conn.execute(
                    """
                    INSERT INTO documents
                    (tenant_id, sequential_number, content_hash, storage_path, mime_type,
                     original_file_name, file_size, direction, channel, status,
                     created_by, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                    (
                        tenant_id,
                        number,
                        content_hash,
                        storage_path,
                        mime_type,
                        original_file_name,
                        file_size,
                        Direction(direction).value,
                        Channel(channel).value,
                        DocumentStatus.UPLOADED.value,
                        created_by,
                        now,
                        now,
                    ),
                )
            except sqlite3.IntegrityError as e:
                if "content_hash" in str(e):
                    conn.rollback()
                    existing = conn.execute(
                        "SELECT id, sequential_number FROM documents "
                        "WHERE tenant_id = ? AND content_hash = ?",
                        (tenant_id, content_hash),
                    ).fetchone()
                    raise _duplicate_conflict(existing) from e
                if "sequential_number" in str(e):
                    return None
                raise
            row = conn.execute(
                "SELECT * FROM documents WHERE id = ?", (cursor.lastrowid,)
            ).fetchone()
            return DocumentRecord.from_row(row)

    def try_insert_replacement(
        self,
        tenant_id: str,
        original_id: int,
        created_by: str | None = None,
    ) -> DocumentRecord | None:
        """
        Create a replacement document and link it with the original.

        Both rows change in one transaction: the new document points back at
        the original, the original points forward and becomes REPLACED.

        Returns:
            The new record, or None when another writer took the number

        Raises:
            ConflictError: If the original is already replaced or not replaceable
        """
        now = _now()
        with self._transaction() as conn:
            original = conn.execute(
                "SELECT * FROM documents WHERE id = ? AND tenant_id = ?",
                (original_id, tenant_id),
            ).fetchone()
            if original is None:
                raise NotFoundError("Document", original_id)
            if original["replaced_by_document_id"] is not None:
                raise ConflictError(
                    f"Document {original_id} was already replaced by document "
                    f"{original['replaced_by_document_id']}",
                    existing_id=original["replaced_by_document_id"],
                )
            if original["status"] not in (
                DocumentStatus.PROCESSED.value,
                DocumentStatus.REVIEW_REQUIRED.value,
            ):
                raise ConflictError(
                    f"Document {original_id} cannot be replaced in status {original['status']}"
                )

            number = self._next_sequential_number(conn, tenant_id)
            try:
                cursor = conn.execute(
                    """
                    INSERT INTO documents
                    (tenant_id, sequential_number, content_hash, storage_path, mime_type,
                     original_file_name, file_size, direction, channel, status,
                     replaces_document_id, created_by, created_at, updated_at)
                    VALUES (?, ?, NULL, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                    (
                        tenant_id,
                        number,
                        original["storage_path"],
                        original["mime_type"],
                        original["original_file_name"],
                        original["file_size"],
                        original["direction"],
                        Channel.REPLACEMENT.value,
                        DocumentStatus.PROCESSING.value,
                        original_id,
                        created_by,
                        now,
                        now,
                    ),
                )
            except sqlite3.IntegrityError as e:
                if "sequential_number" in str(e):
                    return None
                raise
            new_id = cursor.lastrowid

            updated = conn.execute(
                """
                UPDATE documents
                SET status = ?, replaced_by_document_id = ?, updated_at = ?
                WHERE id = ? AND replaced_by_document_id IS NULL
            """,
                (DocumentStatus.REPLACED.value, new_id, now, original_id),
            )
            if updated.rowcount == 0:
                raise ConflictError(f"Document {original_id} was replaced concurrently")

            row = conn.execute("SELECT * FROM documents WHERE id = ?", (new_id,)).fetchone()
            return DocumentRecord.from_row(row)

    @staticmethod
    def _next_sequential_number(conn: sqlite3.Connection, tenant_id: str) -> int:
        row = conn.execute(
            "SELECT COALESCE(MAX(sequential_number), 0) FROM documents WHERE tenant_id = ?",
            (tenant_id,),
        ).fetchone()
        return row[0] + 1

    def get_document(self, document_id: int, tenant_id: str | None = None) -> DocumentRecord | None:
        """Get a document by ID, optionally scoped to a tenant."""
        with self._transaction() as conn:
            if tenant_id is None:
                row = conn.execute(
                    "SELECT * FROM documents WHERE id = ?", (document_id,)
                ).fetchone()
            else:
                row = conn.execute(
                    "SELECT * FROM documents WHERE id = ? AND tenant_id = ?",
                    (document_id, tenant_id),
                ).fetchone()
            return DocumentRecord.from_row(row) if row else None

    def list_documents(
        self,
        tenant_id: str,
        statuses: list[DocumentStatus] | None = None,
        limit: int | None = None,
    ) -> list[DocumentRecord]:
        """List a tenant's documents ordered by sequential number."""
        query = "SELECT * FROM documents WHERE tenant_id = ?"
        params: list[Any] = [tenant_id]
        if statuses:
            query += f" AND status IN ({','.join('?' * len(statuses))})"
            params.extend(DocumentStatus(s).value for s in statuses)
        query += " ORDER BY sequential_number"
        if limit:
            query += " LIMIT ?"
            params.append(limit)

        with self._transaction() as conn:
            rows = conn.execute(query, params).fetchall()
            return [DocumentRecord.from_row(row) for row in rows]

    def count_documents_by_status(self, tenant_id: str) -> dict[str, int]:
        """Document counts per status for a tenant."""
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT status, COUNT(*) AS n FROM documents WHERE tenant_id = ? GROUP BY status",
                (tenant_id,),
            ).fetchall()
            return {row["status"]: row["n"] for row in rows}

    def set_document_status(
        self,
        document_id: int,
        status: DocumentStatus,
        error_message: str | None = None,
        expected: list[DocumentStatus] | None = None,
    ) -> bool:
        """
        Set a document's status and error message.

        Args:
            expected: Only change the row if its current status is one of these

        Returns:
            True if the row was updated
        """
        query = "UPDATE documents SET status = ?, error_message = ?, updated_at = ? WHERE id = ?"
        params: list[Any] = [DocumentStatus(status).value, error_message, _now(), document_id]
        if expected:
            query += f" AND status IN ({','.join('?' * len(expected))})"
            params.extend(DocumentStatus(s).value for s in expected)

        with self._transaction() as conn:
            return conn.execute(query, params).rowcount > 0

    def claim_for_processing(self, document_id: int, idempotency_key: str) -> bool:
        """
        Move a document into PROCESSING for one extraction delivery.

        Only UPLOADED, ERROR and PROCESSING documents can be claimed. A
        delivery whose stored version was already superseded by a newer one
        (a manual correction) claims nothing.

        Returns:
            True if the delivery should run
        """
        claimable = [s.value for s in CLAIMABLE_STATUSES]
        with self._transaction(immediate=True) as conn:
            row = conn.execute(
                "SELECT status, latest_version FROM documents WHERE id = ?", (document_id,)
            ).fetchone()
            if row is None or row["status"] not in claimable:
                return False
            reused = self._version_by_key(conn, idempotency_key)
            if (
                reused is not None
                and row["latest_version"] is not None
                and row["latest_version"] > reused.version
            ):
                return False
            conn.execute(
                "UPDATE documents SET status = ?, error_message = NULL, updated_at = ? "
                "WHERE id = ?",
                (DocumentStatus.PROCESSING.value, _now(), document_id),
            )
            return True

    def set_email_metadata(
        self,
        document_id: int,
        sender: str | None,
        subject: str | None,
        message_id: str | None,
    ) -> None:
        """Attach mailbox metadata to a document."""
        with self._transaction() as conn:
            conn.execute(
                """
                UPDATE documents
                SET email_sender = ?, email_subject = ?, email_message_id = ?, updated_at = ?
                WHERE id = ?
            """,
                (sender, subject, message_id, _now(), document_id),
            )

    def find_email_attachment(
        self, tenant_id: str, message_id: str, file_name: str
    ) -> DocumentRecord | None:
        """Find a document ingested from this (message id, file name) pair."""
        with self._transaction() as conn:
            row = conn.execute(
                """
                SELECT * FROM documents
                WHERE tenant_id = ? AND email_message_id = ? AND original_file_name = ?
                LIMIT 1
            """,
                (tenant_id, message_id, file_name),
            ).fetchone()
            return DocumentRecord.from_row(row) if row else None

    def update_processing_result(
        self,
        document_id: int,
        ai_confidence: float | None,
        raw_response: str | None,
        vendor_id: int | None = None,
        customer_id: int | None = None,
    ) -> None:
        """Store extraction confidence, raw response and the resolved counterparty."""
        with self._transaction() as conn:
            conn.execute(
                """
                UPDATE documents
                SET ai_confidence = ?, raw_response = COALESCE(?, raw_response),
                    vendor_id = COALESCE(?, vendor_id),
                    customer_id = COALESCE(?, customer_id),
                    updated_at = ?
                WHERE id = ?
            """,
                (ai_confidence, raw_response, vendor_id, customer_id, _now(), document_id),
            )

    def delete_document(self, document_id: int) -> None:
        """Delete a document together with its versions and validation results."""
        with self._transaction() as conn:
            conn.execute("DELETE FROM validation_results WHERE document_id = ?", (document_id,))
            conn.execute("DELETE FROM extracted_data WHERE document_id = ?", (document_id,))
            conn.execute("DELETE FROM documents WHERE id = ?", (document_id,))

    # Extracted data methods

    def append_extracted_version(
        self,
        document_id: int,
        tenant_id: str,
        extracted: ExtractedFields,
        source: ExtractionSource,
        stage_tag: str | None = None,
        confidence_scores: dict[str, Any] | None = None,
        overall_confidence: float | None = None,
        edited_by: str | None = None,
        edit_reason: str | None = None,
        idempotency_key: str | None = None,
    ) -> ExtractedVersionRecord:
        """
        Append the next version for a document.

        When idempotency_key was already used, the version stored under it
        is returned and nothing is written.
        """
        with self._transaction(immediate=True) as conn:
            if idempotency_key:
                existing = self._version_by_key(conn, idempotency_key)
                if existing:
                    return existing
            return self._insert_version(
                conn,
                document_id,
                tenant_id,
                extracted,
                source,
                stage_tag=stage_tag,
                confidence_scores=confidence_scores,
                overall_confidence=overall_confidence,
                edited_by=edited_by,
                edit_reason=edit_reason,
                idempotency_key=idempotency_key,
            )

    def append_version_and_sync(
        self,
        document_id: int,
        tenant_id: str,
        extracted: ExtractedFields,
        source: ExtractionSource,
        aggregate: Severity,
        checks: list[ValidationCheck],
        direction: Direction,
        stage_tag: str | None = None,
        confidence_scores: dict[str, Any] | None = None,
        overall_confidence: float | None = None,
        edited_by: str | None = None,
        edit_reason: str | None = None,
        idempotency_key: str | None = None,
    ) -> tuple[ExtractedVersionRecord, int]:
        """
        Append the next version together with its validation run.

        The version row, the validation row and the document sync commit in
        one transaction, so a document never points at a version that has
        no validation. When idempotency_key was already used, nothing is
        written and the stored version is returned with validation ID 0.

        Returns:
            (version record, validation result ID)
        """
        with self._transaction(immediate=True) as conn:
            if idempotency_key:
                existing = self._version_by_key(conn, idempotency_key)
                if existing:
                    return existing, 0
            version = self._insert_version(
                conn,
                document_id,
                tenant_id,
                extracted,
                source,
                stage_tag=stage_tag,
                confidence_scores=confidence_scores,
                overall_confidence=overall_confidence,
                edited_by=edited_by,
                edit_reason=edit_reason,
                idempotency_key=idempotency_key,
            )
            validation_id = self._save_validation(
                conn,
                document_id,
                tenant_id,
                version.version,
                aggregate,
                checks,
                version.fields,
                direction,
            )
            return version, validation_id

    def find_version_by_idempotency_key(
        self, idempotency_key: str
    ) -> ExtractedVersionRecord | None:
        with self._transaction() as conn:
            return self._version_by_key(conn, idempotency_key)

    @staticmethod
    def _version_by_key(
        conn: sqlite3.Connection, idempotency_key: str
    ) -> ExtractedVersionRecord | None:
        row = conn.execute(
            "SELECT * FROM extracted_data WHERE idempotency_key = ?", (idempotency_key,)
        ).fetchone()
        return ExtractedVersionRecord.from_row(row) if row else None

    @staticmethod
    def _insert_version(
        conn: sqlite3.Connection,
        document_id: int,
        tenant_id: str,
        extracted: ExtractedFields,
        source: ExtractionSource,
        stage_tag: str | None = None,
        confidence_scores: dict[str, Any] | None = None,
        overall_confidence: float | None = None,
        edited_by: str | None = None,
        edit_reason: str | None = None,
        idempotency_key: str | None = None,
    ) -> ExtractedVersionRecord:
        current = conn.execute(
            "SELECT COALESCE(MAX(version), 0) FROM extracted_data WHERE document_id = ?",
            (document_id,),
        ).fetchone()[0]
        cursor = conn.execute(
            """
            INSERT INTO extracted_data
            (document_id, tenant_id, version, data_json, source, stage_tag,
             confidence_scores, overall_confidence, edited_by, edit_reason,
             idempotency_key, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
            (
                document_id,
                tenant_id,
                current + 1,
                json.dumps(extracted.to_dict()),
                ExtractionSource(source).value,
                stage_tag,
                json.dumps(confidence_scores or {}),
                overall_confidence,
                edited_by,
                edit_reason,
                idempotency_key,
                _now(),
            ),
        )
        row = conn.execute(
            "SELECT * FROM extracted_data WHERE id = ?", (cursor.lastrowid,)
        ).fetchone()
        return ExtractedVersionRecord.from_row(row)

    def get_latest_version(self, document_id: int) -> ExtractedVersionRecord | None:
        """Get the version with the highest number."""
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM extracted_data WHERE document_id = ? ORDER BY version DESC LIMIT 1",
                (document_id,),
            ).fetchone()
            return ExtractedVersionRecord.from_row(row) if row else None

    def get_version(self, document_id: int, version: int) -> ExtractedVersionRecord | None:
        """Get one specific version."""
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM extracted_data WHERE document_id = ? AND version = ?",
                (document_id, version),
            ).fetchone()
            return ExtractedVersionRecord.from_row(row) if row else None

    def list_versions(self, document_id: int) -> list[ExtractedVersionRecord]:
        """All versions of a document, newest first."""
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM extracted_data WHERE document_id = ? ORDER BY version DESC",
                (document_id,),
            ).fetchall()
            return [ExtractedVersionRecord.from_row(row) for row in rows]

    # Validation methods

    def save_validation_and_sync(
        self,
        document_id: int,
        tenant_id: str,
        version: int,
        aggregate: Severity,
        checks: list[ValidationCheck],
        extracted: ExtractedFields,
        direction: Direction,
    ) -> int:
        """
        Persist a validation run and sync the document in one transaction.

        The document gets the version pointer, validation status, details and
        denormalized fields. Documents in PROCESSING / PROCESSED /
        REVIEW_REQUIRED also get their processing status from the outcome.
        A run for an older version than the one already synced only stores
        its validation row.

        Returns:
            The validation result ID
        """
        with self._transaction() as conn:
            return self._save_validation(
                conn, document_id, tenant_id, version, aggregate, checks, extracted, direction
            )

    @staticmethod
    def _save_validation(
        conn: sqlite3.Connection,
        document_id: int,
        tenant_id: str,
        version: int,
        aggregate: Severity,
        checks: list[ValidationCheck],
        extracted: ExtractedFields,
        direction: Direction,
    ) -> int:
        now = _now()
        severity = Severity(aggregate)
        if severity == Severity.VALID:
            status = DocumentStatus.PROCESSED
        else:
            status = DocumentStatus.REVIEW_REQUIRED
        details = [c.to_dict() for c in checks if c.severity != Severity.VALID]
        name, tax_id, _ = extracted.counterpart(direction)
        syncable = [s.value for s in SYNCABLE_STATUSES]

        cursor = conn.execute(
            """
            INSERT INTO validation_results
            (document_id, tenant_id, extracted_version, aggregate_severity, checks_json,
             created_at)
            VALUES (?, ?, ?, ?, ?, ?)
        """,
            (
                document_id,
                tenant_id,
                version,
                severity.value,
                json.dumps([c.to_dict() for c in checks]),
                now,
            ),
        )
        conn.execute(
            f"""
            UPDATE documents
            SET latest_version = ?,
                validation_status = ?,
                validation_details = ?,
                counterpart_name = ?,
                counterpart_tax_id = ?,
                invoice_number = ?,
                invoice_date = ?,
                delivery_date = ?,
                net_amount = ?,
                vat_amount = ?,
                gross_amount = ?,
                vat_rate = ?,
                currency = ?,
                status = CASE WHEN status IN ({','.join('?' * len(syncable))})
                              THEN ? ELSE status END,
                updated_at = ?
            WHERE id = ? AND (latest_version IS NULL OR latest_version <= ?)
        """,
            (
                version,
                severity.value,
                json.dumps(details),
                name,
                tax_id,
                extracted.invoice_number,
                extracted.invoice_date,
                extracted.delivery_date,
                _dec_str(extracted.net_amount),
                _dec_str(extracted.vat_amount),
                _dec_str(extracted.gross_amount),
                _dec_str(extracted.vat_rate),
                extracted.currency,
                *syncable,
                status.value,
                now,
                document_id,
                version,
            ),
        )
        return cursor.lastrowid or 0

    def get_latest_validation(self, document_id: int) -> ValidationResultRecord | None:
        """Get the most recent validation run for a document."""
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM validation_results WHERE document_id = ? ORDER BY id DESC LIMIT 1",
                (document_id,),
            ).fetchone()
            return ValidationResultRecord.from_row(row) if row else None

    # Counterparty methods (vendors / customers)

    @staticmethod
    def _counterparty_table(role: str) -> str:
        try:
            return COUNTERPARTY_TABLES[role]
        except KeyError:
            raise ValueError(f"Unknown counterparty role: {role}") from None

    def find_counterparty_by_tax_id(
        self, role: str, tenant_id: str, tax_id: str
    ) -> CounterpartyRecord | None:
        """Find a vendor/customer by tax id."""
        table = self._counterparty_table(role)
        with self._transaction() as conn:
            row = conn.execute(
                f"SELECT * FROM {table} WHERE tenant_id = ? AND tax_id = ?",
                (tenant_id, tax_id),
            ).fetchone()
            return CounterpartyRecord.from_row(row) if row else None

    def find_counterparty_by_name(
        self, role: str, tenant_id: str, name: str
    ) -> CounterpartyRecord | None:
        """Case-insensitive exact name match among entries without a tax id."""
        table = self._counterparty_table(role)
        with self._transaction() as conn:
            row = conn.execute(
                f"""
                SELECT * FROM {table}
                WHERE tenant_id = ? AND name_normalized = ? AND tax_id IS NULL
                ORDER BY id LIMIT 1
            """,
                (tenant_id, normalize_name(name)),
            ).fetchone()
            return CounterpartyRecord.from_row(row) if row else None

    def create_counterparty(
        self,
        role: str,
        tenant_id: str,
        name: str,
        tax_id: str | None = None,
        address: str | None = None,
        email: str | None = None,
        iban: str | None = None,
        registry_name: str | None = None,
        registry_address: str | None = None,
        registry_checked_at: str | None = None,
    ) -> int | None:
        """
        Create a vendor/customer.

        Returns:
            The new ID, or None if another writer created the same tax id first
        """
        table = self._counterparty_table(role)
        now = _now()
        with self._transaction() as conn:
            try:
                cursor = conn.execute(
                    f"""
                    INSERT INTO {table}
                    (tenant_id, name, name_normalized, tax_id, address, email, iban,
                     registry_name, registry_address, registry_checked_at, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                    (
                        tenant_id,
                        name,
                        normalize_name(name),
                        tax_id,
                        address,
                        email,
                        iban,
                        registry_name,
                        registry_address,
                        registry_checked_at,
                        now,
                        now,
                    ),
                )
            except sqlite3.IntegrityError:
                if tax_id is None:
                    raise
                return None
            return cursor.lastrowid

    def update_counterparty_registry(
        self,
        role: str,
        counterparty_id: int,
        registry_name: str | None,
        registry_address: str | None,
        checked_at: str,
    ) -> None:
        """Refresh registry verification fields."""
        table = self._counterparty_table(role)
        with self._transaction() as conn:
            conn.execute(
                f"""
                UPDATE {table}
                SET registry_name = ?, registry_address = ?, registry_checked_at = ?,
                    updated_at = ?
                WHERE id = ?
            """,
                (registry_name, registry_address, checked_at, _now(), counterparty_id),
            )

    def get_counterparty(self, role: str, counterparty_id: int) -> CounterpartyRecord | None:
        """Get a vendor/customer by ID."""
        table = self._counterparty_table(role)
        with self._transaction() as conn:
            row = conn.execute(
                f"SELECT * FROM {table} WHERE id = ?", (counterparty_id,)
            ).fetchone()
            return CounterpartyRecord.from_row(row) if row else None

    # Email connector methods

    _CONNECTOR_COLUMNS = {
        "label",
        "host",
        "port",
        "secure",
        "username",
        "password_encrypted",
        "folder",
        "poll_interval_minutes",
        "is_active",
        "consecutive_failures",
        "last_sync_error",
        "last_sync_status",
        "last_synced_uid",
    }

    def create_email_connector(
        self,
        tenant_id: str,
        label: str,
        host: str,
        port: int,
        secure: bool,
        username: str,
        password_encrypted: str,
        folder: str,
        poll_interval_minutes: int,
        created_by: str | None = None,
    ) -> EmailConnectorRecord:
        """Create an active connector in IDLE state."""
        now = _now()
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO email_connectors
                (tenant_id, label, host, port, secure, username, password_encrypted, folder,
                 poll_interval_minutes, last_sync_status, consecutive_failures, is_active,
                 created_by, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0, 1, ?, ?, ?)
            """,
                (
                    tenant_id,
                    label,
                    host,
                    port,
                    int(secure),
                    username,
                    password_encrypted,
                    folder,
                    poll_interval_minutes,
                    SyncStatus.IDLE.value,
                    created_by,
                    now,
                    now,
                ),
            )
            row = conn.execute(
                "SELECT * FROM email_connectors WHERE id = ?", (cursor.lastrowid,)
            ).fetchone()
            return EmailConnectorRecord.from_row(row)

    def get_email_connector(
        self, connector_id: int, tenant_id: str | None = None
    ) -> EmailConnectorRecord | None:
        """Get a connector, optionally scoped to a tenant."""
        with self._transaction() as conn:
            if tenant_id is None:
                row = conn.execute(
                    "SELECT * FROM email_connectors WHERE id = ?", (connector_id,)
                ).fetchone()
            else:
                row = conn.execute(
                    "SELECT * FROM email_connectors WHERE id = ? AND tenant_id = ?",
                    (connector_id, tenant_id),
                ).fetchone()
            return EmailConnectorRecord.from_row(row) if row else None

    def list_email_connectors(
        self, tenant_id: str | None = None, active_only: bool = False
    ) -> list[EmailConnectorRecord]:
        """List connectors (all tenants when tenant_id is None)."""
        query = "SELECT * FROM email_connectors WHERE 1 = 1"
        params: list[Any] = []
        if tenant_id is not None:
            query += " AND tenant_id = ?"
            params.append(tenant_id)
        if active_only:
            query += " AND is_active = 1"
        query += " ORDER BY id"
        with self._transaction() as conn:
            rows = conn.execute(query, params).fetchall()
            return [EmailConnectorRecord.from_row(row) for row in rows]

    def update_email_connector(self, connector_id: int, **changes: Any) -> None:
        """Update whitelisted connector columns."""
        unknown = set(changes) - self._CONNECTOR_COLUMNS
        if unknown:
            raise ValueError(f"Unknown connector fields: {sorted(unknown)}")
        if not changes:
            return

        values = []
        for key, value in changes.items():
            if key in ("secure", "is_active"):
                value = int(bool(value))
            elif isinstance(value, Enum):
                value = value.value
            values.append(value)
        assignments = ", ".join(f"{key} = ?" for key in changes)

        with self._transaction() as conn:
            conn.execute(
                f"UPDATE email_connectors SET {assignments}, updated_at = ? WHERE id = ?",
                (*values, _now(), connector_id),
            )

    def delete_email_connector(self, connector_id: int) -> None:
        """Delete a connector."""
        with self._transaction() as conn:
            conn.execute("DELETE FROM email_connectors WHERE id = ?", (connector_id,))

    def mark_connector_running(self, connector_id: int) -> None:
        """Enter RUNNING for a poll run."""
        self.update_email_connector(connector_id, last_sync_status=SyncStatus.RUNNING)

    def record_connector_success(self, connector_id: int, highest_uid: int | None) -> None:
        """Advance the cursor (if given), mark SUCCESS and reset the failure counter."""
        now = _now()
        with self._transaction() as conn:
            conn.execute(
                """
                UPDATE email_connectors
                SET last_synced_uid = COALESCE(?, last_synced_uid),
                    last_sync_at = ?,
                    last_sync_status = ?,
                    last_sync_error = NULL,
                    consecutive_failures = 0,
                    updated_at = ?
                WHERE id = ?
            """,
                (highest_uid, now, SyncStatus.SUCCESS.value, now, connector_id),
            )

    def record_connector_failure(
        self, connector_id: int, error: str, threshold: int
    ) -> tuple[int, bool]:
        """
        Count a failed run and deactivate at the threshold.

        Returns:
            (consecutive failures, whether this call deactivated the connector)
        """
        now = _now()
        with self._transaction(immediate=True) as conn:
            conn.execute(
                """
                UPDATE email_connectors
                SET consecutive_failures = consecutive_failures + 1,
                    last_sync_at = ?,
                    last_sync_status = ?,
                    last_sync_error = ?,
                    updated_at = ?
                WHERE id = ?
            """,
                (now, SyncStatus.ERROR.value, error, now, connector_id),
            )
            row = conn.execute(
                "SELECT consecutive_failures, is_active FROM email_connectors WHERE id = ?",
                (connector_id,),
            ).fetchone()
            if row is None:
                return 0, False
            failures = row["consecutive_failures"]
            deactivated = False
            if failures >= threshold and row["is_active"]:
                conn.execute(
                    "UPDATE email_connectors SET is_active = 0, updated_at = ? WHERE id = ?",
                    (now, connector_id),
                )
                deactivated = True
            return failures, deactivated

    # Job queue methods

    def enqueue_job(
        self,
        job_type: str,
        payload: dict[str, Any],
        max_attempts: int = 1,
        backoff_seconds: float = 0.0,
        job_key: str | None = None,
        delay_seconds: float = 0.0,
    ) -> int:
        """Add a one-off job. Returns the job ID."""
        now = utc_now()
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO job_queue
                (job_type, job_key, payload_json, status, attempts, max_attempts,
                 backoff_seconds, run_after, created_at, updated_at)
                VALUES (?, ?, ?, ?, 0, ?, ?, ?, ?, ?)
            """,
                (
                    job_type,
                    job_key,
                    json.dumps(payload),
                    JobStatus.PENDING.value,
                    max_attempts,
                    backoff_seconds,
                    to_timestamp(now + timedelta(seconds=delay_seconds)),
                    to_timestamp(now),
                    to_timestamp(now),
                ),
            )
            return cursor.lastrowid or 0

    def schedule_repeatable_job(
        self,
        job_type: str,
        job_key: str,
        payload: dict[str, Any],
        every_seconds: int,
        first_run_delay_seconds: float = 0.0,
    ) -> int:
        """
        Register a job that re-arms itself every `every_seconds`.

        A pending registration under the same key is replaced.
        """
        now = utc_now()
        with self._transaction(immediate=True) as conn:
            conn.execute(
                """
                DELETE FROM job_queue
                WHERE job_key = ? AND repeat_every_seconds IS NOT NULL AND status = ?
            """,
                (job_key, JobStatus.PENDING.value),
            )
            cursor = conn.execute(
                """
                INSERT INTO job_queue
                (job_type, job_key, payload_json, status, attempts, max_attempts,
                 backoff_seconds, run_after, repeat_every_seconds, created_at, updated_at)
                VALUES (?, ?, ?, ?, 0, 1, 0, ?, ?, ?, ?)
            """,
                (
                    job_type,
                    job_key,
                    json.dumps(payload),
                    JobStatus.PENDING.value,
                    to_timestamp(now + timedelta(seconds=first_run_delay_seconds)),
                    every_seconds,
                    to_timestamp(now),
                    to_timestamp(now),
                ),
            )
            return cursor.lastrowid or 0

    def remove_repeatable_jobs(self, job_key: str) -> int:
        """Remove every repeatable job registered under a key. Returns rows removed."""
        with self._transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM job_queue WHERE job_key = ? AND repeat_every_seconds IS NOT NULL",
                (job_key,),
            )
            return cursor.rowcount

    def remove_repeatable_jobs_by_type(self, job_type: str) -> int:
        """Remove every repeatable job of a type. Returns rows removed."""
        with self._transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM job_queue WHERE job_type = ? AND repeat_every_seconds IS NOT NULL",
                (job_type,),
            )
            return cursor.rowcount

    def claim_next_job(self, job_types: list[str] | None = None) -> JobRecord | None:
        """
        Atomically claim the oldest due PENDING job.

        The claimed job moves to PROCESSING with its attempt counter raised.
        """
        now = _now()
        query = "SELECT id FROM job_queue WHERE status = ? AND run_after <= ?"
        params: list[Any] = [JobStatus.PENDING.value, now]
        if job_types:
            query += f" AND job_type IN ({','.join('?' * len(job_types))})"
            params.extend(job_types)
        query += " ORDER BY run_after, id LIMIT 1"

        with self._transaction(immediate=True) as conn:
            row = conn.execute(query, params).fetchone()
            if row is None:
                return None
            conn.execute(
                """
                UPDATE job_queue
                SET status = ?, attempts = attempts + 1, locked_at = ?, updated_at = ?
                WHERE id = ? AND status = ?
            """,
                (JobStatus.PROCESSING.value, now, now, row["id"], JobStatus.PENDING.value),
            )
            claimed = conn.execute("SELECT * FROM job_queue WHERE id = ?", (row["id"],)).fetchone()
            return JobRecord.from_row(claimed)

    def complete_job(self, job_id: int) -> None:
        """Mark a job done; repeatable jobs are re-armed for their next run."""
        now = utc_now()
        with self._transaction(immediate=True) as conn:
            row = conn.execute("SELECT * FROM job_queue WHERE id = ?", (job_id,)).fetchone()
            if row is None:
                return
            job = JobRecord.from_row(row)
            if job.is_repeatable and not self._has_pending_twin(conn, job):
                self._rearm(conn, job, now, last_error=None)
            else:
                conn.execute(
                    """
                    UPDATE job_queue
                    SET status = ?, locked_at = NULL, completed_at = ?, updated_at = ?
                    WHERE id = ?
                """,
                    (JobStatus.COMPLETED.value, to_timestamp(now), to_timestamp(now), job_id),
                )

    def fail_job(self, job_id: int, error: str) -> JobStatus | None:
        """
        Record a failed attempt.

        One-off jobs go back to PENDING with exponential backoff
        (backoff_seconds * 2 ** (attempts - 1)) until max_attempts is used
        up, then FAILED. Repeatable jobs wait for their next interval.

        Returns:
            The job's new status (None if the job no longer exists)
        """
        now = utc_now()
        with self._transaction(immediate=True) as conn:
            row = conn.execute("SELECT * FROM job_queue WHERE id = ?", (job_id,)).fetchone()
            if row is None:
                return None
            job = JobRecord.from_row(row)

            if job.is_repeatable:
                if self._has_pending_twin(conn, job):
                    status = JobStatus.FAILED
                    conn.execute(
                        "UPDATE job_queue SET status = ?, last_error = ?, locked_at = NULL, "
                        "completed_at = ?, updated_at = ? WHERE id = ?",
                        (status.value, error, to_timestamp(now), to_timestamp(now), job_id),
                    )
                    return status
                self._rearm(conn, job, now, last_error=error)
                return JobStatus.PENDING

            if job.attempts < job.max_attempts:
                delay = job.backoff_seconds * (2 ** max(job.attempts - 1, 0))
                conn.execute(
                    """
                    UPDATE job_queue
                    SET status = ?, last_error = ?, locked_at = NULL, run_after = ?, updated_at = ?
                    WHERE id = ?
                """,
                    (
                        JobStatus.PENDING.value,
                        error,
                        to_timestamp(now + timedelta(seconds=delay)),
                        to_timestamp(now),
                        job_id,
                    ),
                )
                return JobStatus.PENDING

            conn.execute(
                """
                UPDATE job_queue
                SET status = ?, last_error = ?, locked_at = NULL, completed_at = ?, updated_at = ?
                WHERE id = ?
            """,
                (JobStatus.FAILED.value, error, to_timestamp(now), to_timestamp(now), job_id),
            )
            return JobStatus.FAILED

    @staticmethod
    def _has_pending_twin(conn: sqlite3.Connection, job: JobRecord) -> bool:
        """A newer registration under the same key supersedes this run."""
        row = conn.execute(
            """
            SELECT 1 FROM job_queue
            WHERE job_key = ? AND id != ? AND status = ? AND repeat_every_seconds IS NOT NULL
        """,
            (job.job_key, job.id, JobStatus.PENDING.value),
        ).fetchone()
        return row is not None

    @staticmethod
    def _rearm(
        conn: sqlite3.Connection, job: JobRecord, now: datetime, last_error: str | None
    ) -> None:
        conn.execute(
            """
            UPDATE job_queue
            SET status = ?, attempts = 0, locked_at = NULL, last_error = ?,
                run_after = ?, updated_at = ?
            WHERE id = ?
        """,
            (
                JobStatus.PENDING.value,
                last_error,
                to_timestamp(now + timedelta(seconds=job.repeat_every_seconds or 0)),
                to_timestamp(now),
                job.id,
            ),
        )

    def recover_stalled_jobs(self, lock_seconds: float, job_types: list[str] | None = None) -> int:
        """
        Release PROCESSING jobs locked longer than lock_seconds.

        Jobs with attempts left go back to PENDING, the rest become FAILED.

        Returns:
            Number of jobs released or failed
        """
        now = utc_now()
        cutoff = to_timestamp(now - timedelta(seconds=lock_seconds))
        type_filter = ""
        params: list[Any] = []
        if job_types:
            type_filter = f" AND job_type IN ({','.join('?' * len(job_types))})"
            params = list(job_types)

        with self._transaction(immediate=True) as conn:
            released = conn.execute(
                f"""
                UPDATE job_queue
                SET status = ?, locked_at = NULL, last_error = 'stalled', updated_at = ?
                WHERE status = ? AND locked_at < ?
                  AND (attempts < max_attempts OR repeat_every_seconds IS NOT NULL){type_filter}
            """,
                (
                    JobStatus.PENDING.value,
                    to_timestamp(now),
                    JobStatus.PROCESSING.value,
                    cutoff,
                    *params,
                ),
            ).rowcount
            failed = conn.execute(
                f"""
                UPDATE job_queue
                SET status = ?, locked_at = NULL, last_error = 'stalled', completed_at = ?,
                    updated_at = ?
                WHERE status = ? AND locked_at < ?{type_filter}
            """,
                (
                    JobStatus.FAILED.value,
                    to_timestamp(now),
                    to_timestamp(now),
                    JobStatus.PROCESSING.value,
                    cutoff,
                    *params,
                ),
            ).rowcount
            return released + failed

    def get_job(self, job_id: int) -> JobRecord | None:
        """Get a job by ID."""
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM job_queue WHERE id = ?", (job_id,)).fetchone()
            return JobRecord.from_row(row) if row else None

    def list_jobs(
        self,
        job_type: str | None = None,
        status: JobStatus | None = None,
        job_key: str | None = None,
    ) -> list[JobRecord]:
        """List jobs, oldest first."""
        query = "SELECT * FROM job_queue WHERE 1 = 1"
        params: list[Any] = []
        if job_type:
            query += " AND job_type = ?"
            params.append(job_type)
        if status:
            query += " AND status = ?"
            params.append(JobStatus(status).value)
        if job_key:
            query += " AND job_key = ?"
            params.append(job_key)
        query += " ORDER BY id"
        with self._transaction() as conn:
            rows = conn.execute(query, params).fetchall()
            return [JobRecord.from_row(row) for row in rows]

    def get_queue_stats(self) -> dict[str, int]:
        """Job counts per status."""
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT status, COUNT(*) AS n FROM job_queue GROUP BY status"
            ).fetchall()
            stats = {s.value: 0 for s in JobStatus}
            stats.update({row["status"]: row["n"] for row in rows})
            return stats

    # Audit methods

    def insert_audit_entry(
        self,
        tenant_id: str,
        actor_id: str | None,
        entity_type: str,
        entity_id: str,
        action: str,
        before: dict[str, Any] | None = None,
        after: dict[str, Any] | None = None,
    ) -> int:
        """Write one audit entry."""
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO audit_log
                (tenant_id, actor_id, entity_type, entity_id, action, before_json, after_json,
                 created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
                (
                    tenant_id,
                    actor_id,
                    entity_type,
                    str(entity_id),
                    action,
                    json.dumps(before, default=str) if before is not None else None,
                    json.dumps(after, default=str) if after is not None else None,
                    _now(),
                ),
            )
            return cursor.lastrowid or 0

    def list_audit_entries(
        self,
        tenant_id: str,
        entity_type: str | None = None,
        entity_id: str | None = None,
        action: str | None = None,
    ) -> list[AuditEntry]:
        """List a tenant's audit entries, oldest first."""
        query = "SELECT * FROM audit_log WHERE tenant_id = ?"
        params: list[Any] = [tenant_id]
        if entity_type:
            query += " AND entity_type = ?"
            params.append(entity_type)
        if entity_id is not None:
            query += " AND entity_id = ?"
            params.append(str(entity_id))
        if action:
            query += " AND action = ?"
            params.append(action)
        query += " ORDER BY id"
        with self._transaction() as conn:
            rows = conn.execute(query, params).fetchall()
            return [AuditEntry.from_row(row) for row in rows]


def normalize_name(name: str) -> str:
    """Name key for case-insensitive matching."""
    return " ".join(name.split()).casefold()


def _duplicate_conflict(existing: sqlite3.Row | None) -> ConflictError:
    if existing is None:
        return ConflictError("Document with identical content already exists")
    return ConflictError(
        f"Document with identical content already exists: "
        f"#{existing['sequential_number']} (id {existing['id']})",
        existing_id=existing["id"],
    )
