"""
State store for documents, versions, connectors, jobs and audit entries.
"""

from .sqlite_store import (
    AuditEntry,
    Channel,
    CounterpartyRecord,
    DocumentRecord,
    DocumentStatus,
    EmailConnectorRecord,
    ExtractedVersionRecord,
    JobRecord,
    JobStatus,
    StateStore,
    SyncStatus,
    ValidationResultRecord,
)

__all__ = [
    "AuditEntry",
    "Channel",
    "CounterpartyRecord",
    "DocumentRecord",
    "DocumentStatus",
    "EmailConnectorRecord",
    "ExtractedVersionRecord",
    "JobRecord",
    "JobStatus",
    "StateStore",
    "SyncStatus",
    "ValidationResultRecord",
]
