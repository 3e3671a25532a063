"""
Job Queue Service.

Thin policy layer over the job_queue table of the StateStore.

Features:
- Extraction jobs with bounded attempts and exponential backoff
- Repeatable mailbox sync jobs keyed "email-sync-{connector_id}"
- One-off manual sync jobs keyed "manual-sync-{connector_id}-{timestamp}"
- Stalled job recovery (lock timeout)
"""

import logging
from datetime import datetime, timezone
from typing import Any

from ..config import QueueConfig
from ..state_store.sqlite_store import JobRecord, JobStatus, StateStore

logger = logging.getLogger(__name__)

PROCESS_DOCUMENT = "process-document"
SYNC_CONNECTOR = "sync-connector"


def connector_schedule_key(connector_id: int) -> str:
    """Key of a connector's repeatable sync job."""
    return f"email-sync-{connector_id}"


class JobQueue:
    """
    Durable at-least-once queue.

    Delivery is at-least-once: a job whose worker dies is handed out again
    after the lock timeout, so handlers must tolerate redelivery.
    """

    def __init__(self, store: StateStore, config: QueueConfig | None = None):
        self.store = store
        self.config = config or QueueConfig()

    def enqueue(
        self,
        job_type: str,
        payload: dict[str, Any],
        max_attempts: int | None = None,
        backoff_seconds: float | None = None,
        job_key: str | None = None,
        delay_seconds: float = 0.0,
    ) -> int:
        """Add a one-off job; attempts and backoff default per job type."""
        if max_attempts is None:
            max_attempts = (
                self.config.extraction_attempts
                if job_type == PROCESS_DOCUMENT
                else self.config.email_sync_attempts
            )
        if backoff_seconds is None:
            backoff_seconds = (
                self.config.extraction_backoff_seconds if job_type == PROCESS_DOCUMENT else 0.0
            )
        job_id = self.store.enqueue_job(
            job_type,
            payload,
            max_attempts=max_attempts,
            backoff_seconds=backoff_seconds,
            job_key=job_key,
            delay_seconds=delay_seconds,
        )
        logger.debug(f"Enqueued {job_type} job #{job_id}")
        return job_id

    def enqueue_document(
        self,
        document_id: int,
        tenant_id: str,
        storage_path: str,
        mime_type: str,
        direction: str,
    ) -> int:
        """Queue extraction for a document."""
        return self.enqueue(
            PROCESS_DOCUMENT,
            {
                "document_id": document_id,
                "tenant_id": tenant_id,
                "storage_path": storage_path,
                "mime_type": mime_type,
                "direction": direction,
            },
        )

    def schedule_connector(self, connector_id: int, tenant_id: str, interval_minutes: int) -> int:
        """(Re-)register a connector's periodic sync."""
        job_id = self.store.schedule_repeatable_job(
            SYNC_CONNECTOR,
            connector_schedule_key(connector_id),
            {"connector_id": connector_id, "tenant_id": tenant_id},
            every_seconds=interval_minutes * 60,
        )
        logger.info(f"Scheduled sync for connector {connector_id} every {interval_minutes} min")
        return job_id

    def unschedule_connector(self, connector_id: int) -> int:
        """Remove a connector's periodic sync."""
        removed = self.store.remove_repeatable_jobs(connector_schedule_key(connector_id))
        if removed:
            logger.info(f"Removed scheduled sync for connector {connector_id}")
        return removed

    def clear_connector_schedules(self) -> int:
        """Remove all periodic connector syncs."""
        return self.store.remove_repeatable_jobs_by_type(SYNC_CONNECTOR)

    def enqueue_manual_sync(self, connector_id: int, tenant_id: str) -> int:
        """Queue a one-off sync run."""
        stamp = int(datetime.now(timezone.utc).timestamp() * 1000)
        return self.enqueue(
            SYNC_CONNECTOR,
            {"connector_id": connector_id, "tenant_id": tenant_id, "manual": True},
            job_key=f"manual-sync-{connector_id}-{stamp}",
        )

    def claim(self, job_types: list[str] | None = None) -> JobRecord | None:
        return self.store.claim_next_job(job_types)

    def complete(self, job: JobRecord) -> None:
        self.store.complete_job(job.id)

    def fail(self, job: JobRecord, error: str) -> JobStatus | None:
        status = self.store.fail_job(job.id, error)
        if status == JobStatus.FAILED:
            logger.error(f"Job #{job.id} ({job.job_type}) failed permanently: {error}")
        elif status == JobStatus.PENDING:
            logger.warning(f"Job #{job.id} ({job.job_type}) failed, will retry: {error}")
        return status

    def recover_stalled(self) -> int:
        """Hand out jobs whose worker disappeared."""
        recovered = self.store.recover_stalled_jobs(
            self.config.lock_seconds, job_types=[PROCESS_DOCUMENT]
        )
        recovered += self.store.recover_stalled_jobs(
            self.config.email_lock_seconds, job_types=[SYNC_CONNECTOR]
        )
        if recovered:
            logger.warning(f"Recovered {recovered} stalled jobs")
        return recovered

    def stats(self) -> dict[str, int]:
        return self.store.get_queue_stats()
