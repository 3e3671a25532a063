"""Tests for the durable job queue."""

import pytest

from conftest import TENANT
from invoice_ingest.config import QueueConfig
from invoice_ingest.services.job_queue import (
    PROCESS_DOCUMENT,
    SYNC_CONNECTOR,
    JobQueue,
    connector_schedule_key,
)
from invoice_ingest.state_store import JobStatus


def _backdate_lock(store, job_id: int) -> None:
    with store._transaction() as conn:
        conn.execute(
            "UPDATE job_queue SET locked_at = ? WHERE id = ?",
            ("2000-01-01T00:00:00.000000Z", job_id),
        )


class TestExtractionJobs:
    """One-off jobs with bounded attempts."""

    def test_enqueue_document_defaults(self, queue, store):
        job_id = queue.enqueue_document(
            7, TENANT, "tenant-a/inbox/x.pdf", "application/pdf", "INCOMING"
        )

        job = store.get_job(job_id)
        assert job.job_type == PROCESS_DOCUMENT
        assert job.status == JobStatus.PENDING
        assert job.max_attempts == 3
        assert job.backoff_seconds == 2.0
        assert job.payload == {
            "document_id": 7,
            "tenant_id": TENANT,
            "storage_path": "tenant-a/inbox/x.pdf",
            "mime_type": "application/pdf",
            "direction": "INCOMING",
        }
        assert not job.is_repeatable

    def test_claim_is_exclusive(self, queue):
        queue.enqueue(PROCESS_DOCUMENT, {"document_id": 1})

        job = queue.claim([PROCESS_DOCUMENT])
        assert job.status == JobStatus.PROCESSING
        assert job.attempts == 1
        assert queue.claim([PROCESS_DOCUMENT]) is None

    def test_claim_filters_by_type(self, queue):
        queue.enqueue(PROCESS_DOCUMENT, {"document_id": 1})
        assert queue.claim([SYNC_CONNECTOR]) is None
        assert queue.claim([PROCESS_DOCUMENT]) is not None

    def test_complete(self, queue, store):
        job_id = queue.enqueue(PROCESS_DOCUMENT, {"document_id": 1})
        queue.complete(queue.claim())

        job = store.get_job(job_id)
        assert job.status == JobStatus.COMPLETED
        assert job.completed_at is not None

    def test_failure_backs_off(self, queue, store):
        """A failed attempt is retried later, not immediately."""
        queue.enqueue_document(1, TENANT, "p", "application/pdf", "INCOMING")
        job = queue.claim()

        assert queue.fail(job, "extraction timeout") == JobStatus.PENDING
        retried = store.get_job(job.id)
        assert retried.last_error == "extraction timeout"
        assert retried.run_after > retried.updated_at
        assert queue.claim() is None

    def test_failure_is_final_after_max_attempts(self, queue, store):
        queue.enqueue(PROCESS_DOCUMENT, {"document_id": 1}, max_attempts=2, backoff_seconds=0)

        assert queue.fail(queue.claim(), "first") == JobStatus.PENDING
        second = queue.claim()
        assert second.attempts == 2
        assert queue.fail(second, "second") == JobStatus.FAILED
        assert store.get_job(second.id).status == JobStatus.FAILED
        assert queue.claim() is None


class TestConnectorSchedules:
    """Repeatable mailbox sync jobs."""

    def test_schedule_is_repeatable(self, queue, store):
        queue.schedule_connector(3, TENANT, 5)

        jobs = store.list_jobs(job_key=connector_schedule_key(3))
        assert len(jobs) == 1
        assert jobs[0].repeat_every_seconds == 300
        assert jobs[0].payload == {"connector_id": 3, "tenant_id": TENANT}

    def test_completion_rearms(self, queue, store):
        queue.schedule_connector(3, TENANT, 5)
        job = queue.claim([SYNC_CONNECTOR])
        queue.complete(job)

        rearmed = store.get_job(job.id)
        assert rearmed.status == JobStatus.PENDING
        assert rearmed.attempts == 0
        assert rearmed.run_after > rearmed.updated_at
        assert queue.claim([SYNC_CONNECTOR]) is None

    def test_failure_waits_for_next_interval(self, queue, store):
        queue.schedule_connector(3, TENANT, 5)
        job = queue.claim([SYNC_CONNECTOR])

        assert queue.fail(job, "login failed") == JobStatus.PENDING
        rearmed = store.get_job(job.id)
        assert rearmed.last_error == "login failed"
        assert rearmed.run_after > rearmed.updated_at

    def test_reschedule_replaces_registration(self, queue, store):
        queue.schedule_connector(3, TENANT, 5)
        queue.schedule_connector(3, TENANT, 15)

        jobs = store.list_jobs(job_key=connector_schedule_key(3))
        assert len(jobs) == 1
        assert jobs[0].repeat_every_seconds == 900

    def test_reschedule_during_run_keeps_one_registration(self, queue, store):
        """The running copy retires when a newer registration exists."""
        queue.schedule_connector(3, TENANT, 5)
        running = queue.claim([SYNC_CONNECTOR])
        queue.schedule_connector(3, TENANT, 10)
        queue.complete(running)

        pending = store.list_jobs(job_key=connector_schedule_key(3), status=JobStatus.PENDING)
        assert len(pending) == 1
        assert pending[0].repeat_every_seconds == 600
        assert store.get_job(running.id).status == JobStatus.COMPLETED

    def test_unschedule(self, queue, store):
        queue.schedule_connector(3, TENANT, 5)
        queue.schedule_connector(4, TENANT, 5)

        assert queue.unschedule_connector(3) == 1
        assert store.list_jobs(job_key=connector_schedule_key(3)) == []
        assert queue.clear_connector_schedules() == 1

    def test_manual_sync_is_one_off(self, queue, store):
        job_id = queue.enqueue_manual_sync(3, TENANT)

        job = store.get_job(job_id)
        assert job.job_type == SYNC_CONNECTOR
        assert not job.is_repeatable
        assert job.max_attempts == 1
        assert job.payload["manual"] is True
        assert job.job_key.startswith("manual-sync-3-")


class TestStalledJobs:
    """Jobs whose worker vanished are handed out again."""

    def test_stalled_job_is_released(self, queue, store):
        job_id = queue.enqueue_document(1, TENANT, "p", "application/pdf", "INCOMING")
        job = queue.claim()
        _backdate_lock(store, job.id)

        assert queue.recover_stalled() == 1
        released = store.get_job(job_id)
        assert released.status == JobStatus.PENDING
        assert released.last_error == "stalled"
        assert queue.claim().id == job_id

    def test_stalled_job_without_attempts_fails(self, queue, store):
        job_id = queue.enqueue(PROCESS_DOCUMENT, {"document_id": 1}, max_attempts=1)
        job = queue.claim()
        _backdate_lock(store, job.id)

        queue.recover_stalled()
        assert store.get_job(job_id).status == JobStatus.FAILED

    def test_fresh_lock_untouched(self, queue, store):
        queue.enqueue_document(1, TENANT, "p", "application/pdf", "INCOMING")
        job = queue.claim()

        assert queue.recover_stalled() == 0
        assert store.get_job(job.id).status == JobStatus.PROCESSING


class TestStats:
    def test_counts_per_status(self, store):
        queue = JobQueue(store, QueueConfig(extraction_attempts=1))
        queue.enqueue(PROCESS_DOCUMENT, {"document_id": 1})
        queue.enqueue(PROCESS_DOCUMENT, {"document_id": 2})
        queue.fail(queue.claim(), "boom")

        stats = queue.stats()
        assert stats["PENDING"] == 1
        assert stats["FAILED"] == 1
        assert stats["COMPLETED"] == 0


@pytest.mark.parametrize("job_type,attempts", [(PROCESS_DOCUMENT, 3), (SYNC_CONNECTOR, 1)])
def test_attempt_defaults_per_type(queue, store, job_type, attempts):
    job_id = queue.enqueue(job_type, {})
    assert store.get_job(job_id).max_attempts == attempts
