"""
Queue worker loop and thread pool.

A JobWorker claims one due job at a time, dispatches it to the handler for
its type and reports the outcome to the queue. A handler exception fails
the job (retry/backoff is the queue's business) and never ends the loop.
"""

import logging
import threading
from collections.abc import Callable
from typing import Any

from ..services.job_queue import JobQueue
from ..state_store.sqlite_store import JobRecord

logger = logging.getLogger(__name__)

JobHandler = Callable[[JobRecord], Any]


class JobWorker:
    """Claims and runs jobs of the types it has handlers for."""

    def __init__(
        self,
        queue: JobQueue,
        handlers: dict[str, JobHandler],
        poll_interval: float = 1.0,
        name: str = "worker",
    ):
        self.queue = queue
        self.handlers = handlers
        self.poll_interval = poll_interval
        self.name = name
        self.processed = 0
        self.failed = 0
        self._counter_lock = threading.Lock()

    def run_once(self) -> bool:
        """
        Run at most one job.

        Returns:
            True if a job was claimed
        """
        job = self.queue.claim(list(self.handlers))
        if job is None:
            return False

        handler = self.handlers[job.job_type]
        logger.debug(f"{self.name}: running job #{job.id} ({job.job_type}, attempt {job.attempts})")
        try:
            handler(job)
        except Exception as e:
            with self._counter_lock:
                self.failed += 1
            self.queue.fail(job, str(e) or type(e).__name__)
        else:
            with self._counter_lock:
                self.processed += 1
            self.queue.complete(job)
        return True

    def run_forever(self, stop_event: threading.Event) -> None:
        """Loop until stop_event is set; sleeps when the queue is empty."""
        logger.info(f"{self.name}: started for {sorted(self.handlers)}")
        while not stop_event.is_set():
            try:
                claimed = self.run_once()
            except Exception as e:
                # Queue/database trouble: back off and keep the loop alive
                logger.exception(f"{self.name}: queue error: {e}")
                claimed = False
            if not claimed:
                stop_event.wait(self.poll_interval)
        logger.info(f"{self.name}: stopped ({self.processed} done, {self.failed} failed)")


class WorkerPool:
    """Runs JobWorkers on daemon threads."""

    def __init__(self):
        self.stop_event = threading.Event()
        self._threads: list[threading.Thread] = []
        self.workers: list[JobWorker] = []

    def add(self, worker: JobWorker, count: int = 1) -> None:
        """Start `count` threads running the worker's loop."""
        for index in range(count):
            thread = threading.Thread(
                target=worker.run_forever,
                args=(self.stop_event,),
                name=f"{worker.name}-{index + 1}",
                daemon=True,
            )
            self._threads.append(thread)
            thread.start()
        self.workers.append(worker)

    def stop(self, timeout: float | None = 30.0) -> None:
        """Signal all workers and wait for their current job to finish."""
        self.stop_event.set()
        for thread in self._threads:
            thread.join(timeout=timeout)
        self._threads.clear()

    def wait(self) -> None:
        """Block until stop() is called."""
        while not self.stop_event.wait(1.0):
            pass
