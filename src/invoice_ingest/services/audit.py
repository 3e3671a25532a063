"""
Non-blocking audit sink.

Audit entries are written on a single background thread. A failed write
never reaches the caller; it is logged and counted so it stays observable.
"""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Any

from ..state_store.sqlite_store import StateStore

logger = logging.getLogger(__name__)


class AuditSink:
    """
    Fire-and-forget audit channel.

    Usage:
        audit = AuditSink(store)
        audit.append("tenant-a", "user-1", "Document", 42, "UPLOAD", after={...})
        audit.flush()   # tests / shutdown
        audit.close()
    """

    def __init__(self, store: StateStore):
        self.store = store
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="audit")
        self._lock = threading.Lock()
        self._pending: set[Future] = set()
        self.failures = 0
        self.written = 0

    def append(
        self,
        tenant_id: str,
        actor_id: str | None,
        entity_type: str,
        entity_id: Any,
        action: str,
        before: dict[str, Any] | None = None,
        after: dict[str, Any] | None = None,
    ) -> None:
        """Queue an audit entry. Never raises."""
        entry = (tenant_id, actor_id, entity_type, str(entity_id), action, before, after)
        try:
            future = self._executor.submit(self._write, entry)
        except RuntimeError as e:
            # Executor already shut down
            self._record_failure(entry, e)
            return

        with self._lock:
            self._pending.add(future)
        future.add_done_callback(self._forget)

    def _write(self, entry: tuple) -> None:
        try:
            self.store.insert_audit_entry(*entry)
        except Exception as e:
            self._record_failure(entry, e)
            return
        with self._lock:
            self.written += 1

    def _forget(self, future: Future) -> None:
        with self._lock:
            self._pending.discard(future)

    def _record_failure(self, entry: tuple, error: BaseException) -> None:
        with self._lock:
            self.failures += 1
        _, _, entity_type, entity_id, action, _, _ = entry
        logger.warning(f"Audit write failed ({action} {entity_type} {entity_id}): {error}")

    def flush(self, timeout: float | None = 10.0) -> None:
        """Wait until queued entries are written (or failed)."""
        with self._lock:
            pending = list(self._pending)
        if pending:
            wait(pending, timeout=timeout)

    def close(self) -> None:
        """Flush and stop the background thread."""
        self.flush()
        self._executor.shutdown(wait=True)
