"""
Persistence Dispatcher - hands coordinator changes to a storage backend
without blocking the core.

The dispatcher subscribes to a :class:`MutationCoordinator`. On each Change
it snapshots the records it needs (on the caller's thread, so the snapshot
is consistent) and queues backend calls for a single worker thread.

Failure policy: local state is never rolled back. Each call is retried with
exponential backoff; repeated failures open a circuit breaker so a dead
backend is not hammered. A call that finally fails becomes a
:class:`PersistenceError` on the error channel (``errors`` plus any
``on_error`` callbacks, which run on the worker thread).
"""

import logging
import queue
import threading
from typing import Any, Callable, Dict, List, Optional

from mandala.core.coordinator import Change, MutationCoordinator
from mandala.core.errors import PersistenceError
from mandala.core.resilience import CircuitBreaker, retry_with_backoff
from mandala.persistence.backend import PersistenceBackend
from mandala.utils.config import get_persistence_config

logger = logging.getLogger(__name__)

ErrorCallback = Callable[[PersistenceError], None]

_SAVE_PLAN = "save_plan"


class PersistenceDispatcher:
    """Queue + worker thread between the coordinator and a backend."""

    def __init__(
        self,
        backend: PersistenceBackend,
        config: Optional[Dict[str, Any]] = None,
        on_error: Optional[ErrorCallback] = None,
    ) -> None:
        self.backend = backend
        cfg = dict(get_persistence_config())
        cfg.update(config or {})
        self._retry = retry_with_backoff(
            max_retries=int(cfg["max_retries"]),
            initial_delay=float(cfg["initial_delay"]),
            backoff_factor=float(cfg["backoff_factor"]),
            max_delay=float(cfg["max_delay"]),
        )
        self.breaker = CircuitBreaker(
            failure_threshold=int(cfg["failure_threshold"]),
            recovery_timeout=float(cfg["recovery_timeout"]),
        )

        self.errors: List[PersistenceError] = []
        self._error_callbacks: List[ErrorCallback] = [on_error] if on_error else []
        self._coordinator: Optional[MutationCoordinator] = None
        self._unsubscribe: Optional[Callable[[], None]] = None

        self._queue: "queue.Queue[Optional[tuple]]" = queue.Queue()
        self._plan_lock = threading.Lock()
        self._pending_plan: Optional[List[Dict[str, Any]]] = None
        self._closed = False
        self._worker = threading.Thread(target=self._run, name="persistence-dispatcher", daemon=True)
        self._worker.start()

    # ── Wiring ───────────────────────────────────────────────────────

    def attach(self, coordinator: MutationCoordinator) -> None:
        """Subscribe to *coordinator*'s changes."""
        if self._unsubscribe is not None:
            self._unsubscribe()
        self._coordinator = coordinator
        self._unsubscribe = coordinator.subscribe(self.on_change)

    def add_error_callback(self, callback: ErrorCallback) -> None:
        self._error_callbacks.append(callback)

    # ── Enqueue (caller's thread) ────────────────────────────────────

    def on_change(self, change: Change) -> None:
        """Turn one Change into queued backend calls."""
        if self._closed:
            logger.warning("Dispatcher closed; dropping %s", change.action)
            return
        coord = self._coordinator
        if coord is None:
            raise RuntimeError("PersistenceDispatcher.on_change called before attach()")

        created_ids = {t.id for t in change.created}
        for task in change.created:
            if task.id not in change.deleted:
                self._queue.put(("create_task", self.backend.create_task, coord.task_record(task.id)))
        for task_id, patch in change.updated.items():
            if task_id not in created_ids and task_id not in change.deleted:
                self._queue.put(("update_task", self.backend.update_task, task_id, dict(patch)))
        for task_id in change.deleted:
            if task_id not in created_ids:
                self._queue.put(("delete_task", self.backend.delete_task, task_id))
        for session in change.sessions:
            self._queue.put(("save_focus_session", self.backend.save_focus_session, session.to_dict()))
        if change.plan_changed:
            self.schedule_plan_save(coord.plan_records())

    def schedule_plan_save(self, records: List[Dict[str, Any]]) -> None:
        # Only the newest snapshot is written; one queued save is enough.
        with self._plan_lock:
            already_queued = self._pending_plan is not None
            self._pending_plan = records
        if not already_queued:
            self._queue.put((_SAVE_PLAN,))

    # ── Worker thread ────────────────────────────────────────────────

    def _run(self) -> None:
        while True:
            job = self._queue.get()
            try:
                if job is None:
                    return
                if job[0] == _SAVE_PLAN:
                    with self._plan_lock:
                        records, self._pending_plan = self._pending_plan, None
                    if records is not None:
                        self._execute(_SAVE_PLAN, self.backend.save_plan, records)
                else:
                    self._execute(job[0], job[1], *job[2:])
            finally:
                self._queue.task_done()

    def _execute(self, operation: str, func: Callable[..., Any], *args: Any) -> None:
        try:
            self.breaker.call(self._retry(func), *args)
            logger.debug("Persisted %s", operation)
        except Exception as e:
            self._report(PersistenceError(operation, e))

    def _report(self, error: PersistenceError) -> None:
        logger.error("%s", error)
        self.errors.append(error)
        for callback in list(self._error_callbacks):
            try:
                callback(error)
            except Exception:
                logger.exception("Persistence error callback %r failed", callback)

    # ── Lifecycle ────────────────────────────────────────────────────

    def flush(self, timeout: Optional[float] = None) -> bool:
        """Block until every queued call has run. False on timeout."""
        with self._queue.all_tasks_done:
            return self._queue.all_tasks_done.wait_for(lambda: self._queue.unfinished_tasks == 0, timeout)

    def close(self, timeout: Optional[float] = 10.0) -> None:
        """Drain the queue, stop the worker and detach from the coordinator."""
        if self._closed:
            return
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self._closed = True
        self._queue.put(None)
        self._worker.join(timeout)
        if self._worker.is_alive():
            logger.warning("Persistence worker still busy after %.1fs", timeout or 0)
