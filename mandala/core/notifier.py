"""
Schedule Notifier - alerts when a scheduled task's start time arrives.

Read-only with respect to the planner: it only calls the task provider it
was given (normally ``coordinator.tasks_for_date``) and looks at
``start_time``, ``scheduled_date`` and ``is_completed``.
"""

import logging
import threading
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Set

from mandala.core.models import Task
from mandala.utils.config import get_notification_config
from mandala.utils.time_utils import hhmm_to_minutes

logger = logging.getLogger(__name__)

TaskProvider = Callable[[str], List[Task]]
AlertCallback = Callable[[Task], None]


class ScheduleNotifier:
    """
    Polls for tasks whose start minute has come.

    Each (task id, start time) pair alerts once per notifier lifetime, so
    rescheduling a task to a new time arms it again. A snoozed task stays
    quiet until the snooze expires and is then reminded once more.
    """

    def __init__(
        self,
        task_provider: TaskProvider,
        on_alert: Optional[AlertCallback] = None,
        poll_interval: Optional[float] = None,
        snooze_minutes: Optional[int] = None,
        match_window_minutes: Optional[int] = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        cfg = get_notification_config()
        self.task_provider = task_provider
        self.poll_interval = poll_interval if poll_interval is not None else cfg["poll_interval_seconds"]
        self.snooze_minutes = snooze_minutes if snooze_minutes is not None else cfg["snooze_minutes"]
        self.match_window = (
            match_window_minutes if match_window_minutes is not None else cfg["match_window_minutes"]
        )
        self._clock = clock
        self._callbacks: List[AlertCallback] = [on_alert] if on_alert else []
        self._alerted: Set[str] = set()
        self._snoozed: Dict[str, datetime] = {}
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def add_callback(self, callback: AlertCallback) -> None:
        self._callbacks.append(callback)

    # ── Matching ─────────────────────────────────────────────────────

    def due_tasks(self, now: Optional[datetime] = None) -> List[Task]:
        """Tasks due at *now* that have not alerted yet. Does not mark them."""
        now = now or self._clock()
        today = now.date().isoformat()
        current = now.hour * 60 + now.minute
        due: List[Task] = []
        with self._lock:
            for task in self.task_provider(today):
                if task.is_completed or not task.start_time or task.scheduled_date != today:
                    continue
                until = self._snoozed.get(task.id)
                if until is not None:
                    # An expired snooze reminds again regardless of the window.
                    if now >= until:
                        due.append(task)
                    continue
                if self._key(task) in self._alerted:
                    continue
                try:
                    start = hhmm_to_minutes(task.start_time)
                except ValueError:
                    logger.warning("Task %s has malformed start time %r", task.id, task.start_time)
                    continue
                if start <= current < start + self.match_window:
                    due.append(task)
        return due

    def check(self, now: Optional[datetime] = None) -> List[Task]:
        """Alert every due task once. Returns the tasks alerted."""
        due = self.due_tasks(now)
        for task in due:
            with self._lock:
                self._alerted.add(self._key(task))
                self._snoozed.pop(task.id, None)
            logger.info("Task due: %s at %s", task.title, task.start_time)
            for callback in list(self._callbacks):
                try:
                    callback(task)
                except Exception:
                    logger.exception("Alert callback %r failed for task %s", callback, task.id)
        return due

    @staticmethod
    def _key(task: Task) -> str:
        return f"{task.id}-{task.start_time}"

    # ── Snooze ───────────────────────────────────────────────────────

    def snooze(self, task_id: str, minutes: Optional[int] = None, now: Optional[datetime] = None) -> datetime:
        """Silence a task for *minutes* (default from config), then remind again.

        Returns the time the snooze ends.
        """
        now = now or self._clock()
        until = now + timedelta(minutes=self.snooze_minutes if minutes is None else minutes)
        with self._lock:
            self._snoozed[task_id] = until
        logger.info("Snoozed task %s until %s", task_id, until.strftime("%H:%M"))
        return until

    def clear_snooze(self, task_id: str) -> None:
        with self._lock:
            self._snoozed.pop(task_id, None)

    # ── Polling thread ───────────────────────────────────────────────

    def start(self) -> None:
        """Check now, then every ``poll_interval`` seconds on a daemon thread."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="schedule-notifier", daemon=True)
        self._thread.start()
        logger.info("Schedule notifier started (every %.0fs)", self.poll_interval)

    def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                self.check()
            except Exception:
                logger.exception("Schedule check failed")
            self._stop.wait(self.poll_interval)

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
