"""
Storage backends for plans, tasks and focus sessions.

``PersistenceBackend`` is the contract the dispatcher drives; any remote
store can implement it. ``JsonFileBackend`` keeps everything in JSON files
under the data directory and is what the launcher uses.
"""

import json
import logging
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

from mandala.utils.time_utils import normalize_date

logger = logging.getLogger(__name__)


class PersistenceBackend(Protocol):
    """Storage collaborator. Calls may block and may raise."""

    def create_task(self, record: Dict[str, Any]) -> Dict[str, Any]: ...

    def update_task(self, task_id: str, patch: Dict[str, Any]) -> Dict[str, Any]: ...

    def delete_task(self, task_id: str) -> None: ...

    def list_tasks_for_date(self, day: str) -> List[Dict[str, Any]]: ...

    def list_tasks(self) -> List[Dict[str, Any]]: ...

    def load_plan(self) -> Optional[List[Dict[str, Any]]]: ...

    def save_plan(self, records: List[Dict[str, Any]]) -> None: ...

    def save_focus_session(self, record: Dict[str, Any]) -> None: ...

    def list_focus_sessions(self) -> List[Dict[str, Any]]: ...


class JsonFileBackend:
    """
    Local JSON storage: ``plan.json`` (list of 9 grid records),
    ``tasks.json`` (task records keyed by id) and ``focus_sessions.json``
    (session records keyed by id). Writes are atomic.

    The in-memory copy only changes after its file write succeeded, so a
    failed call can be retried as-is.
    """

    def __init__(self, data_dir: Path) -> None:
        self.data_dir = Path(data_dir)
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self._plan_file = self.data_dir / "plan.json"
        self._tasks_file = self.data_dir / "tasks.json"
        self._sessions_file = self.data_dir / "focus_sessions.json"
        self._lock = threading.Lock()
        self._tasks: Dict[str, Dict[str, Any]] = self._read(self._tasks_file, {})
        self._sessions: Dict[str, Dict[str, Any]] = self._read(self._sessions_file, {})
        logger.info(
            "JSON backend ready at %s (%d tasks, %d focus sessions)",
            self.data_dir, len(self._tasks), len(self._sessions),
        )

    # ── File helpers ─────────────────────────────────────────────────

    def _read(self, path: Path, default: Any) -> Any:
        if not path.exists():
            return default
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)

    def _write(self, path: Path, data: Any) -> None:
        """Atomically write *data* as JSON."""
        tmp = path.with_suffix(".tmp")
        try:
            with open(tmp, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2, ensure_ascii=False)
            tmp.replace(path)
        finally:
            if tmp.exists():
                tmp.unlink()

    # ── Tasks ────────────────────────────────────────────────────────

    def create_task(self, record: Dict[str, Any]) -> Dict[str, Any]:
        with self._lock:
            task_id = record["id"]
            if task_id in self._tasks:
                raise ValueError(f"Task already stored: {task_id}")
            tasks = dict(self._tasks)
            tasks[task_id] = dict(record)
            self._write(self._tasks_file, tasks)
            self._tasks = tasks
            return dict(tasks[task_id])

    def update_task(self, task_id: str, patch: Dict[str, Any]) -> Dict[str, Any]:
        with self._lock:
            if task_id not in self._tasks:
                raise KeyError(f"Task not stored: {task_id}")
            tasks = dict(self._tasks)
            tasks[task_id] = dict(tasks[task_id], **patch)
            self._write(self._tasks_file, tasks)
            self._tasks = tasks
            return dict(tasks[task_id])

    def delete_task(self, task_id: str) -> None:
        with self._lock:
            if task_id not in self._tasks:
                return
            tasks = {k: v for k, v in self._tasks.items() if k != task_id}
            self._write(self._tasks_file, tasks)
            self._tasks = tasks

    def list_tasks_for_date(self, day: str) -> List[Dict[str, Any]]:
        key = normalize_date(day)
        with self._lock:
            return [dict(r) for r in self._tasks.values() if r.get("scheduledDate") == key]

    def list_tasks(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [dict(r) for r in self._tasks.values()]

    # ── Focus sessions ───────────────────────────────────────────────

    def save_focus_session(self, record: Dict[str, Any]) -> None:
        """Insert or replace one session record."""
        with self._lock:
            sessions = dict(self._sessions)
            sessions[record["id"]] = dict(record)
            self._write(self._sessions_file, sessions)
            self._sessions = sessions

    def list_focus_sessions(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [dict(r) for r in self._sessions.values()]

    # ── Plan ─────────────────────────────────────────────────────────

    def load_plan(self) -> Optional[List[Dict[str, Any]]]:
        with self._lock:
            data = self._read(self._plan_file, None)
        if data is not None and not isinstance(data, list):
            raise ValueError(f"{self._plan_file} does not hold a list of grid records")
        return data or None

    def save_plan(self, records: List[Dict[str, Any]]) -> None:
        with self._lock:
            self._write(self._plan_file, records)
