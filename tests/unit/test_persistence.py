"""
Unit tests for the JSON backend, the persistence dispatcher and sessions.

All dispatcher tests run with zero backoff delay so retries are instant.
"""

import json
import sys
import threading
from pathlib import Path

_root = Path(__file__).resolve().parent.parent.parent
if str(_root) not in sys.path:
    sys.path.insert(0, str(_root))

import pytest
from mandala.core.coordinator import MutationCoordinator
from mandala.core.errors import PersistenceError
from mandala.core.logger import ActionLogger
from mandala.persistence import JsonFileBackend, PersistenceDispatcher, open_session
from mandala.utils.config import DEFAULT_CATEGORIES

FAST = {"initial_delay": 0, "max_retries": 1, "failure_threshold": 100}


@pytest.fixture
def backend(tmp_path):
    return JsonFileBackend(tmp_path / "store")


@pytest.fixture
def action_logger(tmp_path):
    al = ActionLogger(base_dir=str(tmp_path / "logs"), capture_errors=False)
    yield al
    al.close()


def _session(backend, action_logger, **kwargs):
    return open_session(
        backend=backend,
        categories=DEFAULT_CATEGORIES,
        action_logger=action_logger,
        dispatcher_config=FAST,
        **kwargs,
    )


class FailingBackend(JsonFileBackend):
    """Fails the first ``failures`` calls of each task operation."""

    def __init__(self, data_dir, failures=10 ** 6):
        super().__init__(data_dir)
        self.failures = failures
        self.calls = 0

    def create_task(self, record):
        self.calls += 1
        if self.calls <= self.failures:
            raise ConnectionError("backend unreachable")
        return super().create_task(record)


class FlakyWriteBackend(JsonFileBackend):
    """The first ``failures`` writes of tasks.json raise OSError."""

    def __init__(self, data_dir, failures=1):
        super().__init__(data_dir)
        self.failures = failures

    def _write(self, path, data):
        if path.name == "tasks.json" and self.failures > 0:
            self.failures -= 1
            raise OSError("disk full")
        super()._write(path, data)


class GatedBackend(JsonFileBackend):
    """save_plan blocks on a gate so tests can pile up snapshots behind it."""

    def __init__(self, data_dir):
        super().__init__(data_dir)
        self.entered = threading.Event()
        self.gate = threading.Event()
        self.saved = []

    def save_plan(self, records):
        self.entered.set()
        self.gate.wait(5)
        self.saved.append(records)
        super().save_plan(records)


# ============================================================================
# JsonFileBackend
# ============================================================================

class TestJsonFileBackend:

    def test_task_crud(self, backend):
        backend.create_task({"id": "a", "title": "A", "scheduledDate": "2026-02-01"})
        backend.create_task({"id": "b", "title": "B", "scheduledDate": "2026-02-02"})
        backend.update_task("a", {"isCompleted": True})
        assert [r["id"] for r in backend.list_tasks_for_date("2026-02-01")] == ["a"]
        assert backend.list_tasks_for_date("2026-02-01")[0]["isCompleted"] is True
        backend.delete_task("b")
        assert [r["id"] for r in backend.list_tasks()] == ["a"]

    def test_duplicate_create(self, backend):
        backend.create_task({"id": "a", "title": "A"})
        with pytest.raises(ValueError):
            backend.create_task({"id": "a", "title": "again"})

    def test_update_missing(self, backend):
        with pytest.raises(KeyError):
            backend.update_task("ghost", {"title": "x"})

    def test_delete_missing_is_quiet(self, backend):
        backend.delete_task("ghost")

    def test_plan_roundtrip_and_reload(self, backend):
        assert backend.load_plan() is None
        records = MutationCoordinator.new(DEFAULT_CATEGORIES).plan_records()
        backend.save_plan(records)
        backend.create_task({"id": "a", "title": "A"})

        reopened = JsonFileBackend(backend.data_dir)
        assert reopened.load_plan() == records
        assert [r["id"] for r in reopened.list_tasks()] == ["a"]
        assert not list(backend.data_dir.glob("*.tmp"))

    def test_plan_file_must_be_list(self, backend):
        (backend.data_dir / "plan.json").write_text(json.dumps({"grids": []}), encoding="utf-8")
        with pytest.raises(ValueError):
            backend.load_plan()

    def test_failed_write_leaves_cache_untouched(self, tmp_path):
        backend = FlakyWriteBackend(tmp_path / "store")
        with pytest.raises(OSError):
            backend.create_task({"id": "a", "title": "A"})
        assert backend.list_tasks() == []
        backend.create_task({"id": "a", "title": "A"})

        backend.failures = 1
        with pytest.raises(OSError):
            backend.update_task("a", {"title": "B"})
        assert backend.list_tasks()[0]["title"] == "A"
        backend.failures = 1
        with pytest.raises(OSError):
            backend.delete_task("a")
        assert [r["id"] for r in backend.list_tasks()] == ["a"]
        assert [r["id"] for r in JsonFileBackend(backend.data_dir).list_tasks()] == ["a"]

    def test_focus_session_upsert(self, backend):
        backend.save_focus_session({"id": "s1", "taskId": "a", "duration": 25})
        backend.save_focus_session({"id": "s1", "taskId": None, "duration": 25})
        reopened = JsonFileBackend(backend.data_dir)
        assert reopened.list_focus_sessions() == [{"id": "s1", "taskId": None, "duration": 25}]


# ============================================================================
# Sessions and the dispatcher
# ============================================================================

class TestSession:

    def test_first_open_saves_skeleton(self, backend, action_logger):
        coord, dispatcher = _session(backend, action_logger)
        assert dispatcher.flush(timeout=5)
        dispatcher.close()
        assert len(backend.load_plan()) == 9

    def test_changes_reach_backend(self, backend, action_logger):
        coord, dispatcher = _session(backend, action_logger)
        task = coord.create_task("Run 5k", scheduled_date="2026-03-03", link_to=(0, 1)).task
        coord.toggle_task(task.id)
        coord.set_cell_text(4, 0, "Health")
        assert dispatcher.flush(timeout=5)
        dispatcher.close()

        stored = backend.list_tasks()
        assert len(stored) == 1
        assert stored[0]["isCompleted"] is True
        assert stored[0]["mandalartRef"] == {"gridIndex": 0, "cellIndex": 1}
        plan = backend.load_plan()
        assert plan[0]["title"] == "Health"
        assert plan[0]["linkedTaskIds"][1] == [task.id]
        assert dispatcher.errors == []

    def test_reopen_restores_state(self, backend, action_logger):
        coord, dispatcher = _session(backend, action_logger)
        task = coord.create_task("Read", scheduled_date="2026-03-03", link_to=(6, 2)).task
        coord.toggle_task(task.id)
        coord.add_todo(6, 2, "pick a book")
        dispatcher.flush(timeout=5)
        dispatcher.close()

        again, dispatcher2 = _session(backend, action_logger)
        dispatcher2.close()
        assert again.locate(task.id) == (6, 2)
        assert again.cell_progress(6, 2) == 100
        assert again.grid_progress(6) == 13
        assert [t.text for t in again.todos_for_cell(6, 2)] == ["pick a book"]

    def test_focus_sessions_persist_and_outlive_task(self, backend, action_logger):
        coord, dispatcher = _session(backend, action_logger)
        task = coord.create_task("Write", scheduled_date="2026-03-03").task
        coord.add_focus_session(
            "2026-03-03T09:00:00+00:00", "2026-03-03T09:50:00+00:00", task_id=task.id
        )
        coord.delete_task(task.id)
        assert dispatcher.flush(timeout=5)
        dispatcher.close()

        again, dispatcher2 = _session(backend, action_logger)
        dispatcher2.close()
        sessions = again.focus_sessions()
        assert [s.duration for s in sessions] == [50]
        assert backend.list_focus_sessions()[0]["taskId"] is None
        assert dispatcher.errors == []

    def test_relink_sends_ref_update(self, backend, action_logger):
        coord, dispatcher = _session(backend, action_logger)
        task = coord.create_task("x", scheduled_date="2026-03-03").task
        coord.link_task(task.id, 8, 8)
        coord.unlink_task(task.id)
        dispatcher.flush(timeout=5)
        dispatcher.close()
        assert backend.list_tasks()[0]["mandalartRef"] is None

    def test_delete_reaches_backend(self, backend, action_logger):
        coord, dispatcher = _session(backend, action_logger)
        task = coord.create_task("x", scheduled_date="2026-03-03").task
        coord.delete_task(task.id)
        dispatcher.flush(timeout=5)
        dispatcher.close()
        assert backend.list_tasks() == []


class TestFailures:

    def test_failure_reported_without_rollback(self, tmp_path, action_logger):
        backend = FailingBackend(tmp_path / "store")
        reported = []
        coord, dispatcher = _session(backend, action_logger, on_error=reported.append)
        task = coord.create_task("x", scheduled_date="2026-03-03").task
        assert dispatcher.flush(timeout=5)
        dispatcher.close()

        assert coord.get_task(task.id) is task
        assert backend.calls == 2  # first try + one retry
        assert len(reported) == 1
        assert isinstance(reported[0], PersistenceError)
        assert reported[0].operation == "create_task"
        assert isinstance(reported[0].cause, ConnectionError)
        assert dispatcher.errors == reported

    def test_transient_failure_retried(self, tmp_path, action_logger):
        backend = FailingBackend(tmp_path / "store", failures=1)
        coord, dispatcher = _session(backend, action_logger)
        coord.create_task("x", scheduled_date="2026-03-03")
        dispatcher.flush(timeout=5)
        dispatcher.close()
        assert dispatcher.errors == []
        assert len(backend.list_tasks()) == 1

    def test_retry_after_failed_write_persists_task(self, tmp_path, action_logger):
        backend = FlakyWriteBackend(tmp_path / "store")
        coord, dispatcher = _session(backend, action_logger)
        task = coord.create_task("x", scheduled_date="2026-03-03").task
        assert dispatcher.flush(timeout=5)
        dispatcher.close()
        assert dispatcher.errors == []
        stored = JsonFileBackend(backend.data_dir).list_tasks()
        assert [r["id"] for r in stored] == [task.id]

    def test_open_circuit_fails_fast(self, tmp_path, action_logger):
        backend = FailingBackend(tmp_path / "store")
        config = dict(FAST, max_retries=0, failure_threshold=1, recovery_timeout=3600)
        coord = MutationCoordinator.new(DEFAULT_CATEGORIES)
        dispatcher = PersistenceDispatcher(backend, config)
        dispatcher.attach(coord)
        coord.create_task("a", scheduled_date="2026-03-03")
        coord.create_task("b", scheduled_date="2026-03-03")
        dispatcher.flush(timeout=5)
        dispatcher.close()
        assert backend.calls == 1
        assert [e.operation for e in dispatcher.errors] == ["create_task", "create_task"]

    def test_failing_error_callback_is_contained(self, tmp_path, action_logger):
        def broken(error):
            raise RuntimeError("ui gone")

        backend = FailingBackend(tmp_path / "store")
        coord, dispatcher = _session(backend, action_logger, on_error=broken)
        coord.create_task("x", scheduled_date="2026-03-03")
        assert dispatcher.flush(timeout=5)
        dispatcher.close()
        assert len(dispatcher.errors) == 1


def test_plan_saves_coalesce(tmp_path):
    backend = GatedBackend(tmp_path / "store")
    coord = MutationCoordinator.new(DEFAULT_CATEGORIES)
    dispatcher = PersistenceDispatcher(backend, FAST)
    dispatcher.attach(coord)

    coord.set_cell_text(0, 0, "first")
    assert backend.entered.wait(5)
    for text in ("second", "third", "fourth"):
        coord.set_cell_text(0, 0, text)
    backend.gate.set()
    assert dispatcher.flush(timeout=5)
    dispatcher.close()

    assert len(backend.saved) == 2
    assert backend.saved[-1][0]["cells"][0] == "fourth"
    assert backend.load_plan()[0]["cells"][0] == "fourth"


def test_on_change_requires_attach(backend):
    from mandala.core.coordinator import Change

    dispatcher = PersistenceDispatcher(backend, FAST)
    try:
        with pytest.raises(RuntimeError):
            dispatcher.on_change(Change("create_task"))
    finally:
        dispatcher.close()


def test_flush_timeout_spawns_no_threads(tmp_path):
    backend = GatedBackend(tmp_path / "store")
    coord = MutationCoordinator.new(DEFAULT_CATEGORIES)
    dispatcher = PersistenceDispatcher(backend, FAST)
    dispatcher.attach(coord)

    coord.set_cell_text(0, 0, "blocked")
    assert backend.entered.wait(5)
    before = threading.active_count()
    for _ in range(3):
        assert dispatcher.flush(timeout=0.01) is False
    assert threading.active_count() == before

    backend.gate.set()
    assert dispatcher.flush(timeout=5) is True
    dispatcher.close()
