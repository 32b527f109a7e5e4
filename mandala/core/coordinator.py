"""
Mutation Coordinator - the single entry point for every plan/task edit.

Each call validates its input before touching anything, then updates the
entity store, the link index and the derived progress together, returns a
:class:`Change` describing what moved and hands that same Change to every
subscriber (renderers, the persistence dispatcher) before returning.

Every call, including one rejected by validation, is written to the action
log when one is attached.

Progress is recomputed only for the cells a mutation touched and the grids
that own them.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from mandala.core.entity_store import CategoryLike, EntityStore, create_plan
from mandala.core.errors import ConversionError, MandalaError, ValidationError
from mandala.core.link_index import LinkIndex
from mandala.core.logger import ActionLogger
from mandala.core.models import (
    RECURRENCE_TYPES,
    Category,
    FocusSession,
    Plan,
    Position,
    RecurrenceRule,
    Task,
    Todo,
    check_index,
    check_position,
    new_id,
)
from mandala.core.progress import cell_progress, grid_progress, plan_progress
from mandala.core.promotion import convert_todo_to_task
from mandala.utils.config import get_plan_config
from mandala.utils.time_utils import (
    is_valid_hhmm,
    minutes_between,
    normalize_date,
    now_local,
    parse_timestamp,
    today_str,
)

logger = logging.getLogger(__name__)

Subscriber = Callable[["Change"], None]

# Fields update_task() accepts, mapped to their storage record keys.
_TASK_FIELDS = {
    "title": "title",
    "description": "description",
    "scheduled_date": "scheduledDate",
    "start_time": "startTime",
    "duration": "duration",
    "is_completed": "isCompleted",
    "recurrence": "recurrence",
}

# Everything the coordinator may write on a task (timers are not user-editable).
_RECORD_KEYS = dict(_TASK_FIELDS, timer_started_at="timerStartedAt", actual_duration="actualDuration")


@dataclass
class Change:
    """What one coordinator call changed."""

    action: str
    task: Optional[Task] = None
    todo: Optional[Todo] = None
    created: List[Task] = field(default_factory=list)
    updated: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    deleted: List[str] = field(default_factory=list)
    cells: List[Position] = field(default_factory=list)
    grids: List[int] = field(default_factory=list)
    plan_changed: bool = False
    # Focus sessions created or modified (persisted as whole records)
    sessions: List[FocusSession] = field(default_factory=list)

    @property
    def is_noop(self) -> bool:
        return not (
            self.created or self.updated or self.deleted or self.cells
            or self.plan_changed or self.sessions
        )


def _validate_title(title: Any) -> str:
    if not isinstance(title, str) or not title.strip():
        raise ValidationError("Task title must be a non-blank string")
    return title.strip()


def _validate_date(value: Any) -> Optional[str]:
    try:
        return normalize_date(value)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"Invalid date: {value!r}") from e


def _require_date(value: Any) -> date:
    day = _validate_date(value)
    if day is None:
        raise ValidationError("A date is required")
    return date.fromisoformat(day)


def _validate_start_time(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    if not isinstance(value, str) or not is_valid_hhmm(value):
        raise ValidationError(f"Invalid start time (expected HH:MM): {value!r}")
    return value


def _validate_duration(value: Any) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValidationError(f"Duration must be a positive number of minutes: {value!r}")
    return value


def _validate_minutes(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ValidationError(f"Minutes must be a non-negative integer: {value!r}")
    return value


def _validate_timestamp(value: Any) -> datetime:
    try:
        return parse_timestamp(value)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"Invalid timestamp: {value!r}") from e


def _validate_recurrence(value: Any) -> Optional[RecurrenceRule]:
    """Accept a RecurrenceRule or its record dict. None clears the routine."""
    if value is None:
        return None
    if isinstance(value, dict):
        value = RecurrenceRule.from_dict(value)
    if not isinstance(value, RecurrenceRule):
        raise ValidationError(f"Invalid recurrence: {value!r}")
    if value.type not in RECURRENCE_TYPES:
        raise ValidationError(f"Recurrence type must be one of {', '.join(RECURRENCE_TYPES)}")
    if isinstance(value.interval, bool) or not isinstance(value.interval, int) or value.interval < 1:
        raise ValidationError(f"Recurrence interval must be a positive integer: {value.interval!r}")
    days = value.days_of_week
    if any(isinstance(d, bool) or not isinstance(d, int) or not 0 <= d <= 6 for d in days):
        raise ValidationError(f"Days of week must be 0 (Sunday) to 6: {days!r}")
    return RecurrenceRule(
        type=value.type,
        days_of_week=sorted(set(days)),
        interval=value.interval,
        end_date=_validate_date(value.end_date),
    )


class MutationCoordinator:
    """
    Owns one plan session: store + link index + progress + subscribers.

    Construct with an :class:`EntityStore`, or use :meth:`new` /
    :meth:`from_records`. Not thread-safe; calls are expected one at a time.
    """

    def __init__(self, store: EntityStore, action_logger: Optional[ActionLogger] = None) -> None:
        self.store = store
        self.index = LinkIndex(store.plan)
        self.action_logger = action_logger
        self._subscribers: List[Subscriber] = []
        self._prune_dangling_links()
        self._refresh(pos for pos, _ in store.plan.iter_cells())

    @classmethod
    def new(
        cls,
        categories: Iterable[CategoryLike],
        action_logger: Optional[ActionLogger] = None,
    ) -> "MutationCoordinator":
        """Start a fresh session on an empty plan."""
        return cls(EntityStore(create_plan(categories)), action_logger)

    @classmethod
    def from_records(
        cls,
        plan_records: Optional[List[Dict[str, Any]]],
        task_records: Optional[List[Dict[str, Any]]],
        categories: Iterable[CategoryLike],
        action_logger: Optional[ActionLogger] = None,
        session_records: Optional[List[Dict[str, Any]]] = None,
    ) -> "MutationCoordinator":
        """Restore a session from storage records.

        An empty/missing plan yields a fresh plan. Links to tasks that no
        longer exist are dropped, focus sessions pointing at them become
        unassigned, and every progress value is recomputed.
        """
        empty = create_plan(categories)
        plan = Plan.from_records(plan_records, empty.categories) if plan_records else empty
        tasks = [Task.from_dict(r) for r in (task_records or [])]
        sessions = [FocusSession.from_dict(r) for r in (session_records or [])]
        known = {t.id for t in tasks}
        for session in sessions:
            if session.task_id is not None and session.task_id not in known:
                session.task_id = None
        logger.info(
            "Loaded plan (%d grid records), %d tasks, %d focus sessions",
            len(plan_records or []), len(tasks), len(sessions),
        )
        return cls(EntityStore(plan, tasks, sessions), action_logger)

    # ── Subscribers ──────────────────────────────────────────────────

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register *callback* for every Change. Returns an unsubscribe function."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def _notify(self, change: Change) -> None:
        for callback in list(self._subscribers):
            try:
                callback(change)
            except Exception:
                logger.exception("Subscriber %r failed on %s", callback, change.action)

    def _run(self, action: str, params: Dict[str, Any], apply: Callable[..., Change], *args: Any) -> Change:
        """Validate-and-apply via *apply*, log the call, publish the Change."""
        t0 = time.monotonic()
        try:
            change = apply(*args)
        except MandalaError as e:
            self._log_action(action, params, t0, error=e)
            raise
        self._log_action(action, params, t0)
        logger.debug(
            "%s: cells=%s grids=%s created=%d deleted=%d",
            action, change.cells, change.grids, len(change.created), len(change.deleted),
        )
        self._notify(change)
        return change

    def _log_action(
        self, action: str, params: Dict[str, Any], t0: float, error: Optional[Exception] = None
    ) -> None:
        if self.action_logger is None:
            return
        self.action_logger.log_action(
            action_type=action,
            parameters=params,
            result="error" if error else "success",
            duration_ms=round((time.monotonic() - t0) * 1000, 3),
            error=f"{type(error).__name__}: {error}" if error else None,
        )

    # ── Progress ─────────────────────────────────────────────────────

    def _refresh(self, positions: Iterable[Position]) -> Tuple[List[Position], List[int]]:
        """Recompute the given cells and their grids. Returns both, sorted."""
        cells: Set[Position] = set(positions)
        grids: Set[int] = set()
        tasks = self.store.tasks
        for g, c in cells:
            self.store.plan.grids[g].cells[c].progress = cell_progress(
                self.store.plan.grids[g].cells[c], tasks
            )
            grids.add(g)
        for g in grids:
            grid = self.store.plan.grids[g]
            grid.sub_goal_progress = grid_progress(grid)
        return sorted(cells), sorted(grids)

    def _prune_dangling_links(self) -> None:
        for pos, cell in self.store.plan.iter_cells():
            known = [t for t in cell.linked_task_ids if t in self.store.tasks]
            if len(known) != len(cell.linked_task_ids):
                logger.warning(
                    "Dropping %d link(s) to missing tasks at %s",
                    len(cell.linked_task_ids) - len(known), pos,
                )
                for task_id in list(cell.linked_task_ids):
                    if task_id not in self.store.tasks:
                        self.index.unlink_task(task_id)

    def _ref_patch(self, task_id: str) -> Dict[str, Any]:
        pos = self.index.locate(task_id)
        return {"mandalartRef": {"gridIndex": pos[0], "cellIndex": pos[1]} if pos else None}

    # ── Tasks ────────────────────────────────────────────────────────

    def create_task(
        self,
        title: str,
        scheduled_date: Any = None,
        start_time: Optional[str] = None,
        duration: Optional[int] = None,
        description: Optional[str] = None,
        link_to: Optional[Sequence[int]] = None,
        recurrence: Any = None,
    ) -> Change:
        """Create a task (scheduled today unless a date is given), optionally linked.

        Passing a *recurrence* makes it a routine anchored at its scheduled date.
        """
        params = {"title": title, "scheduled_date": scheduled_date, "link_to": link_to}
        return self._run(
            "create_task", params, self._create_task,
            title, scheduled_date, start_time, duration, description, link_to, recurrence,
        )

    def _create_task(
        self,
        title: Any,
        scheduled_date: Any,
        start_time: Any,
        duration: Any,
        description: Optional[str],
        link_to: Optional[Sequence[int]],
        recurrence: Any = None,
        action: str = "create_task",
    ) -> Change:
        task = Task(
            new_id(),
            _validate_title(title),
            scheduled_date=_validate_date(scheduled_date) or today_str(),
            start_time=_validate_start_time(start_time),
            duration=_validate_duration(duration),
            description=description,
            recurrence=_validate_recurrence(recurrence),
        )
        target = check_position(*link_to) if link_to is not None else None

        self.store.add_task(task)
        change = Change(action, task=task, created=[task])
        if target is not None:
            self.index.link_task(task.id, *target)
            change.cells, change.grids = self._refresh([target])
            change.plan_changed = True
        logger.info("Created task %s - %s", task.id, task.title)
        return change

    def create_task_from_cell(self, grid_idx: int, cell_idx: int, scheduled_date: Any = None) -> Change:
        """Create a task titled after the cell's text and link it there."""
        params = {"cell": (grid_idx, cell_idx), "scheduled_date": scheduled_date}
        return self._run(
            "create_task_from_cell", params, self._create_task_from_cell,
            grid_idx, cell_idx, scheduled_date,
        )

    def _create_task_from_cell(self, grid_idx: int, cell_idx: int, scheduled_date: Any) -> Change:
        text = self.store.cell(grid_idx, cell_idx).text.strip()
        if not text:
            raise ValidationError(f"Cell ({grid_idx}, {cell_idx}) has no text to turn into a task")
        return self._create_task(
            text, scheduled_date, None, None, None, (grid_idx, cell_idx),
            action="create_task_from_cell",
        )

    def update_task(self, task_id: str, **fields: Any) -> Change:
        """Edit task fields (title, description, scheduled_date, start_time,
        duration, is_completed, recurrence)."""
        params = {"task_id": task_id, "fields": sorted(fields)}
        return self._run("update_task", params, self._update_fields, task_id, fields)

    def _update_fields(self, task_id: str, fields: Dict[str, Any]) -> Change:
        unknown = set(fields) - set(_TASK_FIELDS)
        if unknown:
            raise ValidationError(f"Unknown task field(s): {', '.join(sorted(unknown))}")
        task = self.store.get_task(task_id)

        clean: Dict[str, Any] = {}
        for name, value in fields.items():
            if name == "title":
                value = _validate_title(value)
            elif name == "scheduled_date":
                value = _validate_date(value)
            elif name == "start_time":
                value = _validate_start_time(value)
            elif name == "duration":
                value = _validate_duration(value)
            elif name == "is_completed":
                value = bool(value)
            elif name == "recurrence":
                value = _validate_recurrence(value)
            clean[name] = value
        return self._update_task(task, clean)

    def _update_task(self, task: Task, clean: Dict[str, Any], action: str = "update_task") -> Change:
        completion_changed = "is_completed" in clean and clean["is_completed"] != task.is_completed
        patch: Dict[str, Any] = {}
        for name, value in clean.items():
            setattr(task, name, value)
            patch[_RECORD_KEYS[name]] = value.to_dict() if isinstance(value, RecurrenceRule) else value
        if "recurrence" in clean:
            patch["isRoutine"] = task.is_routine
        change = Change(action, task=task, updated={task.id: patch} if patch else {})
        pos = self.index.locate(task.id)
        if completion_changed and pos is not None:
            change.cells, change.grids = self._refresh([pos])
            change.plan_changed = True
        return change

    def toggle_task(self, task_id: str) -> Change:
        return self._run("toggle_task", {"task_id": task_id}, self._toggle_task, task_id)

    def _toggle_task(self, task_id: str) -> Change:
        task = self.store.get_task(task_id)
        return self._update_task(task, {"is_completed": not task.is_completed}, "toggle_task")

    def delete_task(self, task_id: str) -> Change:
        """Delete a task, drop its cell link and unassign its focus sessions."""
        return self._run("delete_task", {"task_id": task_id}, self._delete_task, task_id)

    def _delete_task(self, task_id: str, action: str = "delete_task") -> Change:
        self.store.get_task(task_id)
        pos = self.index.unlink_task(task_id)
        task = self.store.remove_task(task_id)
        change = Change(action, task=task, deleted=[task_id])
        change.sessions = self.store.release_sessions(task_id)
        if pos is not None:
            change.cells, change.grids = self._refresh([pos])
            change.plan_changed = True
        logger.info("Deleted task %s", task_id)
        return change

    # ── Timers ───────────────────────────────────────────────────────

    def start_task_timer(self, task_id: str, now: Optional[datetime] = None) -> Change:
        """Start timing a task.

        A task without a start time or date gets the current ones, so it
        shows up where the work actually happened.
        """
        return self._run("start_task_timer", {"task_id": task_id}, self._start_timer, task_id, now)

    def _start_timer(self, task_id: str, now: Optional[datetime]) -> Change:
        task = self.store.get_task(task_id)
        if task.timer_running:
            raise ValidationError(f"Timer already running for task {task_id}")
        now = _validate_timestamp(now) if now is not None else now_local()
        clean: Dict[str, Any] = {"timer_started_at": now.isoformat()}
        if not task.start_time:
            clean["start_time"] = now.strftime("%H:%M")
        if not task.scheduled_date:
            clean["scheduled_date"] = now.date().isoformat()
        return self._update_task(task, clean, "start_task_timer")

    def stop_task_timer(
        self, task_id: str, minutes: Optional[int] = None, now: Optional[datetime] = None
    ) -> Change:
        """Stop the timer and add the elapsed minutes to ``actual_duration``.

        *minutes* overrides the measured time and may be given without a
        running timer to log time by hand.
        """
        params = {"task_id": task_id, "minutes": minutes}
        return self._run("stop_task_timer", params, self._stop_timer, task_id, minutes, now)

    def _stop_timer(self, task_id: str, minutes: Optional[int], now: Optional[datetime]) -> Change:
        task = self.store.get_task(task_id)
        if minutes is not None:
            added = _validate_minutes(minutes)
        elif task.timer_running:
            end = _validate_timestamp(now) if now is not None else now_local()
            added = minutes_between(_validate_timestamp(task.timer_started_at), end)
        else:
            raise ValidationError(f"No timer running for task {task_id}")
        clean = {
            "timer_started_at": None,
            "actual_duration": (task.actual_duration or 0) + added,
        }
        logger.info("Task %s: +%d min (total %d)", task_id, added, clean["actual_duration"])
        return self._update_task(task, clean, "stop_task_timer")

    def active_timer_task(self) -> Optional[Task]:
        """The task whose timer started most recently, if any is running."""
        running = [t for t in self.store.tasks.values() if t.timer_running]
        if not running:
            return None
        return max(running, key=lambda t: parse_timestamp(t.timer_started_at))

    # ── Focus sessions ───────────────────────────────────────────────

    def add_focus_session(
        self,
        start_time: Any,
        end_time: Any,
        duration: Optional[int] = None,
        task_id: Optional[str] = None,
        memo: Optional[str] = None,
    ) -> Change:
        """Record a block of focused work, optionally against a task.

        *duration* defaults to the minutes between start and end.
        """
        params = {"task_id": task_id, "duration": duration}
        return self._run(
            "add_focus_session", params, self._add_focus_session,
            start_time, end_time, duration, task_id, memo,
        )

    def _add_focus_session(
        self, start_time: Any, end_time: Any, duration: Any, task_id: Optional[str], memo: Optional[str]
    ) -> Change:
        start = _validate_timestamp(start_time)
        end = _validate_timestamp(end_time)
        if end < start:
            raise ValidationError("Focus session ends before it starts")
        minutes = minutes_between(start, end) if duration is None else _validate_minutes(duration)
        if task_id is not None:
            self.store.get_task(task_id)
        session = FocusSession(
            new_id(), start.isoformat(), end.isoformat(), minutes, task_id=task_id, memo=memo,
        )
        self.store.add_focus_session(session)
        return Change("add_focus_session", task=self.store.tasks.get(task_id or ""), sessions=[session])

    def link_focus_session(self, session_id: str, task_id: str) -> Change:
        """Attribute a focus session to a task (re-attributing is allowed)."""
        params = {"session_id": session_id, "task_id": task_id}
        return self._run("link_focus_session", params, self._link_focus_session, session_id, task_id)

    def _link_focus_session(self, session_id: str, task_id: str) -> Change:
        session = self.store.get_focus_session(session_id)
        task = self.store.get_task(task_id)
        session.task_id = task_id
        return Change("link_focus_session", task=task, sessions=[session])

    def focus_sessions(self, task_id: Optional[str] = None) -> List[FocusSession]:
        """Sessions for *task_id*; with no id, the unassigned ones."""
        return self.store.sessions_for_task(task_id)

    def focus_sessions_between(self, start: Any, end: Any) -> List[FocusSession]:
        """Sessions that started on any day from *start* to *end* inclusive."""
        lo, hi = _require_date(start), _require_date(end)
        found = [
            s for s in self.store.focus_sessions.values()
            if lo <= parse_timestamp(s.start_time).date() <= hi
        ]
        return sorted(found, key=lambda s: s.start_time)

    def focused_minutes(self, task_id: str) -> int:
        """Focus-session minutes plus timer minutes recorded on the task."""
        task = self.store.get_task(task_id)
        return sum(s.duration for s in self.store.sessions_for_task(task_id)) + (task.actual_duration or 0)

    # ── Routines ─────────────────────────────────────────────────────

    def create_routine_from_todo(
        self,
        grid_idx: int,
        cell_idx: int,
        todo_id: str,
        recurrence: Any,
        start_time: Optional[str] = None,
        scheduled_date: Any = None,
    ) -> Change:
        """Replace a todo with a routine task linked to the todo's cell."""
        params = {"cell": (grid_idx, cell_idx), "todo_id": todo_id}
        return self._run(
            "create_routine_from_todo", params, self._create_routine_from_todo,
            grid_idx, cell_idx, todo_id, recurrence, start_time, scheduled_date,
        )

    def _create_routine_from_todo(
        self,
        grid_idx: int,
        cell_idx: int,
        todo_id: str,
        recurrence: Any,
        start_time: Optional[str],
        scheduled_date: Any,
    ) -> Change:
        todo = self.store.find_todo(grid_idx, cell_idx, todo_id)
        if todo.is_converted:
            raise ConversionError(f"Todo {todo_id} was already converted to task {todo.converted_task_id}")
        if recurrence is None:
            raise ValidationError("A routine needs a recurrence rule")
        change = self._create_task(
            todo.text, scheduled_date, start_time, None, None, (grid_idx, cell_idx),
            recurrence=recurrence, action="create_routine_from_todo",
        )
        self.store.remove_todo(grid_idx, cell_idx, todo_id)
        change.todo = todo
        return change

    def routines_for_date(self, day: Any) -> List[Task]:
        """Routine tasks whose rule falls on *day*."""
        key = _require_date(day)
        found = []
        for task in self.store.tasks.values():
            if task.recurrence is None:
                continue
            anchor = date.fromisoformat(task.scheduled_date or task.created_at[:10])
            if task.recurrence.occurs_on(key, anchor):
                found.append(task)
        return found

    def schedule_routine(self, task_id: str, day: Any) -> Change:
        """Create the concrete task for one occurrence of a routine.

        Idempotent per day: an existing occurrence is returned as a no-op.
        """
        params = {"task_id": task_id, "day": day}
        return self._run("schedule_routine", params, self._schedule_routine, task_id, day)

    def _schedule_routine(self, task_id: str, day: Any) -> Change:
        parent = self.store.get_task(task_id)
        if parent.recurrence is None:
            raise ValidationError(f"Task {task_id} is not a routine")
        key = _require_date(day).isoformat()
        if parent not in self.routines_for_date(key):
            raise ValidationError(f"Routine {task_id} does not occur on {key}")
        for task in self.store.tasks.values():
            if task.routine_parent_id == task_id and task.scheduled_date == key:
                return Change("schedule_routine", task=task)

        occurrence = Task(
            new_id(),
            parent.title,
            scheduled_date=key,
            start_time=parent.start_time,
            duration=parent.duration,
            description=parent.description,
            routine_parent_id=parent.id,
        )
        self.store.add_task(occurrence)
        change = Change("schedule_routine", task=occurrence, created=[occurrence])
        pos = self.index.locate(parent.id)
        if pos is not None:
            self.index.link_task(occurrence.id, *pos)
            change.cells, change.grids = self._refresh([pos])
            change.plan_changed = True
        return change

    # ── Links ────────────────────────────────────────────────────────

    def link_task(self, task_id: str, grid_idx: int, cell_idx: int) -> Change:
        """Link a task to a cell, moving it off any previous cell."""
        params = {"task_id": task_id, "cell": (grid_idx, cell_idx)}
        return self._run("link_task", params, self._link_task, task_id, grid_idx, cell_idx)

    def _link_task(self, task_id: str, grid_idx: int, cell_idx: int) -> Change:
        task = self.store.get_task(task_id)
        target = check_position(grid_idx, cell_idx)
        old, new = self.index.link_task(task_id, *target)
        touched = [new] if old is None else [old, new]
        change = Change("link_task", task=task, plan_changed=True)
        change.cells, change.grids = self._refresh(touched)
        change.updated = {task_id: self._ref_patch(task_id)}
        if old is not None:
            logger.info("Moved task %s from %s to %s", task_id, old, new)
        return change

    def unlink_task(self, task_id: str) -> Change:
        """Remove a task's link. No-op when it is not linked."""
        return self._run("unlink_task", {"task_id": task_id}, self._unlink_task, task_id)

    def _unlink_task(self, task_id: str) -> Change:
        pos = self.index.unlink_task(task_id)
        change = Change("unlink_task", task=self.store.tasks.get(task_id))
        if pos is not None:
            change.cells, change.grids = self._refresh([pos])
            change.plan_changed = True
            if task_id in self.store.tasks:
                change.updated = {task_id: self._ref_patch(task_id)}
        return change

    # ── Cells ────────────────────────────────────────────────────────

    def set_cell_text(self, grid_idx: int, cell_idx: int, text: Any) -> Change:
        text = "" if text is None else str(text)
        params = {"cell": (grid_idx, cell_idx), "length": len(text)}
        return self._run("set_cell_text", params, self._set_cell_text, grid_idx, cell_idx, text)

    def _set_cell_text(self, grid_idx: int, cell_idx: int, text: str) -> Change:
        touched = self.store.set_cell_text(grid_idx, cell_idx, text)
        return Change("set_cell_text", cells=sorted(touched), plan_changed=True)

    def toggle_cell_completion(self, grid_idx: int, cell_idx: int) -> Change:
        return self._run(
            "toggle_cell_completion", {"cell": (grid_idx, cell_idx)},
            self._toggle_cell_completion, grid_idx, cell_idx,
        )

    def _toggle_cell_completion(self, grid_idx: int, cell_idx: int) -> Change:
        self.store.toggle_cell_completion(grid_idx, cell_idx)
        return Change("toggle_cell_completion", cells=[(grid_idx, cell_idx)], plan_changed=True)

    def set_cell_icon(self, grid_idx: int, icon: Optional[str], cell_idx: int = 4) -> Change:
        return self._run(
            "set_cell_icon", {"cell": (grid_idx, cell_idx), "icon": icon},
            self._set_cell_icon, grid_idx, icon, cell_idx,
        )

    def _set_cell_icon(self, grid_idx: int, icon: Optional[str], cell_idx: int) -> Change:
        self.store.set_cell_icon(grid_idx, icon, cell_idx)
        return Change("set_cell_icon", cells=[(grid_idx, cell_idx)], plan_changed=True)

    # ── Todos ────────────────────────────────────────────────────────

    def add_todo(self, grid_idx: int, cell_idx: int, text: str) -> Change:
        return self._run("add_todo", {"cell": (grid_idx, cell_idx)}, self._add_todo, grid_idx, cell_idx, text)

    def _add_todo(self, grid_idx: int, cell_idx: int, text: str) -> Change:
        todo = self.store.add_todo(grid_idx, cell_idx, text)
        return Change("add_todo", todo=todo, cells=[(grid_idx, cell_idx)], plan_changed=True)

    def toggle_todo(self, grid_idx: int, cell_idx: int, todo_id: str) -> Change:
        params = {"cell": (grid_idx, cell_idx), "todo_id": todo_id}
        return self._run("toggle_todo", params, self._toggle_todo, grid_idx, cell_idx, todo_id)

    def _toggle_todo(self, grid_idx: int, cell_idx: int, todo_id: str) -> Change:
        todo = self.store.toggle_todo(grid_idx, cell_idx, todo_id)
        return Change("toggle_todo", todo=todo, cells=[(grid_idx, cell_idx)], plan_changed=True)

    def delete_todo(self, grid_idx: int, cell_idx: int, todo_id: str) -> Change:
        """Delete a todo; a converted todo takes its task with it."""
        params = {"cell": (grid_idx, cell_idx), "todo_id": todo_id}
        return self._run("delete_todo", params, self._delete_todo, grid_idx, cell_idx, todo_id)

    def _delete_todo(self, grid_idx: int, cell_idx: int, todo_id: str) -> Change:
        todo = self.store.remove_todo(grid_idx, cell_idx, todo_id)
        change = Change("delete_todo", todo=todo, plan_changed=True)
        cells: List[Position] = [(grid_idx, cell_idx)]
        task_id = todo.converted_task_id
        if task_id is not None and task_id in self.store.tasks:
            cascaded = self._delete_task(task_id, action="delete_todo")
            change.task = cascaded.task
            change.deleted = cascaded.deleted
            change.sessions = cascaded.sessions
            cells.extend(cascaded.cells)
            change.grids = cascaded.grids
        change.cells = sorted(set(cells))
        return change

    def convert_todo(
        self,
        grid_idx: int,
        cell_idx: int,
        todo_id: str,
        scheduled_date: Any = None,
        link: bool = False,
    ) -> Change:
        """Promote a todo to a task.

        The task starts unlinked; ``link=True`` follows up with a link to the
        todo's own cell inside the same call.
        """
        params = {"cell": (grid_idx, cell_idx), "todo_id": todo_id, "link": link}
        return self._run(
            "convert_todo", params, self._convert_todo,
            grid_idx, cell_idx, todo_id, scheduled_date, link,
        )

    def _convert_todo(
        self, grid_idx: int, cell_idx: int, todo_id: str, scheduled_date: Any, link: bool
    ) -> Change:
        todo = self.store.find_todo(grid_idx, cell_idx, todo_id)
        task = convert_todo_to_task(todo, scheduled_date)
        self.store.add_task(task)
        change = Change(
            "convert_todo", task=task, todo=todo, created=[task],
            cells=[(grid_idx, cell_idx)], plan_changed=True,
        )
        if link:
            self.index.link_task(task.id, grid_idx, cell_idx)
            change.cells, change.grids = self._refresh([(grid_idx, cell_idx)])
        return change

    # ── Read surface ─────────────────────────────────────────────────

    @property
    def plan(self) -> Plan:
        return self.store.plan

    def get_task(self, task_id: str) -> Task:
        return self.store.get_task(task_id)

    def locate(self, task_id: str) -> Optional[Position]:
        return self.index.locate(task_id)

    def cell_progress(self, grid_idx: int, cell_idx: int) -> int:
        return self.store.cell(grid_idx, cell_idx).progress

    def grid_progress(self, grid_idx: int) -> int:
        return self.store.plan.grids[check_index("grid", grid_idx)].sub_goal_progress

    def plan_progress(self) -> int:
        return plan_progress(self.store.plan)

    def linked_tasks(self, grid_idx: int, cell_idx: int) -> List[Task]:
        """Tasks linked to a cell, in link order."""
        return [self.store.tasks[t] for t in self.store.cell(grid_idx, cell_idx).linked_task_ids]

    def todos_for_cell(self, grid_idx: int, cell_idx: int) -> List[Todo]:
        return list(self.store.cell(grid_idx, cell_idx).todos)

    def tasks_for_date(self, day: Any) -> List[Task]:
        return self.store.tasks_for_date(day)

    def all_tasks(self) -> List[Task]:
        return list(self.store.tasks.values())

    def category_color(self, grid_idx: int) -> str:
        """Category colour for a grid; the center grid gets ``plan.fallback_color``."""
        return self.store.category_color(grid_idx, get_plan_config()["fallback_color"])

    @property
    def categories(self) -> List[Category]:
        return list(self.store.plan.categories)

    def task_record(self, task_id: str) -> Dict[str, Any]:
        """Storage record for one task, including its cell reference."""
        return self.store.get_task(task_id).to_dict(ref=self.index.locate(task_id))

    def plan_records(self) -> List[Dict[str, Any]]:
        return self.store.plan.to_records()

    def snapshot(self) -> Dict[str, Any]:
        """Full serialisable view: plan, tasks, focus sessions, plan progress."""
        return {
            "plan": self.plan_records(),
            "tasks": [self.task_record(t) for t in self.store.tasks],
            "focusSessions": [s.to_dict() for s in self.store.focus_sessions.values()],
            "categories": [c.to_dict() for c in self.store.plan.categories],
            "planProgress": self.plan_progress(),
        }
