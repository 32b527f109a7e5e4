"""
Entity Store - canonical in-memory plan, tasks and todos.

Holds the fixed 9x9 skeleton plus the task and focus-session collections.
Operations here edit one entity in place and never touch links or
progress; keeping those in step is the coordinator's job.
"""

import logging
from typing import Any, Dict, Iterable, List, Optional, Union

from mandala.core.errors import (
    ConversionError,
    FocusSessionNotFoundError,
    TaskNotFoundError,
    TodoNotFoundError,
    ValidationError,
)
from mandala.core.models import (
    CENTER,
    GRID_COUNT,
    Category,
    Cell,
    FocusSession,
    Plan,
    Task,
    Todo,
    check_index,
    check_position,
    new_id,
)
from mandala.utils.time_utils import normalize_date

logger = logging.getLogger(__name__)

CategoryLike = Union[Category, Dict[str, Any]]


def create_plan(categories: Iterable[CategoryLike]) -> Plan:
    """
    Build an empty plan.

    Args:
        categories: exactly 8 categories, one per non-center grid

    Raises:
        ValidationError: wrong count, center/out-of-range grid index, or a
            grid index used twice
    """
    cats = [c if isinstance(c, Category) else Category.from_dict(c) for c in categories]
    if len(cats) != GRID_COUNT - 1:
        raise ValidationError(
            f"Plan needs exactly {GRID_COUNT - 1} sub-goal categories, got {len(cats)}"
        )

    seen = set()
    for cat in cats:
        idx = cat.grid_index
        if isinstance(idx, bool) or not isinstance(idx, int) or not 0 <= idx < GRID_COUNT:
            raise ValidationError(f"Category {cat.id!r} has invalid grid index {idx!r}")
        if idx == CENTER:
            raise ValidationError(f"Category {cat.id!r} targets the center grid")
        if idx in seen:
            raise ValidationError(f"Grid index {idx} has more than one category")
        seen.add(idx)

    plan = Plan(cats)
    logger.info("Created empty plan with %d categories", len(cats))
    return plan


class EntityStore:
    """Plan + tasks. One instance per session, passed to whoever needs it."""

    def __init__(
        self,
        plan: Plan,
        tasks: Optional[Iterable[Task]] = None,
        focus_sessions: Optional[Iterable[FocusSession]] = None,
    ) -> None:
        self.plan = plan
        self.tasks: Dict[str, Task] = {}
        for task in tasks or []:
            self.tasks[task.id] = task
        self.focus_sessions: Dict[str, FocusSession] = {}
        for session in focus_sessions or []:
            self.focus_sessions[session.id] = session

    # ── Cells ────────────────────────────────────────────────────────

    def cell(self, grid_idx: int, cell_idx: int) -> Cell:
        return self.plan.cell(grid_idx, cell_idx)

    def set_cell_text(self, grid_idx: int, cell_idx: int, text: str) -> List[tuple]:
        """Set a cell's text and mirror sub-goal titles.

        Center-grid cell *i* and cell 4 of grid *i* are the same sub-goal, so
        writing either one updates the other plus grid *i*'s title.

        Returns every (grid, cell) whose text changed.
        """
        g, c = check_position(grid_idx, cell_idx)
        text = "" if text is None else str(text)
        grids = self.plan.grids
        grids[g].cells[c].text = text
        touched = [(g, c)]

        if g == CENTER and c != CENTER:
            grids[c].title = text
            grids[c].cells[CENTER].text = text
            touched.append((c, CENTER))
        elif g != CENTER and c == CENTER:
            grids[g].title = text
            grids[CENTER].cells[g].text = text
            touched.append((CENTER, g))
        elif g == CENTER and c == CENTER:
            grids[CENTER].title = text
        return touched

    def toggle_cell_completion(self, grid_idx: int, cell_idx: int) -> bool:
        """Flip the user's done flag on a cell. Returns the new value."""
        cell = self.cell(grid_idx, cell_idx)
        cell.is_completed = not cell.is_completed
        return cell.is_completed

    def set_cell_icon(self, grid_idx: int, icon: Optional[str], cell_idx: int = CENTER) -> None:
        cell = self.cell(grid_idx, cell_idx)
        cell.icon = icon
        if cell_idx == CENTER:
            self.plan.grids[grid_idx].icon = icon

    # ── Tasks ────────────────────────────────────────────────────────

    def add_task(self, task: Task) -> Task:
        if task.id in self.tasks:
            raise ValidationError(f"Duplicate task id: {task.id}")
        self.tasks[task.id] = task
        return task

    def get_task(self, task_id: str) -> Task:
        task = self.tasks.get(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    def remove_task(self, task_id: str) -> Task:
        task = self.get_task(task_id)
        del self.tasks[task_id]
        return task

    def tasks_for_date(self, day: Any) -> List[Task]:
        """Tasks scheduled on *day* (date or ``YYYY-MM-DD``)."""
        try:
            key = normalize_date(day)
        except ValueError as e:
            raise ValidationError(f"Invalid date: {day!r}") from e
        return [t for t in self.tasks.values() if t.scheduled_date == key]

    # ── Todos ────────────────────────────────────────────────────────

    def add_todo(self, grid_idx: int, cell_idx: int, text: str) -> Todo:
        cell = self.cell(grid_idx, cell_idx)
        text = (text or "").strip()
        if not text:
            raise ValidationError("Todo text must not be blank")
        todo = Todo(new_id(), text)
        cell.todos.append(todo)
        return todo

    def find_todo(self, grid_idx: int, cell_idx: int, todo_id: str) -> Todo:
        for todo in self.cell(grid_idx, cell_idx).todos:
            if todo.id == todo_id:
                return todo
        raise TodoNotFoundError(todo_id)

    def toggle_todo(self, grid_idx: int, cell_idx: int, todo_id: str) -> Todo:
        todo = self.find_todo(grid_idx, cell_idx, todo_id)
        if todo.is_converted:
            raise ConversionError(
                f"Todo {todo_id} was converted to task {todo.converted_task_id} and is read-only"
            )
        todo.is_completed = not todo.is_completed
        return todo

    def remove_todo(self, grid_idx: int, cell_idx: int, todo_id: str) -> Todo:
        todo = self.find_todo(grid_idx, cell_idx, todo_id)
        self.cell(grid_idx, cell_idx).todos.remove(todo)
        return todo

    def category_color(self, grid_idx: int, fallback: str = "#6b7280") -> str:
        cat = self.plan.category_for(check_index("grid", grid_idx))
        return cat.color if cat and cat.color else fallback

    # ── Focus sessions ───────────────────────────────────────────────

    def add_focus_session(self, session: FocusSession) -> FocusSession:
        if session.id in self.focus_sessions:
            raise ValidationError(f"Duplicate focus session id: {session.id}")
        self.focus_sessions[session.id] = session
        return session

    def get_focus_session(self, session_id: str) -> FocusSession:
        session = self.focus_sessions.get(session_id)
        if session is None:
            raise FocusSessionNotFoundError(session_id)
        return session

    def sessions_for_task(self, task_id: Optional[str]) -> List[FocusSession]:
        """Sessions attributed to *task_id* (None: unassigned), oldest first."""
        found = [s for s in self.focus_sessions.values() if s.task_id == task_id]
        return sorted(found, key=lambda s: s.start_time)

    def release_sessions(self, task_id: str) -> List[FocusSession]:
        """Detach every session from a task that is going away."""
        released = self.sessions_for_task(task_id)
        for session in released:
            session.task_id = None
        return released
