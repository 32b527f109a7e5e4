"""
Plan data model: Plan -> 9 Grids -> 9 Cells, plus Tasks, Todos and focus
sessions.

Serialisation uses the camelCase record shape the storage backend speaks
(one record per grid, parallel per-cell arrays). Loading tolerates legacy
records that predate todos, icons or the cell completion flag.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Any, Dict, List, Optional, Tuple

from mandala.core.errors import ConversionError, RangeError
from mandala.utils.time_utils import now_iso

logger = logging.getLogger(__name__)

GRID_COUNT = 9
CELLS_PER_GRID = 9
CENTER = 4  # center grid of the plan, and center cell of every grid

Position = Tuple[int, int]


def new_id() -> str:
    return uuid.uuid4().hex


def check_index(what: str, value: Any) -> int:
    """Return *value* if it is an int in 0-8, else raise RangeError."""
    if isinstance(value, bool) or not isinstance(value, int) or not 0 <= value < GRID_COUNT:
        raise RangeError(what, value)
    return value


def check_position(grid_idx: Any, cell_idx: Any) -> Position:
    return check_index("grid", grid_idx), check_index("cell", cell_idx)


@dataclass
class Category:
    """Display colour for one sub-goal grid. Presentation only."""

    id: str
    name: str
    color: str
    grid_index: int

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Category":
        return cls(
            id=str(data.get("id", "")),
            name=str(data.get("name", "")),
            color=str(data.get("color", "")),
            grid_index=data.get("grid_index", data.get("gridIndex")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "color": self.color,
            "gridIndex": self.grid_index,
        }


RECURRENCE_TYPES = ("daily", "weekly", "monthly")


def js_weekday(day: date) -> int:
    """Day of week with 0 = Sunday ... 6 = Saturday (the stored convention)."""
    return (day.weekday() + 1) % 7


@dataclass
class RecurrenceRule:
    """How a routine task repeats.

    ``days_of_week`` uses 0 = Sunday and only applies to weekly rules; an
    empty list means "the anchor's weekday". ``interval`` counts days, weeks
    or months depending on ``type``.
    """

    type: str
    days_of_week: List[int] = field(default_factory=list)
    interval: int = 1
    end_date: Optional[str] = None

    def occurs_on(self, day: date, anchor: date) -> bool:
        """True if the routine anchored at *anchor* falls on *day*."""
        if day < anchor:
            return False
        if self.end_date and day > date.fromisoformat(self.end_date):
            return False
        interval = max(1, self.interval)
        if self.type == "daily":
            return (day - anchor).days % interval == 0
        if self.type == "weekly":
            days = self.days_of_week or [js_weekday(anchor)]
            if js_weekday(day) not in days:
                return False
            week0 = anchor - timedelta(days=js_weekday(anchor))
            week = day - timedelta(days=js_weekday(day))
            return ((week - week0).days // 7) % interval == 0
        if self.type == "monthly":
            months = (day.year - anchor.year) * 12 + day.month - anchor.month
            return day.day == anchor.day and months % interval == 0
        return False

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RecurrenceRule":
        return cls(
            type=data.get("type", ""),
            days_of_week=list(data.get("daysOfWeek") or []),
            interval=1 if data.get("interval") is None else data["interval"],
            end_date=data.get("endDate"),
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"type": self.type, "interval": self.interval}
        if self.type == "weekly":
            data["daysOfWeek"] = list(self.days_of_week)
        if self.end_date:
            data["endDate"] = self.end_date
        return data


# Record keys Task reads itself; anything else is carried through untouched.
_TASK_RECORD_KEYS = frozenset({
    "id", "title", "description", "isCompleted", "scheduledDate", "startTime",
    "duration", "createdAt", "mandalartRef", "actualDuration", "timerStartedAt",
    "isRoutine", "recurrence", "routineParentId",
})


class Task:
    """A schedulable, time-boxed action item."""

    def __init__(
        self,
        task_id: str,
        title: str,
        scheduled_date: Optional[str] = None,
        start_time: Optional[str] = None,
        duration: Optional[int] = None,
        description: Optional[str] = None,
        is_completed: bool = False,
        created_at: Optional[str] = None,
        actual_duration: Optional[int] = None,
        timer_started_at: Optional[str] = None,
        recurrence: Optional[RecurrenceRule] = None,
        routine_parent_id: Optional[str] = None,
        extra: Optional[Dict[str, Any]] = None,
    ):
        self.id = task_id
        self.title = title
        self.description = description
        self.is_completed = is_completed
        self.scheduled_date = scheduled_date
        self.start_time = start_time
        self.duration = duration
        self.created_at = created_at or now_iso()
        # Time tracking
        self.actual_duration = actual_duration
        self.timer_started_at = timer_started_at
        # Routines
        self.recurrence = recurrence
        self.routine_parent_id = routine_parent_id
        # Unknown record fields (e.g. calendar sync ids)
        self.extra: Dict[str, Any] = dict(extra or {})

    @property
    def is_routine(self) -> bool:
        return self.recurrence is not None

    @property
    def timer_running(self) -> bool:
        return self.timer_started_at is not None

    def __repr__(self) -> str:
        return f"Task({self.id!r}, {self.title!r}, done={self.is_completed})"

    def to_dict(self, ref: Optional[Position] = None) -> Dict[str, Any]:
        """Serialize to the storage record; *ref* is the linked cell, if any."""
        data = dict(self.extra)
        data.update({
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "isCompleted": self.is_completed,
            "scheduledDate": self.scheduled_date,
            "startTime": self.start_time,
            "duration": self.duration,
            "createdAt": self.created_at,
            "mandalartRef": (
                {"gridIndex": ref[0], "cellIndex": ref[1]} if ref is not None else None
            ),
            "actualDuration": self.actual_duration,
            "timerStartedAt": self.timer_started_at,
            "isRoutine": self.is_routine,
            "recurrence": self.recurrence.to_dict() if self.recurrence else None,
            "routineParentId": self.routine_parent_id,
        })
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Task":
        rule = data.get("recurrence")
        return cls(
            task_id=str(data["id"]),
            title=data.get("title", ""),
            scheduled_date=data.get("scheduledDate"),
            start_time=data.get("startTime") or None,
            duration=data.get("duration"),
            description=data.get("description"),
            is_completed=bool(data.get("isCompleted", False)),
            created_at=data.get("createdAt"),
            actual_duration=data.get("actualDuration"),
            timer_started_at=data.get("timerStartedAt") or None,
            recurrence=RecurrenceRule.from_dict(rule) if isinstance(rule, dict) else None,
            routine_parent_id=data.get("routineParentId") or None,
            extra={k: v for k, v in data.items() if k not in _TASK_RECORD_KEYS},
        )


class FocusSession:
    """A block of time actually spent, optionally attributed to a task.

    Sessions outlive their task: deleting the task only clears ``task_id``.
    """

    def __init__(
        self,
        session_id: str,
        start_time: str,
        end_time: str,
        duration: int,
        task_id: Optional[str] = None,
        memo: Optional[str] = None,
        created_at: Optional[str] = None,
    ):
        self.id = session_id
        self.start_time = start_time
        self.end_time = end_time
        self.duration = duration
        self.task_id = task_id
        self.memo = memo
        self.created_at = created_at or now_iso()

    def __repr__(self) -> str:
        return f"FocusSession({self.id!r}, task={self.task_id!r}, {self.duration}min)"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "taskId": self.task_id,
            "startTime": self.start_time,
            "endTime": self.end_time,
            "duration": self.duration,
            "memo": self.memo,
            "createdAt": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FocusSession":
        return cls(
            session_id=str(data["id"]),
            start_time=data["startTime"],
            end_time=data["endTime"],
            duration=int(data.get("duration") or 0),
            task_id=data.get("taskId") or None,
            memo=data.get("memo"),
            created_at=data.get("createdAt"),
        )


class Todo:
    """Unscheduled checklist item attached to a cell.

    ``converted_task_id`` is write-once: after promotion the todo is kept as
    a historical record and refuses further edits.
    """

    def __init__(
        self,
        todo_id: str,
        text: str,
        is_completed: bool = False,
        created_at: Optional[str] = None,
        converted_task_id: Optional[str] = None,
    ):
        self.id = todo_id
        self.text = text
        self.is_completed = is_completed
        self.created_at = created_at or now_iso()
        self._converted_task_id = converted_task_id

    @property
    def converted_task_id(self) -> Optional[str]:
        return self._converted_task_id

    @converted_task_id.setter
    def converted_task_id(self, task_id: str) -> None:
        if self._converted_task_id is not None:
            raise ConversionError(
                f"Todo {self.id} already converted to task {self._converted_task_id}"
            )
        if not task_id:
            raise ConversionError(f"Todo {self.id}: converted task id must be non-empty")
        self._converted_task_id = task_id

    @property
    def is_converted(self) -> bool:
        return self._converted_task_id is not None

    def __repr__(self) -> str:
        return f"Todo({self.id!r}, {self.text!r}, converted={self._converted_task_id!r})"

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "id": self.id,
            "text": self.text,
            "isCompleted": self.is_completed,
            "createdAt": self.created_at,
        }
        if self._converted_task_id is not None:
            data["convertedTaskId"] = self._converted_task_id
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Todo":
        return cls(
            todo_id=str(data["id"]),
            text=data.get("text", ""),
            is_completed=bool(data.get("isCompleted", False)),
            created_at=data.get("createdAt"),
            converted_task_id=data.get("convertedTaskId") or None,
        )


class Cell:
    """One of the 81 cells: free text plus its task links and todos."""

    def __init__(self, text: str = ""):
        self.text = text
        self.is_completed = False
        self.linked_task_ids: List[str] = []
        self.todos: List[Todo] = []
        self.progress = 0
        self.icon: Optional[str] = None


class Grid:
    """A sub-goal panel. Cell 4 mirrors the grid title."""

    def __init__(self, grid_id: int, title: str = ""):
        self.id = grid_id
        self.title = title
        self.cells: List[Cell] = [Cell() for _ in range(CELLS_PER_GRID)]
        self.sub_goal_progress = 0
        self.icon: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "cells": [c.text for c in self.cells],
            "cellCompleted": [c.is_completed for c in self.cells],
            "linkedTaskIds": [list(c.linked_task_ids) for c in self.cells],
            "cellProgress": [c.progress for c in self.cells],
            "cellTodos": [[t.to_dict() for t in c.todos] for c in self.cells],
            "cellIcons": [c.icon for c in self.cells],
            "subGoalProgress": self.sub_goal_progress,
            "icon": self.icon,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], grid_id: int) -> "Grid":
        grid = cls(grid_id, data.get("title") or "")
        grid.icon = data.get("icon")
        texts = _per_cell(data.get("cells"), "")
        completed = _per_cell(data.get("cellCompleted"), False)
        links = _per_cell(data.get("linkedTaskIds"), None)
        todos = _per_cell(data.get("cellTodos"), None)
        icons = _per_cell(data.get("cellIcons"), None)
        for i, cell in enumerate(grid.cells):
            cell.text = texts[i] or ""
            cell.is_completed = bool(completed[i])
            # Deduplicate while keeping first-seen order.
            cell.linked_task_ids = list(dict.fromkeys(str(t) for t in (links[i] or [])))
            cell.todos = [Todo.from_dict(t) for t in (todos[i] or [])]
            cell.icon = icons[i]
        # Progress values are derived; the coordinator recomputes them on load.
        return grid


def _per_cell(values: Optional[List[Any]], default: Any) -> List[Any]:
    """Pad/truncate a per-cell array to 9 entries."""
    values = list(values or [])
    if len(values) != CELLS_PER_GRID and values:
        logger.warning("Per-cell array has %d entries, expected 9", len(values))
    values = values[:CELLS_PER_GRID]
    return values + [default] * (CELLS_PER_GRID - len(values))


class Plan:
    """The whole 9x9 Mandalart. Grid 4 holds the overall goal."""

    def __init__(self, categories: List[Category]):
        self.grids: List[Grid] = [Grid(i) for i in range(GRID_COUNT)]
        self.categories = list(categories)

    @property
    def center(self) -> Grid:
        return self.grids[CENTER]

    def cell(self, grid_idx: int, cell_idx: int) -> Cell:
        g, c = check_position(grid_idx, cell_idx)
        return self.grids[g].cells[c]

    def iter_cells(self):
        """Yield ``((grid_idx, cell_idx), cell)`` in row-major order."""
        for grid in self.grids:
            for c, cell in enumerate(grid.cells):
                yield (grid.id, c), cell

    def category_for(self, grid_idx: int) -> Optional[Category]:
        for cat in self.categories:
            if cat.grid_index == grid_idx:
                return cat
        return None

    def to_records(self) -> List[Dict[str, Any]]:
        return [g.to_dict() for g in self.grids]

    @classmethod
    def from_records(cls, records: List[Dict[str, Any]], categories: List[Category]) -> "Plan":
        plan = cls(categories)
        by_id: Dict[int, Dict[str, Any]] = {}
        for pos, rec in enumerate(records or []):
            gid = rec.get("id", pos)
            if isinstance(gid, int) and 0 <= gid < GRID_COUNT:
                by_id[gid] = rec
            else:
                logger.warning("Skipping grid record with invalid id %r", gid)
        for gid, rec in by_id.items():
            plan.grids[gid] = Grid.from_dict(rec, gid)
        return plan
