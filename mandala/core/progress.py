"""
Progress Aggregator - derived completion percentages.

Pure functions; the coordinator calls them right after a task or link
change and stores the results on the cells/grids. Nothing here is cached.
"""

from typing import Iterable, Mapping

from mandala.core.errors import InvariantViolation
from mandala.core.models import CENTER, Cell, Grid, Plan, Task


def round_percent(numerator: int, denominator: int) -> int:
    """``round(100 * numerator / denominator)`` with halves rounded up.

    Integer arithmetic, so 2/3 -> 67 and 1/8 -> 13 without float drift.
    """
    if denominator <= 0:
        return 0
    return (200 * numerator + denominator) // (2 * denominator)


def _round_mean(values: Iterable[int]) -> int:
    vals = list(values)
    if not vals:
        return 0
    total = sum(vals)
    return (2 * total + len(vals)) // (2 * len(vals))


def cell_progress(cell: Cell, tasks_by_id: Mapping[str, Task]) -> int:
    """Share of the cell's linked tasks that are complete, 0-100.

    Raises:
        InvariantViolation: a linked id has no task (dangling link)
    """
    ids = cell.linked_task_ids
    if not ids:
        return 0
    completed = 0
    for task_id in ids:
        task = tasks_by_id.get(task_id)
        if task is None:
            raise InvariantViolation(f"Cell links unknown task {task_id}")
        if task.is_completed:
            completed += 1
    return round_percent(completed, len(ids))


def grid_progress(grid: Grid) -> int:
    """Mean ``progress`` of the 8 outer cells (cell 4 is the title)."""
    return _round_mean(cell.progress for i, cell in enumerate(grid.cells) if i != CENTER)


def plan_progress(plan: Plan) -> int:
    """Mean of the 9 grids' progress, each grid weighted equally."""
    return _round_mean(grid_progress(g) for g in plan.grids)
