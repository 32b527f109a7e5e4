"""
Link Index - reverse map from task id to the one cell that links it.

The cells' ``linked_task_ids`` lists and this map are edited together, so a
lookup never scans the 81 cells.
"""

import logging
from typing import Dict, List, Optional, Tuple

from mandala.core.errors import LinkConflict
from mandala.core.models import Plan, Position, check_position

logger = logging.getLogger(__name__)


class LinkIndex:
    """Keeps ``task_id -> (grid, cell)`` and enforces one cell per task."""

    def __init__(self, plan: Plan) -> None:
        self.plan = plan
        self._where: Dict[str, Position] = {}
        self.rebuild()

    def rebuild(self) -> List[Tuple[str, Position]]:
        """Recreate the map from the plan's cells.

        Loaded data may list a task in several cells; the first occurrence
        (row-major) keeps it and later ones are dropped.

        Returns the (task_id, position) edges that were dropped.
        """
        self._where = {}
        dropped: List[Tuple[str, Position]] = []
        for pos, cell in self.plan.iter_cells():
            kept: List[str] = []
            for task_id in cell.linked_task_ids:
                try:
                    self._claim(task_id, pos)
                except LinkConflict as e:
                    logger.warning("Dropping duplicate link of %s at %s (kept %s)", task_id, pos, e.position)
                    dropped.append((task_id, pos))
                    continue
                kept.append(task_id)
            cell.linked_task_ids = kept
        return dropped

    def _claim(self, task_id: str, pos: Position) -> None:
        current = self._where.get(task_id)
        if current is not None and current != pos:
            raise LinkConflict(task_id, current)
        self._where[task_id] = pos

    def link_task(self, task_id: str, grid_idx: int, cell_idx: int) -> Tuple[Optional[Position], Position]:
        """Link *task_id* to a cell, moving it if it was linked elsewhere.

        Idempotent for a repeated identical call.

        Returns:
            (old_position or None, new_position)

        Raises:
            RangeError: invalid indices (nothing is changed)
        """
        target = check_position(grid_idx, cell_idx)
        old: Optional[Position] = None
        try:
            self._claim(task_id, target)
        except LinkConflict as e:
            old = e.position
            self._detach(task_id, old)
            self._where[task_id] = target

        cell = self.plan.grids[target[0]].cells[target[1]]
        if task_id not in cell.linked_task_ids:
            cell.linked_task_ids.append(task_id)
        return old, target

    def unlink_task(self, task_id: str) -> Optional[Position]:
        """Remove the task's link, if any. Returns where it was."""
        pos = self._where.pop(task_id, None)
        if pos is not None:
            self._detach(task_id, pos)
        return pos

    def _detach(self, task_id: str, pos: Position) -> None:
        cell = self.plan.grids[pos[0]].cells[pos[1]]
        cell.linked_task_ids = [t for t in cell.linked_task_ids if t != task_id]

    def locate(self, task_id: str) -> Optional[Position]:
        return self._where.get(task_id)

    def linked_ids(self) -> List[str]:
        return list(self._where)

    def __len__(self) -> int:
        return len(self._where)

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._where
