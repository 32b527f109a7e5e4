"""
Error taxonomy for the planner core.

Local invariant violations fail fast with one of these. Persistence failures
never propagate into the core; they travel on the dispatcher's error channel
as :class:`PersistenceError`.
"""

from typing import Optional


class MandalaError(Exception):
    """Base class for every planner error."""


class ValidationError(MandalaError, ValueError):
    """Malformed input: wrong category set, bad task fields, blank text."""


class RangeError(MandalaError, IndexError):
    """Grid or cell index outside 0-8."""

    def __init__(self, what: str, value: object) -> None:
        super().__init__(f"{what} index out of range (0-8): {value!r}")
        self.what = what
        self.value = value


class ConversionError(MandalaError):
    """Todo already promoted to a task (converted todos are read-only)."""


class TaskNotFoundError(MandalaError, ValueError):
    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task not found: {task_id}")
        self.task_id = task_id


class TodoNotFoundError(MandalaError, ValueError):
    def __init__(self, todo_id: str) -> None:
        super().__init__(f"Todo not found: {todo_id}")
        self.todo_id = todo_id


class FocusSessionNotFoundError(MandalaError, ValueError):
    def __init__(self, session_id: str) -> None:
        super().__init__(f"Focus session not found: {session_id}")
        self.session_id = session_id


class InvariantViolation(MandalaError):
    """Internal state broke an invariant (e.g. a dangling task link)."""


class LinkConflict(MandalaError):
    """Task is already linked to another cell.

    Internal only: the link index resolves it by moving the link.
    """

    def __init__(self, task_id: str, position: tuple) -> None:
        super().__init__(f"Task {task_id} already linked at {position}")
        self.task_id = task_id
        self.position = position


class PersistenceError(MandalaError):
    """A backend call failed after retries (or the circuit was open)."""

    def __init__(self, operation: str, cause: Optional[BaseException] = None) -> None:
        msg = f"Persistence {operation} failed"
        if cause is not None:
            msg += f": {cause}"
        super().__init__(msg)
        self.operation = operation
        self.cause = cause
