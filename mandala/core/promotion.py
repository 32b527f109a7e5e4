"""
Todo Promotion - one-way conversion of a todo into a scheduled task.
"""

import logging
from typing import Any, Optional

from mandala.core.errors import ConversionError, ValidationError
from mandala.core.models import Task, Todo, new_id
from mandala.utils.time_utils import normalize_date, today_str

logger = logging.getLogger(__name__)


def convert_todo_to_task(todo: Todo, scheduled_date: Optional[Any] = None) -> Task:
    """
    Promote *todo* to a new, unlinked task.

    The todo keeps its own completion state and gains ``converted_task_id``;
    from then on it is a read-only record.

    Args:
        todo: the todo to promote
        scheduled_date: date for the task (defaults to today)

    Returns:
        The new Task

    Raises:
        ConversionError: the todo was already converted (todo unchanged)
    """
    if todo.is_converted:
        raise ConversionError(
            f"Todo {todo.id} already converted to task {todo.converted_task_id}"
        )
    try:
        day = normalize_date(scheduled_date) or today_str()
    except ValueError as e:
        raise ValidationError(f"Invalid date: {scheduled_date!r}") from e

    task = Task(new_id(), todo.text, scheduled_date=day)
    todo.converted_task_id = task.id
    logger.info("Converted todo %s into task %s", todo.id, task.id)
    return task
