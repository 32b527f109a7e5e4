"""Wire a coordinator to a backend: load stored state, attach a dispatcher."""

import logging
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Tuple

from mandala.core.coordinator import MutationCoordinator
from mandala.core.entity_store import CategoryLike
from mandala.core.logger import ActionLogger
from mandala.persistence.backend import JsonFileBackend, PersistenceBackend
from mandala.persistence.dispatcher import ErrorCallback, PersistenceDispatcher
from mandala.utils.config import get_categories, get_logging_config, get_persistence_config
from mandala.utils.paths import data_dir

logger = logging.getLogger(__name__)


def default_backend() -> JsonFileBackend:
    """JSON backend under ``data/<persistence.data_subdir>``."""
    subdir = get_persistence_config()["data_subdir"]
    return JsonFileBackend(Path(data_dir(subdir)))


def open_session(
    backend: Optional[PersistenceBackend] = None,
    categories: Optional[Iterable[CategoryLike]] = None,
    action_logger: Optional[ActionLogger] = None,
    dispatcher_config: Optional[Dict[str, Any]] = None,
    on_error: Optional[ErrorCallback] = None,
) -> Tuple[MutationCoordinator, PersistenceDispatcher]:
    """
    Load the stored plan, tasks and focus sessions and return a live session.

    Args:
        backend: storage backend (default: local JSON files)
        categories: sub-goal categories (default: from rules.yaml)
        action_logger: mutation audit log (default: per logging.action_log)
        dispatcher_config: overrides for the ``persistence`` config section
        on_error: called with each PersistenceError (worker thread)

    Returns:
        (coordinator, dispatcher); call ``dispatcher.close()`` when done.
    """
    backend = backend or default_backend()
    cats = list(categories) if categories is not None else get_categories()
    if action_logger is None and get_logging_config().get("action_log"):
        action_logger = ActionLogger()

    plan_records = backend.load_plan()
    task_records = backend.list_tasks()
    session_records = backend.list_focus_sessions()
    coordinator = MutationCoordinator.from_records(
        plan_records, task_records, cats, action_logger, session_records
    )

    dispatcher = PersistenceDispatcher(backend, dispatcher_config, on_error)
    dispatcher.attach(coordinator)
    if plan_records is None:
        # First run: store the empty skeleton so later loads find nine grids.
        dispatcher.schedule_plan_save(coordinator.plan_records())
    logger.info("Session opened (%d tasks)", len(coordinator.all_tasks()))
    return coordinator, dispatcher
