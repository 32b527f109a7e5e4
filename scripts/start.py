#!/usr/bin/env python3
r"""
Planner Start - launcher for the local planner tools.

Usage:
    python scripts/start.py              (same as summary)
    python scripts/start.py summary      (progress per sub-goal and overall)
    python scripts/start.py today        (tasks scheduled for today)
    python scripts/start.py notify       (watch today's tasks and print alerts)
"""

import logging
import os
import sys
import time
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent

# Add project root to path
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))
os.chdir(str(ROOT))


def _header(title: str) -> None:
    print(f"\n{'=' * 60}")
    print(f"  {title}")
    print(f"{'=' * 60}\n")


def _load_env() -> None:
    """Load .env into os.environ."""
    from dotenv import load_dotenv
    env_path = ROOT / ".env"
    if env_path.exists():
        load_dotenv(env_path, override=True)


def _setup_logging() -> None:
    from mandala.utils.config import get_logging_config
    level = str(get_logging_config().get("level", "INFO")).upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


def _bar(pct: int, width: int = 20) -> str:
    filled = round(width * pct / 100)
    return "#" * filled + "." * (width - filled)


# ── Summary ───────────────────────────────────────────────────

def show_summary() -> None:
    """Print each sub-goal's progress and the plan total."""
    from mandala.persistence import open_session

    coordinator, dispatcher = open_session()
    try:
        plan = coordinator.plan
        _header(f"Goal: {plan.center.title or '(untitled)'}")
        for grid in plan.grids:
            if grid.id == 4:
                continue
            linked = sum(len(c.linked_task_ids) for c in grid.cells)
            print(
                f"  [{grid.id}] {(grid.title or '-')[:28]:<28} "
                f"{_bar(grid.sub_goal_progress)} {grid.sub_goal_progress:>3}%  ({linked} tasks)"
            )
        print(f"\n  Overall: {coordinator.plan_progress()}%")
    finally:
        dispatcher.close()


def show_today() -> None:
    from mandala.persistence import open_session
    from mandala.utils.time_utils import today_str

    coordinator, dispatcher = open_session()
    try:
        _header(f"Tasks for {today_str()}")
        tasks = sorted(coordinator.tasks_for_date(today_str()), key=lambda t: t.start_time or "99:99")
        if not tasks:
            print("  Nothing scheduled.")
        for task in tasks:
            mark = "x" if task.is_completed else " "
            where = coordinator.locate(task.id)
            cell = f"  (grid {where[0]}, cell {where[1]})" if where else ""
            print(f"  [{mark}] {task.start_time or '--:--'}  {task.title}{cell}")
    finally:
        dispatcher.close()


# ── Notify ────────────────────────────────────────────────────

def run_notifier() -> None:
    """Poll today's tasks and print an alert when one is due. Ctrl+C stops."""
    from mandala.core.notifier import ScheduleNotifier
    from mandala.persistence import open_session

    coordinator, dispatcher = open_session()

    def _alert(task) -> None:
        print(f"\a  >>> {task.start_time}  {task.title}")

    notifier = ScheduleNotifier(coordinator.tasks_for_date, on_alert=_alert)
    _header("Schedule notifier (Ctrl+C to stop)")
    notifier.start()
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        print("\n  Stopping...")
    finally:
        notifier.stop()
        dispatcher.close()


COMMANDS = {
    "summary": show_summary,
    "today": show_today,
    "notify": run_notifier,
}


def main() -> None:
    _load_env()
    _setup_logging()
    cmd = sys.argv[1] if len(sys.argv) > 1 else "summary"
    if cmd in ("-h", "--help", "help"):
        print(__doc__)
        return
    handler = COMMANDS.get(cmd)
    if handler is None:
        print(f"Unknown command: {cmd}")
        print(__doc__)
        sys.exit(2)
    handler()


if __name__ == "__main__":
    main()
