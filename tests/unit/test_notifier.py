"""
Unit tests for the schedule notifier (start-time matching, alert-once, snooze).
"""

import sys
import threading
from datetime import datetime
from pathlib import Path

_root = Path(__file__).resolve().parent.parent.parent
if str(_root) not in sys.path:
    sys.path.insert(0, str(_root))

import pytest
from mandala.core.models import Task
from mandala.core.notifier import ScheduleNotifier

DAY = "2026-06-15"


def at(hhmm, day=DAY):
    return datetime.fromisoformat(f"{day}T{hhmm}:00")


class FakeProvider:
    def __init__(self, *tasks):
        self.tasks = list(tasks)

    def __call__(self, day):
        return [t for t in self.tasks if t.scheduled_date == day]


@pytest.fixture
def task():
    return Task("t1", "Stand-up", scheduled_date=DAY, start_time="09:30")


@pytest.fixture
def alerts():
    return []


@pytest.fixture
def notifier(task, alerts):
    return ScheduleNotifier(
        FakeProvider(task), on_alert=alerts.append,
        poll_interval=1, snooze_minutes=5, match_window_minutes=1,
    )


class TestMatching:

    def test_due_at_start_minute(self, notifier, task):
        assert notifier.due_tasks(at("09:30")) == [task]

    @pytest.mark.parametrize("hhmm", ["09:29", "09:31", "10:30"])
    def test_not_due_outside_window(self, notifier, hhmm):
        assert notifier.due_tasks(at(hhmm)) == []

    def test_wider_window(self, task):
        n = ScheduleNotifier(FakeProvider(task), match_window_minutes=3)
        assert n.due_tasks(at("09:32")) == [task]
        assert n.due_tasks(at("09:33")) == []

    def test_completed_skipped(self, notifier, task):
        task.is_completed = True
        assert notifier.due_tasks(at("09:30")) == []

    def test_other_day_skipped(self, notifier):
        assert notifier.due_tasks(at("09:30", day="2026-06-16")) == []

    def test_no_start_time_skipped(self, notifier, task):
        task.start_time = None
        assert notifier.due_tasks(at("09:30")) == []

    def test_malformed_time_skipped(self, alerts):
        bad = Task("bad", "bad", scheduled_date=DAY, start_time="9h30")
        good = Task("ok", "ok", scheduled_date=DAY, start_time="09:30")
        n = ScheduleNotifier(FakeProvider(bad, good), on_alert=alerts.append)
        assert n.check(at("09:30")) == [good]


class TestAlerts:

    def test_alerts_once(self, notifier, alerts, task):
        notifier.check(at("09:30"))
        notifier.check(at("09:30"))
        assert alerts == [task]

    def test_rescheduled_task_alerts_again(self, notifier, alerts, task):
        notifier.check(at("09:30"))
        task.start_time = "10:00"
        notifier.check(at("10:00"))
        assert alerts == [task, task]

    def test_snooze_then_remind(self, notifier, alerts, task):
        notifier.check(at("09:30"))
        until = notifier.snooze(task.id, now=at("09:30"))
        assert until == at("09:35")
        assert notifier.check(at("09:34")) == []
        assert notifier.check(at("09:35")) == [task]
        assert notifier.check(at("09:36")) == []
        assert alerts == [task, task]

    def test_clear_snooze(self, notifier, alerts, task):
        notifier.check(at("09:30"))
        notifier.snooze(task.id, minutes=1, now=at("09:30"))
        notifier.clear_snooze(task.id)
        assert notifier.check(at("09:40")) == []

    def test_failing_callback_does_not_stop_others(self, task):
        seen = []

        def broken(t):
            raise RuntimeError("no display")

        n = ScheduleNotifier(FakeProvider(task), on_alert=broken)
        n.add_callback(seen.append)
        n.check(at("09:30"))
        assert seen == [task]

    def test_uses_clock_when_now_omitted(self, task, alerts):
        n = ScheduleNotifier(FakeProvider(task), on_alert=alerts.append, clock=lambda: at("09:30"))
        n.check()
        assert alerts == [task]


def test_start_and_stop(task):
    fired = threading.Event()
    n = ScheduleNotifier(
        FakeProvider(task), on_alert=lambda t: fired.set(), poll_interval=0.05, clock=lambda: at("09:30"),
    )
    n.start()
    try:
        assert fired.wait(2)
    finally:
        n.stop(timeout=2)
    assert n._thread is None
