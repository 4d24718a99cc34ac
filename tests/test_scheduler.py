"""
Tests for TaskScheduler: schedule validation, next-run calculation, firing, history.
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from claw_core.scheduler import (
    MAX_RUNS_KEPT,
    SCHEDULER_SENDER,
    TaskScheduler,
    calculate_next_run,
    validate_schedule,
)


START = datetime(2026, 3, 2, 8, 30, tzinfo=timezone.utc)


class MutableClock:
    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return MutableClock()


@pytest.fixture
def submit():
    return MagicMock(return_value={"status": "started"})


@pytest.fixture
def scheduler(tmp_path, clock, submit):
    return TaskScheduler(tasks_file=tmp_path / "tasks" / "tasks.json", submit=submit, clock=clock)


# =============================================================================
# Schedule helpers
# =============================================================================


class TestValidateSchedule:
    """Tests for validate_schedule."""

    @pytest.mark.parametrize("schedule_type,value", [
        ("cron", "*/5 * * * *"),
        ("interval", "60000"),
        ("once", "2026-04-01T12:00:00"),
        ("once", "2026-04-01T12:00:00Z"),
    ])
    def test_accepts_valid_schedules(self, schedule_type, value):
        validate_schedule(schedule_type, value)

    @pytest.mark.parametrize("schedule_type,value", [
        ("cron", "every monday"),
        ("interval", "soon"),
        ("interval", "0"),
        ("once", "tomorrow"),
        ("weekly", "1"),
    ])
    def test_rejects_invalid_schedules(self, schedule_type, value):
        with pytest.raises(ValueError):
            validate_schedule(schedule_type, value)


class TestCalculateNextRun:
    """Tests for calculate_next_run."""

    def test_cron(self):
        assert calculate_next_run("cron", "0 9 * * *", START) == datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

    def test_interval_is_milliseconds(self):
        assert calculate_next_run("interval", "90000", START) == START + timedelta(seconds=90)

    def test_once_in_future(self):
        assert calculate_next_run("once", "2026-03-02T10:00:00Z", START) == datetime(
            2026, 3, 2, 10, 0, tzinfo=timezone.utc
        )

    def test_once_in_past_is_none(self):
        assert calculate_next_run("once", "2026-03-01T10:00:00", START) is None


# =============================================================================
# Scheduler
# =============================================================================


class TestTaskManagement:
    """Tests for create / pause / resume / delete."""

    def test_create_sets_next_run(self, scheduler):
        task = scheduler.create_task("team@g.us", "Check the build", "interval", "3600000")

        assert task.status == "active"
        assert task.next_run == (START + timedelta(hours=1)).isoformat()
        assert scheduler.get_task(task.id) is task

    def test_create_rejects_bad_input(self, scheduler):
        with pytest.raises(ValueError):
            scheduler.create_task("team@g.us", "x", "cron", "not a cron")
        with pytest.raises(ValueError):
            scheduler.create_task("team@g.us", "   ", "interval", "1000")

    def test_duplicate_id_rejected(self, scheduler):
        scheduler.create_task("team@g.us", "x", "interval", "1000", task_id="t1")
        with pytest.raises(ValueError):
            scheduler.create_task("team@g.us", "y", "interval", "1000", task_id="t1")

    def test_tasks_persist_across_instances(self, scheduler, tmp_path, clock):
        task = scheduler.create_task("team@g.us", "Daily report", "cron", "0 9 * * *")

        reloaded = TaskScheduler(tasks_file=tmp_path / "tasks" / "tasks.json", clock=clock)

        assert reloaded.get_task(task.id).to_dict() == task.to_dict()

    def test_list_filters_by_group(self, scheduler):
        scheduler.create_task("a@g.us", "one", "interval", "1000")
        scheduler.create_task("b@g.us", "two", "interval", "1000")

        assert [t.group_jid for t in scheduler.list_tasks("a@g.us")] == ["a@g.us"]
        assert len(scheduler.list_tasks()) == 2

    def test_pause_and_resume(self, scheduler, clock):
        task = scheduler.create_task("team@g.us", "ping", "interval", "60000")

        assert scheduler.pause_task(task.id) is True
        assert scheduler.pause_task(task.id) is False
        clock.advance(minutes=5)
        assert scheduler.check_due() == []

        assert scheduler.resume_task(task.id) is True
        assert scheduler.get_task(task.id).next_run == (clock.now + timedelta(minutes=1)).isoformat()

    def test_delete(self, scheduler):
        task = scheduler.create_task("team@g.us", "ping", "interval", "60000")

        assert scheduler.delete_task(task.id) is True
        assert scheduler.delete_task(task.id) is False
        assert scheduler.get_task(task.id) is None


class TestFiring:
    """Tests for check_due and trigger_task."""

    def test_due_task_submits_message(self, scheduler, clock, submit):
        task = scheduler.create_task("team@g.us", "Check the build", "interval", "60000")

        assert scheduler.check_due() == []
        clock.advance(minutes=1)
        assert scheduler.check_due() == [task.id]

        msg = submit.call_args[0][0]
        assert msg.chat_jid == "team@g.us"
        assert msg.content == "Check the build"
        assert msg.sender == SCHEDULER_SENDER
        assert msg.id.startswith(f"task-{task.id}-")

        updated = scheduler.get_task(task.id)
        assert updated.run_count == 1
        assert updated.last_run == clock.now.isoformat()
        assert updated.next_run == (clock.now + timedelta(minutes=1)).isoformat()

    def test_once_task_completes_after_firing(self, scheduler, clock, submit):
        task = scheduler.create_task("team@g.us", "Reminder", "once", "2026-03-02T08:31:00Z")
        clock.advance(minutes=2)

        scheduler.check_due()
        scheduler.check_due()

        assert submit.call_count == 1
        updated = scheduler.get_task(task.id)
        assert updated.status == "completed"
        assert updated.next_run is None

    def test_once_task_in_past_fires_on_next_check(self, scheduler, submit):
        scheduler.create_task("team@g.us", "Catch up", "once", "2026-03-01T00:00:00")

        assert len(scheduler.check_due()) == 1
        assert submit.call_count == 1

    def test_run_history_records_status_newest_first(self, scheduler, clock, submit):
        task = scheduler.create_task("ghost@g.us", "ping", "interval", "1000")
        submit.side_effect = [{"status": "started"}, {"status": "unknown_group"}]

        clock.advance(seconds=1)
        scheduler.check_due()
        clock.advance(seconds=1)
        scheduler.check_due()

        runs = scheduler.get_task_runs(task.id)
        assert [r["status"] for r in runs] == ["unknown_group", "started"]
        assert runs[0]["error"] == "Group not found: ghost@g.us"
        assert runs[1]["error"] is None

    def test_run_history_is_capped(self, scheduler, clock):
        task = scheduler.create_task("team@g.us", "ping", "interval", "1000")

        for _ in range(MAX_RUNS_KEPT + 5):
            clock.advance(seconds=1)
            scheduler.check_due()

        assert len(scheduler.get_task_runs(task.id, limit=1000)) == MAX_RUNS_KEPT
        assert scheduler.get_task(task.id).run_count == MAX_RUNS_KEPT + 5

    def test_trigger_task_fires_immediately(self, scheduler, submit):
        task = scheduler.create_task("team@g.us", "ping", "cron", "0 0 1 1 *")

        assert scheduler.trigger_task(task.id) == {"status": "started"}
        assert submit.call_count == 1
        assert scheduler.trigger_task("missing")["status"] == "error"

    def test_start_requires_submit(self, tmp_path, clock):
        scheduler = TaskScheduler(tasks_file=tmp_path / "tasks.json", clock=clock)
        with pytest.raises(RuntimeError):
            scheduler.start()

    def test_start_and_stop(self, scheduler):
        scheduler.start()
        try:
            assert scheduler.is_running()
            assert scheduler.get_status()["status"] == "running"
        finally:
            scheduler.stop()
        assert not scheduler.is_running()
