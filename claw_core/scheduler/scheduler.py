"""
TASK_SCHEDULER
==============

Scheduled prompts for groups.

The scheduler:
- Keeps tasks in one JSON file: {data_dir}/tasks/tasks.json
- Calculates next run times (cron, interval, once)
- Fires due tasks by submitting a message into the group queue
- Keeps the last 50 runs per task

A fired task is an ordinary inbound message (sender ``__scheduler__``), so
it goes through the same cursor, admission and mailbox path as a chat
message. The scheduler never talks to a backend itself.

Schedule values:
    cron      standard 5-field expression, "*/5 * * * *"
    interval  milliseconds between runs, "300000"
    once      ISO-8601 timestamp, "2026-02-01T15:30:00" (naive = UTC)

Usage:
    from claw_core.scheduler import TaskScheduler

    scheduler = TaskScheduler(tasks_file=paths.tasks_dir / "tasks.json",
                              submit=queue.submit_message)
    scheduler.create_task("chat@g.us", "Post the daily summary", "cron", "0 9 * * *")
    scheduler.start()
"""

import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Dict, List, Optional

from croniter import croniter

from ..models import InboundMessage
from ..utils import read_json_dict, write_json_atomic

logger = logging.getLogger(__name__)

SCHEDULER_SENDER = "__scheduler__"
MAX_RUNS_KEPT = 50
TASK_RELOAD_INTERVAL_S = 10.0

SCHEDULE_TYPES = ("cron", "interval", "once")
TASK_STATUSES = ("active", "paused", "completed")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
    """Parse ISO datetime string."""
    if not value:
        return None
    try:
        dt = datetime.fromisoformat(value.replace('Z', '+00:00'))
    except (ValueError, TypeError):
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


# ============================================================================
# DATA STRUCTURES
# ============================================================================

@dataclass
class ScheduledTask:
    """A scheduled prompt for one group."""
    id: str
    group_jid: str
    prompt: str
    schedule_type: str  # "cron", "interval", "once"
    schedule_value: str
    status: str = "active"  # "active", "paused", "completed"
    next_run: Optional[str] = None
    last_run: Optional[str] = None
    run_count: int = 0
    created_at: str = field(default_factory=lambda: _utc_now().isoformat())

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "group_jid": self.group_jid,
            "prompt": self.prompt,
            "schedule_type": self.schedule_type,
            "schedule_value": self.schedule_value,
            "status": self.status,
            "next_run": self.next_run,
            "last_run": self.last_run,
            "run_count": self.run_count,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "ScheduledTask":
        return cls(
            id=data["id"],
            group_jid=data["group_jid"],
            prompt=data.get("prompt", ""),
            schedule_type=data.get("schedule_type", "once"),
            schedule_value=str(data.get("schedule_value", "")),
            status=data.get("status", "active"),
            next_run=data.get("next_run"),
            last_run=data.get("last_run"),
            run_count=data.get("run_count", 0),
            created_at=data.get("created_at") or _utc_now().isoformat(),
        )


def validate_schedule(schedule_type: str, schedule_value: str) -> None:
    """
    Raises:
        ValueError: unknown schedule type or a value that type cannot use.
    """
    if schedule_type not in SCHEDULE_TYPES:
        raise ValueError(f"Unknown schedule type: {schedule_type!r}")

    if schedule_type == "cron":
        if not croniter.is_valid(schedule_value):
            raise ValueError(f"Invalid cron expression: {schedule_value!r}")
    elif schedule_type == "interval":
        try:
            ms = int(schedule_value)
        except (TypeError, ValueError):
            raise ValueError(f"Interval must be milliseconds, got {schedule_value!r}") from None
        if ms <= 0:
            raise ValueError("Interval must be positive")
    elif _parse_datetime(schedule_value) is None:
        raise ValueError(f"Invalid timestamp: {schedule_value!r}")


def calculate_next_run(
    schedule_type: str,
    schedule_value: str,
    now: datetime,
) -> Optional[datetime]:
    """
    When the task should next run, computed from ``now``.

    Returns None for a ``once`` task whose time has passed; the caller
    decides whether that means "due now" (never fired) or "done".
    """
    if schedule_type == "cron":
        return croniter(schedule_value, now).get_next(datetime)

    if schedule_type == "interval":
        return now + timedelta(milliseconds=int(schedule_value))

    if schedule_type == "once":
        run_at = _parse_datetime(schedule_value)
        if run_at and run_at > now:
            return run_at
        return None

    return None


# ============================================================================
# TASK SCHEDULER
# ============================================================================

class TaskScheduler:
    """
    Background scheduler that fires due tasks into the group queue.

    Responsibilities:
    - Persist tasks and run history
    - Calculate next run times
    - Fire tasks when due
    - Manage task lifecycle (pause, resume, complete, delete)
    """

    def __init__(
        self,
        tasks_file: Path,
        submit: Optional[Callable[[InboundMessage], dict]] = None,
        check_interval: float = 1.0,
        clock: Callable[[], datetime] = _utc_now,
    ):
        """
        Args:
            tasks_file: JSON file holding tasks and run history.
            submit: Message entry point of the queue; returns its status dict.
                Only needed when tasks are fired (``start``/``trigger_task``).
            check_interval: How often to check for due tasks (seconds).
            clock: Returns the current aware UTC datetime.
        """
        self.tasks_file = Path(tasks_file)
        self.submit = submit
        self.check_interval = check_interval
        self._clock = clock

        self._tasks: Dict[str, ScheduledTask] = {}
        self._runs: Dict[str, List[dict]] = {}
        self._lock = threading.Lock()
        self._running = False
        self._thread: Optional[threading.Thread] = None
        self._started_at: Optional[datetime] = None
        self._last_check: Optional[datetime] = None

        self.load()

    # ========================================================================
    # PERSISTENCE
    # ========================================================================

    def load(self) -> None:
        """(Re)load tasks and run history from disk."""
        data = read_json_dict(self.tasks_file)
        tasks: Dict[str, ScheduledTask] = {}
        for raw in data.get("tasks", []):
            try:
                task = ScheduledTask.from_dict(raw)
            except (KeyError, TypeError) as e:
                logger.warning(f"Skipping bad task record: {e}")
                continue
            tasks[task.id] = task
        runs = data.get("runs", {})

        with self._lock:
            self._tasks = tasks
            self._runs = runs if isinstance(runs, dict) else {}

    def _save_locked(self) -> None:
        write_json_atomic(self.tasks_file, {
            "tasks": [t.to_dict() for t in self._tasks.values()],
            "runs": self._runs,
        })

    # ========================================================================
    # LIFECYCLE
    # ========================================================================

    def start(self) -> None:
        """Start the scheduler background thread."""
        if self._running:
            return
        if self.submit is None:
            raise RuntimeError("TaskScheduler needs a submit callable to run")

        self._running = True
        self._started_at = self._clock()
        self._thread = threading.Thread(target=self._run_loop, daemon=True, name="task-scheduler")
        self._thread.start()
        logger.info(f"Task scheduler started ({len(self._tasks)} tasks)")

    def stop(self) -> None:
        """Stop the scheduler."""
        self._running = False
        if self._thread:
            self._thread.join(timeout=5.0)
            self._thread = None
        logger.info("Task scheduler stopped")

    def is_running(self) -> bool:
        return self._running

    def get_status(self) -> dict:
        with self._lock:
            total = len(self._tasks)
            active = sum(1 for t in self._tasks.values() if t.status == "active")
        return {
            "status": "running" if self._running else "stopped",
            "running": self._running,
            "started_at": self._started_at.isoformat() if self._started_at else None,
            "last_check": self._last_check.isoformat() if self._last_check else None,
            "check_interval": self.check_interval,
            "total_tasks": total,
            "active_tasks": active,
            "tasks_file": str(self.tasks_file),
        }

    def _run_loop(self) -> None:
        """Main scheduler loop."""
        last_reload = time.monotonic()

        while self._running:
            try:
                # Pick up tasks written by other processes (CLI)
                if time.monotonic() - last_reload >= TASK_RELOAD_INTERVAL_S:
                    self.load()
                    last_reload = time.monotonic()

                self.check_due()
            except Exception as e:
                logger.error(f"Scheduler error: {e}", exc_info=True)

            time.sleep(self.check_interval)

    # ========================================================================
    # FIRING
    # ========================================================================

    def check_due(self) -> List[str]:
        """Fire every active task whose next_run has passed. Returns fired ids."""
        now = self._clock()
        self._last_check = now

        with self._lock:
            due = [
                t for t in self._tasks.values()
                if t.status == "active" and self._is_due(t, now)
            ]

        if due:
            logger.info(f"Found {len(due)} due task(s)")
        for task in due:
            self._fire(task, now)
        return [t.id for t in due]

    @staticmethod
    def _is_due(task: ScheduledTask, now: datetime) -> bool:
        next_run = _parse_datetime(task.next_run)
        return next_run is not None and next_run <= now

    def _fire(self, task: ScheduledTask, now: datetime) -> dict:
        msg = InboundMessage(
            id=f"task-{task.id}-{uuid.uuid4().hex[:8]}",
            chat_jid=task.group_jid,
            content=task.prompt,
            timestamp=now.isoformat(),
            sender=SCHEDULER_SENDER,
            sender_name="Scheduler",
        )
        logger.info(f"Running scheduled task {task.id} for '{task.group_jid}'")
        result = self.submit(msg)

        with self._lock:
            current = self._tasks.get(task.id)
            if current is not None:
                self._after_run_locked(current, now, result)
                self._save_locked()
        return result

    def _after_run_locked(self, task: ScheduledTask, now: datetime, result: dict) -> None:
        task.last_run = now.isoformat()
        task.run_count += 1
        if task.schedule_type == "once":
            task.status = "completed"
            task.next_run = None
        else:
            next_run = calculate_next_run(task.schedule_type, task.schedule_value, now)
            task.next_run = next_run.isoformat() if next_run else None

        status = result.get("status", "unknown")
        entry = {
            "run_at": now.isoformat(),
            "status": status,
            "error": f"Group not found: {task.group_jid}" if status == "unknown_group" else None,
        }
        history = self._runs.setdefault(task.id, [])
        history.append(entry)
        del history[:-MAX_RUNS_KEPT]

    # ========================================================================
    # TASK MANAGEMENT
    # ========================================================================

    def create_task(
        self,
        group_jid: str,
        prompt: str,
        schedule_type: str,
        schedule_value: str,
        task_id: Optional[str] = None,
    ) -> ScheduledTask:
        """
        Create a new task.

        Raises:
            ValueError: invalid schedule, empty prompt or duplicate id.
        """
        schedule_value = str(schedule_value)
        validate_schedule(schedule_type, schedule_value)
        if not prompt.strip():
            raise ValueError("Task prompt must not be empty")

        now = self._clock()
        if schedule_type == "once":
            # A timestamp in the past fires on the next check.
            next_run = _parse_datetime(schedule_value)
        else:
            next_run = calculate_next_run(schedule_type, schedule_value, now)

        task = ScheduledTask(
            id=task_id or f"task-{uuid.uuid4().hex[:10]}",
            group_jid=group_jid,
            prompt=prompt,
            schedule_type=schedule_type,
            schedule_value=schedule_value,
            next_run=next_run.isoformat() if next_run else None,
            created_at=now.isoformat(),
        )
        with self._lock:
            if task.id in self._tasks:
                raise ValueError(f"Task already exists: {task.id}")
            self._tasks[task.id] = task
            self._save_locked()

        logger.info(f"Task created: {task.id} ({schedule_type} {schedule_value}) for '{group_jid}'")
        return task

    def delete_task(self, task_id: str) -> bool:
        with self._lock:
            task = self._tasks.pop(task_id, None)
            if task is None:
                return False
            self._runs.pop(task_id, None)
            self._save_locked()
        logger.info(f"Task deleted: {task_id}")
        return True

    def pause_task(self, task_id: str) -> bool:
        with self._lock:
            task = self._tasks.get(task_id)
            if task is None or task.status != "active":
                return False
            task.status = "paused"
            self._save_locked()
        return True

    def resume_task(self, task_id: str) -> bool:
        """Reactivate a paused task; its next run is recalculated from now."""
        with self._lock:
            task = self._tasks.get(task_id)
            if task is None or task.status != "paused":
                return False
            task.status = "active"
            if task.schedule_type != "once":
                next_run = calculate_next_run(task.schedule_type, task.schedule_value, self._clock())
                task.next_run = next_run.isoformat() if next_run else None
            self._save_locked()
        return True

    def trigger_task(self, task_id: str) -> dict:
        """Fire a task now, regardless of its schedule."""
        with self._lock:
            task = self._tasks.get(task_id)
        if task is None:
            return {"status": "error", "error": "Task not found"}
        if self.submit is None:
            return {"status": "error", "error": "Scheduler has no queue attached"}
        return self._fire(task, self._clock())

    # ========================================================================
    # QUERY METHODS
    # ========================================================================

    def get_task(self, task_id: str) -> Optional[ScheduledTask]:
        with self._lock:
            return self._tasks.get(task_id)

    def list_tasks(self, group_jid: Optional[str] = None) -> List[ScheduledTask]:
        with self._lock:
            tasks = list(self._tasks.values())
        if group_jid:
            tasks = [t for t in tasks if t.group_jid == group_jid]
        return sorted(tasks, key=lambda t: t.created_at)

    def get_task_runs(self, task_id: str, limit: int = 10) -> List[dict]:
        """Most recent runs first."""
        with self._lock:
            runs = list(self._runs.get(task_id, []))
        return list(reversed(runs))[:limit]
