"""
SCHEDULER MODULE
=================

Scheduled prompts for groups.

Features:
- Interval schedules (every N milliseconds)
- Cron schedules (standard cron expressions)
- One-shot schedules (run once at specific time)
- Run history tracking
"""

from .scheduler import (
    MAX_RUNS_KEPT,
    SCHEDULER_SENDER,
    ScheduledTask,
    TaskScheduler,
    calculate_next_run,
    validate_schedule,
)

__all__ = [
    'MAX_RUNS_KEPT',
    'SCHEDULER_SENDER',
    'ScheduledTask',
    'TaskScheduler',
    'calculate_next_run',
    'validate_schedule',
]
