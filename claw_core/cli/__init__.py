"""
CLI MODULE
==========

Command-line interface for the claw_core scheduler.

Usage:
    python -m claw_core.cli serve
    python -m claw_core.cli status
    python -m claw_core.cli tasks
"""

from .main import main, cli_status, cli_tasks_list, cli_task_create, cli_task_delete

__all__ = [
    'main',
    'cli_status',
    'cli_tasks_list',
    'cli_task_create',
    'cli_task_delete',
]
