"""
CLI_MAIN
========

Command-line interface for the claw_core scheduler.

Commands:
    serve               Run the scheduler in the foreground
    status              Show the status snapshot of a running scheduler
    groups              List registered groups
    group-add           Register a group

    # Scheduler commands
    tasks               List scheduled tasks
    task-create         Create a new task
    task-delete         Delete a task
    task-runs           Get task run history

Usage:
    python -m claw_core.cli serve
    python -m claw_core.cli status
    python -m claw_core.cli group-add team@g.us team --name "Team chat" --mode host
    python -m claw_core.cli task-create team@g.us "Post the stand-up summary" --cron "0 9 * * 1-5"
    python -m claw_core.cli task-create team@g.us "Check the build" --interval 3600000
    python -m claw_core.cli tasks
"""

import argparse
import json
import signal
import threading
from pathlib import Path
from typing import Optional

from ..config import ConfigError, get_config_manager
from ..groups import GroupRegistry
from ..logging_config import setup_logging
from ..models import ExecutionMode
from ..utils import read_json_dict


def get_config():
    """Get the global config with error handling."""
    try:
        return get_config_manager().global_config
    except ConfigError as e:
        print(f"Configuration error: {e}")
        return None


def get_scheduler():
    """Task store view; the running ``serve`` process picks changes up on reload."""
    config = get_config()
    if config is None:
        return None
    from ..scheduler import TaskScheduler
    return TaskScheduler(tasks_file=config.paths.tasks_dir / "tasks.json")


def get_registry() -> Optional[GroupRegistry]:
    config = get_config()
    if config is None:
        return None
    return GroupRegistry(Path(config.paths.data_dir) / "groups.json")


# ============================================================================
# CLI COMMANDS
# ============================================================================

def cli_serve() -> None:
    """Run the scheduler until SIGINT/SIGTERM."""
    config = get_config()
    if config is None:
        return

    setup_logging(
        level=config.logging_level,
        log_file=config.logging_file,
        data_dir=config.paths.data_dir,
    )

    from ..runtime import ClawRuntime
    runtime = ClawRuntime(config)
    stop_event = threading.Event()

    def _handle_signal(signum, frame):
        stop_event.set()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    runtime.start()
    print(f"claw_core running (data: {config.paths.data_dir}). Press Ctrl+C to stop.")
    stop_event.wait()
    print("Stopping...")
    runtime.stop()


def cli_status() -> dict:
    """Read the status snapshot written by a running scheduler."""
    config = get_config()
    if config is None:
        return {"error": "Configuration not available"}

    from ..runtime import STATUS_FILE
    snapshot = read_json_dict(Path(config.paths.data_dir) / STATUS_FILE)
    if not snapshot:
        return {"error": "No status snapshot found (is the scheduler running?)"}
    return snapshot


def cli_groups() -> list:
    """List registered groups."""
    registry = get_registry()
    if registry is None:
        return []
    return [g.to_dict() for g in registry.list_groups()]


def cli_group_add(jid: str, folder: str, name: Optional[str], mode: str) -> dict:
    """Register a group."""
    registry = get_registry()
    if registry is None:
        return {"error": "Configuration not available"}
    try:
        group = registry.register(jid, name or folder, folder, ExecutionMode(mode))
    except ValueError as e:
        return {"error": str(e)}
    return {"success": True, "group": group.to_dict()}


def cli_tasks_list(group_jid: Optional[str] = None) -> list:
    """List all scheduled tasks."""
    scheduler = get_scheduler()
    if scheduler is None:
        return []
    return [t.to_dict() for t in scheduler.list_tasks(group_jid)]


def cli_task_create(
    group_jid: str,
    prompt: str,
    interval: Optional[int] = None,
    cron: Optional[str] = None,
    once: Optional[str] = None,
) -> dict:
    """Create a new task."""
    scheduler = get_scheduler()
    if scheduler is None:
        return {"error": "Scheduler not available"}

    if cron:
        schedule_type, schedule_value = "cron", cron
    elif interval is not None:
        schedule_type, schedule_value = "interval", str(interval)
    elif once:
        schedule_type, schedule_value = "once", once
    else:
        return {"error": "One of --cron, --interval or --once is required"}

    registry = get_registry()
    if registry is not None and registry.get(group_jid) is None:
        return {"error": f"Unknown group: {group_jid}"}

    try:
        task = scheduler.create_task(group_jid, prompt, schedule_type, schedule_value)
    except ValueError as e:
        return {"error": str(e)}
    return {"success": True, "task_id": task.id, "next_run": task.next_run}


def cli_task_delete(task_id: str) -> dict:
    """Delete a task."""
    scheduler = get_scheduler()
    if scheduler is None:
        return {"error": "Scheduler not available"}

    if scheduler.delete_task(task_id):
        return {"success": True, "message": f"Task {task_id} deleted"}
    return {"error": f"Task not found: {task_id}"}


def cli_task_runs(task_id: str, limit: int = 10) -> list:
    """Get task run history."""
    scheduler = get_scheduler()
    if scheduler is None:
        return []
    return scheduler.get_task_runs(task_id, limit=limit)


# ============================================================================
# ENTRY POINT
# ============================================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="claw",
        description="claw_core - per-group scheduler for agent containers and host processes",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
EXAMPLES
========

  %(prog)s serve
  %(prog)s status
  %(prog)s group-add team@g.us team --mode container
  %(prog)s task-create team@g.us "Daily report" --cron "0 9 * * *"
  %(prog)s task-runs task-1a2b3c4d5e --limit 5

Groups and tasks written here are read by a running 'serve' process:
tasks within a few seconds, groups on its next start.
        """
    )
    parser.add_argument(
        "--version", "-V",
        action="version",
        version="%(prog)s 0.1.0"
    )

    subparsers = parser.add_subparsers(
        dest="command",
        title="commands",
        metavar="<command>"
    )

    subparsers.add_parser("serve", help="Run the scheduler in the foreground")

    status_parser = subparsers.add_parser("status", help="Show scheduler status")
    status_parser.add_argument("--json", "-j", action="store_true", help="Output as JSON")

    subparsers.add_parser("groups", help="List registered groups")

    group_add_parser = subparsers.add_parser("group-add", help="Register a group")
    group_add_parser.add_argument("jid", help="Chat id of the group")
    group_add_parser.add_argument("folder", help="Workspace folder name")
    group_add_parser.add_argument("--name", "-n", help="Display name (default: folder)")
    group_add_parser.add_argument(
        "--mode", "-m",
        choices=[m.value for m in ExecutionMode],
        default=ExecutionMode.CONTAINER.value,
        help="Execution mode (default: container)"
    )

    tasks_parser = subparsers.add_parser("tasks", help="List scheduled tasks")
    tasks_parser.add_argument("--group", "-g", help="Filter by group jid")

    task_create_parser = subparsers.add_parser("task-create", help="Create a scheduled task")
    task_create_parser.add_argument("group_jid", help="Group the prompt is sent to")
    task_create_parser.add_argument("prompt", help="Prompt text")
    schedule = task_create_parser.add_mutually_exclusive_group(required=True)
    schedule.add_argument("--cron", help="Cron expression")
    schedule.add_argument("--interval", type=int, help="Interval in milliseconds")
    schedule.add_argument("--once", help="ISO timestamp to run at")

    task_delete_parser = subparsers.add_parser("task-delete", help="Delete a task")
    task_delete_parser.add_argument("task_id", help="Task ID")

    task_runs_parser = subparsers.add_parser("task-runs", help="Get task run history")
    task_runs_parser.add_argument("task_id", help="Task ID")
    task_runs_parser.add_argument("--limit", "-l", type=int, default=10,
                                  help="Number of runs to show (default: 10)")
    return parser


def main(argv=None):
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return

    if args.command == "serve":
        cli_serve()

    elif args.command == "status":
        result = cli_status()
        if "error" in result:
            print(f"Error: {result['error']}")
        elif args.json:
            print(json.dumps(result, indent=2))
        else:
            queue = result.get("queue", {})
            print(f"Updated: {result.get('updated_at', '')[:19]} (pid {result.get('pid')})")
            print(f"Containers: {queue.get('active_containers', 0)}/{queue.get('max_concurrent_containers', '?')}")
            print(f"Host processes: {queue.get('active_host_processes', 0)}/{queue.get('max_concurrent_host_processes', '?')}")
            print(f"Waiting: {queue.get('waiting', 0)}")
            for jid, info in queue.get("groups", {}).items():
                print(f"  [{info.get('state')}] {jid} ({info.get('execution_mode')}) {info.get('agent_status') or ''}")

    elif args.command == "groups":
        groups = cli_groups()
        if groups:
            for group in groups:
                print(f"  {group['jid']} -> {group['folder']} ({group['execution_mode']})")
        else:
            print("No registered groups.")

    elif args.command == "group-add":
        result = cli_group_add(args.jid, args.folder, args.name, args.mode)
        if "error" in result:
            print(f"Error: {result['error']}")
        else:
            print(f"Registered: {result['group']['jid']}")

    elif args.command == "tasks":
        tasks = cli_tasks_list(args.group)
        if tasks:
            print(f"\nScheduled tasks ({len(tasks)}):")
            for task in tasks:
                next_run = (task.get("next_run") or "N/A")[:19]
                print(f"  [{task['status']}] {task['id']} -> {task['group_jid']}")
                print(f"      {task['schedule_type']}: {task['schedule_value']}, Runs: {task.get('run_count', 0)}")
                print(f"      Next: {next_run}")
        else:
            print("No scheduled tasks.")

    elif args.command == "task-create":
        result = cli_task_create(
            group_jid=args.group_jid,
            prompt=args.prompt,
            interval=args.interval,
            cron=args.cron,
            once=args.once,
        )
        if "error" in result:
            print(f"Error: {result['error']}")
        else:
            print(f"Created task: {result['task_id']}")
            if result.get('next_run'):
                print(f"Next run: {result['next_run']}")

    elif args.command == "task-delete":
        result = cli_task_delete(args.task_id)
        if "error" in result:
            print(f"Error: {result['error']}")
        else:
            print(result['message'])

    elif args.command == "task-runs":
        runs = cli_task_runs(args.task_id, args.limit)
        if runs:
            print(f"\nRun history for {args.task_id}:")
            for run in runs:
                print(f"  [{run.get('status', 'unknown')}] {run.get('run_at', '')[:19]}")
        else:
            print(f"No runs found for task: {args.task_id}")


if __name__ == "__main__":
    main()
