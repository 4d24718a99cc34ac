"""
CLAW_CORE
=========

Single-node scheduler for agent workloads, one serialized unit per
conversational group.

Features:
- Per-group serialization with a FIFO wait list
- Independent ceilings for container and host-process units
- Filesystem mailbox (input batches in, JSON Lines out)
- Idle eviction, run timeout, output ceiling and stop watchdog
- Persistent message cursors and agent status with compare-and-set
- Scheduled prompts (cron, interval, once)

Usage:
    from claw_core import ClawRuntime, InboundMessage

    runtime = ClawRuntime()
    runtime.register_group("team@g.us", "Team chat", "team")
    runtime.start()
    runtime.submit_message(InboundMessage(
        id="m1", chat_jid="team@g.us", content="hello",
        timestamp="2026-01-01T00:00:00+00:00",
    ))
"""

__version__ = "0.1.0"

# Core records
from .models import (
    Agent,
    AgentKind,
    AgentStatus,
    ExecutionHandle,
    ExecutionMode,
    Group,
    HandleState,
    InboundMessage,
    MessageCursor,
)

# Configuration
from .config import (
    ConfigError,
    ConfigManager,
    GlobalConfig,
    get_config_manager,
    load_global_config,
)

# Components
from .agents import AgentStore, InvalidTransition
from .cursors import CursorTracker
from .groups import GroupRegistry
from .inbox import MessageInbox
from .lifecycle import LifecycleManager
from .queue import GroupQueue
from .runtime import ClawRuntime

# Backends
from .backends import BackendStartError, ContainerBackend, ExecutionBackend, HostBackend

# Events
from .events import AgentReplyEvent, AgentStatusEvent, EventBus, EventSubscriber

# Scheduler
from .scheduler import TaskScheduler

__all__ = [
    # Records
    "Agent",
    "AgentKind",
    "AgentStatus",
    "ExecutionHandle",
    "ExecutionMode",
    "Group",
    "HandleState",
    "InboundMessage",
    "MessageCursor",
    # Configuration
    "ConfigError",
    "ConfigManager",
    "GlobalConfig",
    "get_config_manager",
    "load_global_config",
    # Components
    "AgentStore",
    "InvalidTransition",
    "CursorTracker",
    "GroupRegistry",
    "MessageInbox",
    "LifecycleManager",
    "GroupQueue",
    "ClawRuntime",
    # Backends
    "BackendStartError",
    "ContainerBackend",
    "ExecutionBackend",
    "HostBackend",
    # Events
    "AgentReplyEvent",
    "AgentStatusEvent",
    "EventBus",
    "EventSubscriber",
    # Scheduler
    "TaskScheduler",
]
