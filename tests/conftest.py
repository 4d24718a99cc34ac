"""Shared fixtures: fake backend, controllable executor and clock, queue wiring."""

import json
from concurrent.futures import Future
from dataclasses import dataclass, field
from pathlib import Path
from typing import List

import pytest

from claw_core.agents import AgentStore
from claw_core.backends import BackendStartError, ExecutionBackend, UnitRef
from claw_core.config import LimitsConfig
from claw_core.cursors import CursorTracker
from claw_core.events import CallbackSubscriber, EventBus
from claw_core.groups import GroupRegistry
from claw_core.inbox import MessageInbox
from claw_core.ipc import Channel, Mailbox
from claw_core.lifecycle import LifecycleManager
from claw_core.models import ExecutionMode, InboundMessage
from claw_core.queue import GroupQueue


# =============================================================================
# Test doubles
# =============================================================================


class FakeBackend(ExecutionBackend):
    """Backend whose units are plain ``UnitRef`` objects; terminate kills instantly."""

    def __init__(self, mode: ExecutionMode):
        self.mode = mode
        self.fail_start = False
        self.started: List[str] = []
        self.cleaned: List[str] = []
        self.terminated: List[str] = []
        self._seq = 0

    def start(self, group, agent_id, mailbox):
        if self.fail_start:
            raise BackendStartError("engine unavailable", self.mode)
        mailbox.reset()
        self._seq += 1
        self.started.append(group.jid)
        return UnitRef(unit_id=f"{self.mode.value}-{self._seq}", mode=self.mode)

    def probe(self, unit):
        return not unit.exited.is_set()

    def wait(self, unit, timeout):
        return unit.exited.is_set()

    def terminate(self, unit, grace):
        self.terminated.append(unit.unit_id)
        unit.exited.set()

    def kill(self, unit):
        unit.exited.set()

    def cleanup(self, unit):
        self.cleaned.append(unit.unit_id)


class ControlledExecutor:
    """Runs submitted work inline, or holds it while ``paused``."""

    def __init__(self):
        self.paused = False
        self.pending = []
        self.errors: List[BaseException] = []

    def submit(self, fn, *args, **kwargs):
        future = Future()
        if self.paused:
            self.pending.append((future, fn, args, kwargs))
        else:
            self._run(future, fn, args, kwargs)
        return future

    def _run(self, future, fn, args, kwargs):
        try:
            future.set_result(fn(*args, **kwargs))
        except Exception as e:
            self.errors.append(e)
            future.set_exception(e)

    def run_pending(self):
        """Resume inline execution and drain everything held so far."""
        self.paused = False
        while self.pending:
            self._run(*self.pending.pop(0))

    def shutdown(self, wait=True, cancel_futures=False):
        pass


class FakeClock:
    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# =============================================================================
# Helpers
# =============================================================================


def make_message(jid: str, n: int, content: str = None) -> InboundMessage:
    return InboundMessage(
        id=f"m{n}",
        chat_jid=jid,
        content=content or f"hello {n}",
        timestamp=f"2026-01-01T00:{n // 60:02d}:{n % 60:02d}Z",
        sender="user@example.com",
        sender_name="User",
    )


def append_record(mailbox: Mailbox, channel: Channel, record, name: str = "out.jsonl") -> Path:
    """Append one JSON line (or a raw string) to a unit's outbound mailbox."""
    directory = mailbox.channel_dir(channel)
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / name
    line = record if isinstance(record, str) else json.dumps(record)
    with open(path, "a", encoding="utf-8") as f:
        f.write(line + "\n")
    return path


@dataclass
class QueueEnv:
    tmp: Path
    registry: GroupRegistry
    agents: AgentStore
    cursors: CursorTracker
    inbox: MessageInbox
    bus: EventBus
    lifecycle: LifecycleManager
    limits: LimitsConfig
    backends: dict
    executor: ControlledExecutor
    clock: FakeClock
    queue: GroupQueue
    statuses: list = field(default_factory=list)
    replies: list = field(default_factory=list)

    @property
    def ipc_dir(self) -> Path:
        return self.tmp / "ipc"

    def add_group(self, jid: str, folder: str, mode: ExecutionMode = ExecutionMode.CONTAINER):
        return self.registry.register(jid, folder, folder, mode)

    def handle(self, jid: str):
        return self.queue._handles.get(jid)

    def mailbox(self, folder: str, agent_id: str = None) -> Mailbox:
        return Mailbox.for_group(self.ipc_dir, folder, agent_id)

    def result(self, folder: str, status: str = "success", **extra) -> None:
        append_record(self.mailbox(folder), Channel.TASKS, {"type": "result", "status": status, **extra})

    def ack_inputs(self, folder: str) -> List[str]:
        mailbox = self.mailbox(folder)
        names = mailbox.pending_inputs()
        for name in names:
            append_record(mailbox, Channel.TASKS, {"type": "ack", "file": name})
        return names

    def statuses_for(self, agent_id: str) -> List[str]:
        return [s for (_, aid, s, *_rest) in self.statuses if aid == agent_id]


def build_env(tmp_path: Path, own_pool: bool = False, **limit_overrides) -> QueueEnv:
    limits_kwargs = dict(
        max_concurrent_containers=2,
        max_concurrent_host_processes=1,
        run_timeout_seconds=60.0,
        idle_timeout_seconds=30.0,
        max_output_bytes=100,
        stop_grace_seconds=1.0,
        max_corrupt_records=2,
    )
    limits_kwargs.update(limit_overrides)
    limits = LimitsConfig(**limits_kwargs)

    bus = EventBus()
    registry = GroupRegistry(tmp_path / "groups.json")
    agents = AgentStore(tmp_path / "agents.json", bus)
    cursors = CursorTracker(tmp_path / "router_state.json")
    inbox = MessageInbox(tmp_path / "messages")
    lifecycle = LifecycleManager(limits)
    backends = {
        ExecutionMode.CONTAINER: FakeBackend(ExecutionMode.CONTAINER),
        ExecutionMode.HOST: FakeBackend(ExecutionMode.HOST),
    }
    executor = ControlledExecutor()
    clock = FakeClock()
    queue = GroupQueue(
        registry=registry,
        agents=agents,
        cursors=cursors,
        inbox=inbox,
        backends=backends,
        lifecycle=lifecycle,
        bus=bus,
        limits=limits,
        ipc_dir=tmp_path / "ipc",
        executor=None if own_pool else executor,
        clock=clock,
    )
    env = QueueEnv(
        tmp=tmp_path, registry=registry, agents=agents, cursors=cursors,
        inbox=inbox, bus=bus, lifecycle=lifecycle, limits=limits,
        backends=backends, executor=executor, clock=clock, queue=queue,
    )
    bus.register(CallbackSubscriber(
        on_status=lambda *args: env.statuses.append(args),
        on_reply=lambda *args: env.replies.append(args),
        name="recorder",
    ))
    return env


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def env(tmp_path):
    """Queue wired to fake backends, inline executor and a fake clock."""
    return build_env(tmp_path)


@pytest.fixture
def make_env(tmp_path):
    """Factory for a queue environment with custom limits."""
    def _make(own_pool=False, **limit_overrides):
        return build_env(tmp_path, own_pool=own_pool, **limit_overrides)
    return _make
