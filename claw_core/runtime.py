"""
CLAW RUNTIME
============

Process-level wiring for the scheduler: builds every component from the
global config, runs the mailbox poll / lifecycle sweep loop and exposes the
operations channel adapters and the CLI call.

Architecture
------------
A single daemon thread (``_run_loop``) ticks every ``ipc_poll_interval``:

1. ``queue.pump_mailboxes()``  deliver pending input, collect unit output
2. ``queue.sweep()``           idle eviction, timeouts, stop watchdog
   (at most once per ``sweep_interval``)
3. status snapshot to ``{data_dir}/.runtime_status.json``

Backend start/stop work runs on the queue's thread pool, so a slow engine
never stalls polling. Scheduled tasks run on their own daemon thread and
enter through ``submit_message`` like any chat message.

On ``start()`` every registered group whose inbox holds messages past its
committed cursor is signalled, which resumes work interrupted by a crash or
restart. Units still running from the previous process are adopted by the
backends.

Usage:
    runtime = ClawRuntime()
    runtime.register_group("chat@g.us", "Team chat", "team")
    runtime.on_agent_status_change(print_status)
    runtime.start()
    runtime.submit_message(InboundMessage(...))
"""

import logging
import os
import shutil
import threading
import time
import uuid
from pathlib import Path
from typing import Callable, Dict, List, Optional

from .agents import AgentStore
from .backends import ContainerBackend, ExecutionBackend, HostBackend
from .config import GlobalConfig, get_config_manager
from .cursors import CursorTracker
from .events import CallbackSubscriber, EventBus, WebhookSubscriber
from .groups import GroupRegistry
from .inbox import MessageInbox
from .ipc import Mailbox
from .lifecycle import LifecycleManager
from .models import (
    AgentKind,
    AgentStatus,
    ExecutionMode,
    Group,
    InboundMessage,
    MessageCursor,
    conversation_jid,
    utc_now_iso,
)
from .queue import GroupQueue
from .scheduler import TaskScheduler
from .utils import write_json_atomic

logger = logging.getLogger(__name__)

STATUS_FILE = ".runtime_status.json"
REMOVED_REASON = "__removed__"
GROUP_REMOVED_REASON = "group removed"
CONVERSATION_SENDER = "__conversation__"


class ClawRuntime:
    """
    Owns the scheduler components for one process.

    Every component can be replaced through the constructor, which is how
    the tests drive the queue with a fake backend and an inline executor.
    """

    def __init__(
        self,
        config: Optional[GlobalConfig] = None,
        backends: Optional[Dict[ExecutionMode, ExecutionBackend]] = None,
        executor=None,
        clock: Callable[[], float] = time.time,
        enable_scheduler: bool = True,
    ):
        self.config = config or get_config_manager().global_config
        paths = self.config.paths
        data_dir = Path(paths.data_dir)
        data_dir.mkdir(parents=True, exist_ok=True)
        self._data_dir = data_dir
        self._status_file = data_dir / STATUS_FILE

        self.bus = EventBus()
        if self.config.events.webhook_url:
            self.bus.register(WebhookSubscriber(
                self.config.events.webhook_url,
                token=self.config.events.webhook_token,
                timeout=self.config.events.webhook_timeout_seconds,
            ))

        self.registry = GroupRegistry(data_dir / "groups.json")
        self.agents = AgentStore(data_dir / "agents.json", self.bus)
        self.cursors = CursorTracker(paths.state_file)
        self.inbox = MessageInbox(paths.messages_dir)
        self.lifecycle = LifecycleManager(self.config.limits)
        self.backends = backends or {
            ExecutionMode.CONTAINER: ContainerBackend(self.config.container, paths),
            ExecutionMode.HOST: HostBackend(self.config.host, paths),
        }
        self.queue = GroupQueue(
            registry=self.registry,
            agents=self.agents,
            cursors=self.cursors,
            inbox=self.inbox,
            backends=self.backends,
            lifecycle=self.lifecycle,
            bus=self.bus,
            limits=self.config.limits,
            ipc_dir=paths.ipc_dir,
            executor=executor,
            clock=clock,
        )
        self.scheduler: Optional[TaskScheduler] = None
        if enable_scheduler:
            self.scheduler = TaskScheduler(
                tasks_file=paths.tasks_dir / "tasks.json",
                submit=self.queue.submit_message,
            )

        self._running = False
        self._thread: Optional[threading.Thread] = None
        self._started_at: Optional[str] = None

    # ========================================================================
    # LIFECYCLE
    # ========================================================================

    def start(self) -> None:
        """Recover pending work and start the poll/sweep loop."""
        if self._running:
            return

        recovered = self.recover_pending()
        if recovered:
            logger.info(f"Recovered pending messages for {len(recovered)} group(s)")

        self._running = True
        self._started_at = utc_now_iso()
        self._thread = threading.Thread(target=self._run_loop, daemon=True, name="claw-runtime")
        self._thread.start()
        if self.scheduler is not None:
            self.scheduler.start()
        logger.info("ClawRuntime started")

    def stop(self, grace: Optional[float] = None) -> None:
        """Stop the loop and every running unit."""
        if not self._running:
            return

        if self.scheduler is not None:
            self.scheduler.stop()
        self._running = False
        if self._thread:
            self._thread.join(timeout=5)
            self._thread = None
        self.queue.shutdown(grace)
        self._write_status()
        logger.info("ClawRuntime stopped")

    @property
    def running(self) -> bool:
        return self._running

    def recover_pending(self) -> List[str]:
        """Signal every group with messages past its committed cursor."""
        signalled = []
        for group in self.registry.list_groups():
            if self.inbox.has_pending(group.jid, self.cursors.get(group.jid)):
                result = self.queue.notify_ready(group.jid)
                if result["status"] in ("started", "queued", "active", "deferred"):
                    signalled.append(group.jid)
        return signalled

    def _run_loop(self) -> None:
        """Main loop, runs in a daemon thread."""
        limits = self.config.limits
        last_sweep = 0.0

        while self._running:
            try:
                self.queue.pump_mailboxes()

                now = time.monotonic()
                if now - last_sweep >= limits.sweep_interval:
                    self.queue.sweep()
                    last_sweep = now

                self._write_status()
            except Exception as e:
                logger.error(f"Runtime loop error: {e}", exc_info=True)

            time.sleep(limits.ipc_poll_interval)

    def _write_status(self) -> None:
        """Status snapshot for ``claw status`` in another process."""
        data = {
            "updated_at": utc_now_iso(),
            "started_at": self._started_at,
            "running": self._running,
            "pid": os.getpid(),
            "queue": self.queue.get_status(),
        }
        try:
            write_json_atomic(self._status_file, data)
        except OSError as e:
            logger.warning(f"Could not write runtime status: {e}")

    # ========================================================================
    # QUEUE OPERATIONS
    # ========================================================================

    def submit_message(self, msg: InboundMessage) -> dict:
        return self.queue.submit_message(msg)

    def notify_ready(self, group_jid: str) -> dict:
        return self.queue.notify_ready(group_jid)

    def stop_group(self, group_jid: str) -> dict:
        return self.queue.stop_group(group_jid)

    def interrupt_group(self, group_jid: str) -> bool:
        return self.queue.interrupt_group(group_jid)

    def get_status(self) -> dict:
        status = {
            "running": self._running,
            "started_at": self._started_at,
            **self.queue.get_status(),
        }
        if self.scheduler is not None:
            status["scheduler"] = self.scheduler.get_status()
        return status

    def on_agent_status_change(
        self,
        callback: Callable[[str, str, str, str, str, Optional[str]], None],
        on_reply: Optional[Callable[[str, str, str], None]] = None,
        name: str = "callback",
    ) -> None:
        """
        Subscribe to agent status changes.

        ``callback(group_jid, agent_id, status, name, description, reason)``
        is called in transition order, never while a scheduler lock is held.
        """
        self.bus.register(CallbackSubscriber(on_status=callback, on_reply=on_reply, name=name))

    # ========================================================================
    # CURSORS
    # ========================================================================

    def get_cursor(self, group_jid: str) -> Optional[MessageCursor]:
        return self.cursors.get(group_jid)

    def advance_cursor(self, group_jid: str, cursor: MessageCursor) -> bool:
        return self.cursors.advance(group_jid, cursor)

    def advance_global_cursor(self, cursor: MessageCursor) -> bool:
        return self.cursors.advance_global(cursor)

    # ========================================================================
    # GROUPS AND CONVERSATIONS
    # ========================================================================

    def register_group(
        self,
        jid: str,
        name: str,
        folder: str,
        execution_mode: ExecutionMode = ExecutionMode.CONTAINER,
    ) -> Group:
        return self.registry.register(jid, name, folder, execution_mode)

    def deregister_group(self, jid: str) -> bool:
        """Stop the group and its conversations, then forget the registration."""
        if self.registry.get(jid) is None:
            return False
        for conversation in self.registry.conversations_of(jid):
            self.delete_conversation(conversation.agent_id)
        self.queue.stop_group(jid, reason=GROUP_REMOVED_REASON)
        self.registry.deregister(jid)
        return True

    def create_conversation(self, parent_jid: str, name: str, prompt: str = "") -> dict:
        """
        Create a conversation agent bound to a group.

        The agent gets its own virtual chat (``{jid}#agent:{id}``), mailbox
        and session directory but shares the group's workspace and execution
        mode. A non-empty ``prompt`` is submitted as the first message.

        Raises:
            ValueError: the parent group is unknown or is itself a conversation.
        """
        parent = self.registry.get(parent_jid)
        if parent is None:
            raise ValueError(f"Unknown group: {parent_jid}")
        if parent.is_conversation:
            raise ValueError(f"Cannot nest conversations under {parent_jid}")

        agent = self.agents.create(parent, AgentKind.CONVERSATION, name=name, prompt=prompt)
        group = self.registry.register_conversation(parent, agent.id, name)
        logger.info(f"Conversation created: {agent.id} on '{parent_jid}'")

        result = {"agent": agent.to_dict(), "chat_jid": group.jid}
        if prompt.strip():
            result["submitted"] = self.queue.submit_message(InboundMessage(
                id=f"conv-{uuid.uuid4().hex[:12]}",
                chat_jid=group.jid,
                content=prompt,
                timestamp=utc_now_iso(),
                sender=CONVERSATION_SENDER,
            ))
        self.bus.flush()
        return result

    def delete_conversation(self, agent_id: str) -> bool:
        """Stop a conversation and remove its chat, mailbox and session state."""
        agent = self.agents.get(agent_id)
        if agent is None or agent.kind != AgentKind.CONVERSATION:
            return False

        jid = conversation_jid(agent.group_jid, agent_id)
        self.queue.stop_group(jid, reason=REMOVED_REASON)
        self.registry.deregister(jid)

        Mailbox.for_group(self.config.paths.ipc_dir, agent.group_folder, agent_id).teardown()
        session_dir = self.config.paths.get_session_dir(agent.group_folder, agent_id)
        if session_dir.exists():
            shutil.rmtree(session_dir)
        dropped = self.inbox.drop_chat(jid)
        self.cursors.forget(jid)

        self.agents.transition(
            agent_id, (AgentStatus.IDLE, AgentStatus.RUNNING), AgentStatus.ERROR, reason=REMOVED_REASON,
        )
        self.bus.flush()
        logger.info(f"Conversation deleted: {agent_id} ({dropped} message(s) dropped)")
        return True
