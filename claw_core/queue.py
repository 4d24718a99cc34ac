"""
GROUP QUEUE
===========

The scheduler. Serializes runs per group, admits groups against two
independent concurrency ceilings (container vs. host) and drives each
admitted unit through its mailbox.

Architecture
------------
All scheduler state (active handles, per-mode counters, FIFO wait list)
lives behind one ``RLock``. Every public operation follows the same shape:

1. Decide under the lock: mutate in-memory state only.
2. Act outside the lock: agent status writes, mailbox I/O, backend
   start/stop (submitted to a ``ThreadPoolExecutor``).
3. Flush the event bus so subscribers see what changed.

Backend start/stop completions re-enter step 1, which re-scans the wait
list, so every capacity-freeing event admits whatever now fits.

Admission
---------
The wait list is scanned front to back on every ``notify_ready`` and every
slot release. An entry whose execution mode is at its ceiling is skipped,
not blocking the scan, so host groups never wait behind a full container
ceiling and vice versa.

A slot is held from admission (``starting``) through ``active`` until the
backend confirms the unit is gone (``stopping`` → released). The stop
watchdog in the lifecycle sweep releases a slot whose stop never completes.

Runs and agents
---------------
Each turn is tracked by a task Agent: ``idle`` at admission, ``running``
once the unit is up, then ``completed`` or ``error``. After a successful
turn the unit stays warm; new messages for the group go to the same unit
as a new turn with a new task Agent. A warm unit is reclaimed by idle
eviction, or immediately when a group of the same mode is waiting.

Status writes are compare-and-set (see ``AgentStore.transition``), so a
user stop racing a natural completion yields exactly one terminal status.
Nothing is retried automatically: a failed run stays failed until the
caller signals the group again.

Usage:
    queue = GroupQueue(registry, agents, cursors, inbox, backends,
                       lifecycle, bus, limits, ipc_dir=paths.ipc_dir)
    queue.submit_message(msg)      # record + notify_ready
    queue.pump_mailboxes()         # every ipc_poll_interval
    queue.sweep()                  # every sweep_interval
"""

import logging
import threading
import time
import uuid
from collections import OrderedDict
from concurrent.futures import Future, ThreadPoolExecutor, wait
from pathlib import Path
from typing import Callable, Dict, List, Optional, Set, Tuple

from .agents import AgentStore
from .backends import BackendStartError, ExecutionBackend
from .config import LimitsConfig
from .cursors import CursorTracker
from .events import AgentReplyEvent, EventBus
from .groups import GroupRegistry
from .inbox import MessageInbox
from .ipc import AckRecord, Mailbox, MailboxPoller, ReplyRecord, ResultRecord, ResultStatus
from .lifecycle import (
    IDLE_REASON,
    OVERFLOW_REASON,
    TIMEOUT_REASON,
    LifecycleAction,
    LifecycleManager,
    Verdict,
    truncate_utf8,
)
from .models import (
    TERMINAL_STATUSES,
    AgentKind,
    AgentStatus,
    ExecutionHandle,
    ExecutionMode,
    Group,
    HandleState,
    InboundMessage,
    QueueEntry,
)

logger = logging.getLogger(__name__)

USER_STOP_REASON = "stopped by user"
START_FAILED_REASON = "failed to start"
EXITED_REASON = "exited without result"
CORRUPT_REASON = "mailbox corrupted"
RUN_FAILED_REASON = "run failed"
SHUTDOWN_REASON = "scheduler shutting down"
HANDOVER_REASON = "slot handed over"

MAX_REASON_CHARS = 200
MAX_PROMPT_PREVIEW = 200


class GroupQueue:
    """Per-group serialization and global admission control."""

    def __init__(
        self,
        registry: GroupRegistry,
        agents: AgentStore,
        cursors: CursorTracker,
        inbox: MessageInbox,
        backends: Dict[ExecutionMode, ExecutionBackend],
        lifecycle: LifecycleManager,
        bus: EventBus,
        limits: LimitsConfig,
        ipc_dir: Path,
        executor=None,
        clock: Callable[[], float] = time.time,
    ):
        self._registry = registry
        self._agents = agents
        self._cursors = cursors
        self._inbox = inbox
        self._backends = backends
        self._lifecycle = lifecycle
        self._bus = bus
        self._limits = limits
        self._ipc_dir = Path(ipc_dir)
        self._clock = clock

        self._ceilings: Dict[ExecutionMode, int] = {
            ExecutionMode.CONTAINER: limits.max_concurrent_containers,
            ExecutionMode.HOST: limits.max_concurrent_host_processes,
        }
        self._active: Dict[ExecutionMode, int] = {mode: 0 for mode in ExecutionMode}
        self._handles: Dict[str, ExecutionHandle] = {}
        self._waiting: "OrderedDict[str, QueueEntry]" = OrderedDict()
        self._lock = threading.RLock()
        self._shutting_down = False
        self._start_futures: Set[Future] = set()

        self._owns_pool = executor is None
        self._pool = executor or ThreadPoolExecutor(
            max_workers=max(4, min(32, sum(self._ceilings.values()))),
            thread_name_prefix="claw-unit",
        )

    # ========================================================================
    # PUBLIC API
    # ========================================================================

    def submit_message(self, msg: InboundMessage) -> dict:
        """
        New-message entry point for channel adapters.

        Drops messages at or behind the group's committed cursor, stores the
        rest (dedup by id), advances the global watermark and signals the
        group.
        """
        if self._registry.get(msg.chat_jid) is None:
            logger.warning(f"Message for unknown group '{msg.chat_jid}' dropped")
            return {"status": "unknown_group", "group_jid": msg.chat_jid}

        if self._cursors.is_processed(msg.chat_jid, msg.cursor):
            return {"status": "duplicate", "group_jid": msg.chat_jid, "message_id": msg.id}

        if not self._inbox.add(msg):
            return {"status": "duplicate", "group_jid": msg.chat_jid, "message_id": msg.id}

        self._cursors.advance_global(msg.cursor)
        return self.notify_ready(msg.chat_jid)

    def notify_ready(self, group_jid: str) -> dict:
        """
        Signal that unprocessed input exists for a group.

        Idempotent: a group has at most one wait-list entry, and a group with
        a live unit just gets its pending input delivered on the next poll.
        """
        with self._lock:
            if self._shutting_down:
                return {"status": "shutting_down", "group_jid": group_jid}

            group = self._registry.get(group_jid)
            if group is None:
                logger.warning(f"notify_ready for unknown group '{group_jid}'")
                return {"status": "unknown_group", "group_jid": group_jid}

            if group.is_conversation and self._agents.get_status(group.agent_id) in TERMINAL_STATUSES:
                logger.info(f"Conversation '{group_jid}' is closed, ignoring input")
                return {"status": "agent_closed", "group_jid": group_jid}

            handle = self._handles.get(group_jid)
            if handle is not None:
                if handle.state == HandleState.STOPPING:
                    handle.pending_after_run = True
                    return {"status": "deferred", "group_jid": group_jid}
                handle.pending_delivery = True
                return {"status": "active", "group_jid": group_jid}

            if group_jid not in self._waiting:
                self._waiting[group_jid] = QueueEntry(group_jid=group_jid, enqueued_at=self._clock())

            admitted = self._scan_locked()
            if group_jid in self._waiting:
                result = {
                    "status": "queued",
                    "group_jid": group_jid,
                    "position": list(self._waiting).index(group_jid) + 1,
                }
            else:
                result = {"status": "started", "group_jid": group_jid}

        self._launch(admitted)
        return result

    def stop_group(self, group_jid: str, reason: str = USER_STOP_REASON) -> dict:
        """
        Stop a group's run and drop its wait-list entry.

        A no-op for a group with nothing active (unknown groups included).
        Safe against natural completion: the agent's terminal status is
        written by compare-and-set, whichever comes first wins.
        """
        with self._lock:
            dequeued = self._waiting.pop(group_jid, None) is not None
            handle = self._handles.get(group_jid)
            if handle is None:
                return {"status": "dequeued" if dequeued else "not_active", "group_jid": group_jid}

            handle.pending_delivery = False
            handle.pending_after_run = False
            if handle.state == HandleState.STARTING:
                # Resolved by _on_started once the backend call returns.
                handle.stop_requested = reason
                return {"status": "stopping", "group_jid": group_jid}
            if handle.state == HandleState.STOPPING:
                return {"status": "stopping", "group_jid": group_jid}
            self._begin_stop_locked(handle, reason)
            agent_id = handle.agent_id

        logger.info(f"Stopping '{group_jid}': {reason}")
        self._agents.transition(
            agent_id, (AgentStatus.IDLE, AgentStatus.RUNNING), AgentStatus.ERROR, reason=reason,
        )
        self._submit(self._stop_unit, handle, self._limits.stop_grace_seconds)
        self._bus.flush()
        return {"status": "stopping", "group_jid": group_jid}

    def interrupt_group(self, group_jid: str) -> bool:
        """Ask the unit to abort its current turn but stay alive."""
        with self._lock:
            handle = self._handles.get(group_jid)
            if handle is None or handle.state != HandleState.ACTIVE:
                return False
            mailbox = handle.mailbox
        mailbox.write_interrupt_sentinel()
        logger.info(f"Interrupt sent to '{group_jid}'")
        return True

    def get_status(self) -> dict:
        """Consistent snapshot of counters, wait list and per-group state."""
        with self._lock:
            groups: Dict[str, dict] = {}
            for jid, handle in self._handles.items():
                summary = handle.summary()
                status = self._agents.get_status(handle.agent_id)
                summary["agent_status"] = status.value if status else None
                groups[jid] = summary
            for position, (jid, entry) in enumerate(self._waiting.items(), start=1):
                group = self._registry.get(jid)
                groups[jid] = {
                    "state": "waiting",
                    "execution_mode": group.execution_mode.value if group else None,
                    "position": position,
                    "enqueued_at": entry.enqueued_at,
                }

            return {
                "active_containers": self._active[ExecutionMode.CONTAINER],
                "active_host_processes": self._active[ExecutionMode.HOST],
                "active_total": sum(self._active.values()),
                "waiting": len(self._waiting),
                "max_concurrent_containers": self._ceilings[ExecutionMode.CONTAINER],
                "max_concurrent_host_processes": self._ceilings[ExecutionMode.HOST],
                "shutting_down": self._shutting_down,
                "groups": groups,
            }

    def is_active(self, group_jid: str) -> bool:
        with self._lock:
            return group_jid in self._handles

    # ========================================================================
    # ADMISSION
    # ========================================================================

    def _scan_locked(self) -> List[Tuple[ExecutionHandle, Group]]:
        """Admit every waiting group whose execution mode has a free slot."""
        if self._shutting_down:
            return []

        admitted: List[Tuple[ExecutionHandle, Group]] = []
        for jid in list(self._waiting):
            group = self._registry.get(jid)
            if group is None:
                del self._waiting[jid]
                continue
            if jid in self._handles:
                continue
            mode = group.execution_mode
            if self._active[mode] >= self._ceilings[mode]:
                continue

            del self._waiting[jid]
            now = self._clock()
            handle = ExecutionHandle(
                group_jid=jid,
                agent_id=uuid.uuid4().hex[:12],
                mode=mode,
                started_at=now,
                last_activity=now,
                deadline=now + self._lifecycle.run_timeout,
                mailbox=Mailbox.for_group(self._ipc_dir, group.folder, group.agent_id),
            )
            self._handles[jid] = handle
            self._active[mode] += 1
            admitted.append((handle, group))
            logger.info(
                f"Admitted '{jid}' ({mode.value}, "
                f"{self._active[mode]}/{self._ceilings[mode]} active, {len(self._waiting)} waiting)"
            )
        return admitted

    def _starved_modes_locked(self) -> Set[ExecutionMode]:
        starved: Set[ExecutionMode] = set()
        for jid in self._waiting:
            group = self._registry.get(jid)
            if group is not None and self._active[group.execution_mode] >= self._ceilings[group.execution_mode]:
                starved.add(group.execution_mode)
        return starved

    def _launch(self, admitted: List[Tuple[ExecutionHandle, Group]]) -> None:
        for handle, group in admitted:
            future = self._submit(self._start_unit, handle, group)
            with self._lock:
                self._start_futures.add(future)
            future.add_done_callback(self._forget_start)
        self._bus.flush()

    def _forget_start(self, future: Future) -> None:
        with self._lock:
            self._start_futures.discard(future)

    def _submit(self, fn, *args) -> Future:
        return self._pool.submit(fn, *args)

    # ========================================================================
    # START
    # ========================================================================

    def _start_unit(self, handle: ExecutionHandle, group: Group) -> None:
        """Runs on the pool: create the turn's agent and launch the unit."""
        try:
            self._agents.create(
                group,
                AgentKind.TASK,
                name=group.name,
                prompt=self._prompt_preview(group.jid),
                agent_id=handle.agent_id,
            )
            unit = self._backends[handle.mode].start(group, group.agent_id, handle.mailbox)
        except BackendStartError as e:
            logger.error(f"Failed to start unit for '{group.jid}': {e}", exc_info=True)
            self._on_start_failed(handle)
            return
        except Exception as e:
            logger.error(f"Unexpected error starting '{group.jid}': {e}", exc_info=True)
            self._on_start_failed(handle)
            return

        self._on_started(handle, unit)

    def _on_start_failed(self, handle: ExecutionHandle) -> None:
        with self._lock:
            handle.pending_delivery = False
            handle.pending_after_run = False
            admitted = self._release_locked(handle) if self._handles.get(handle.group_jid) is handle else []
        self._agents.transition(
            handle.agent_id, AgentStatus.IDLE, AgentStatus.ERROR, reason=START_FAILED_REASON,
        )
        self._launch(admitted)

    def _on_started(self, handle: ExecutionHandle, unit) -> None:
        poller = MailboxPoller(handle.mailbox)
        if unit.adopted:
            poller.skip_existing()

        with self._lock:
            handle.unit = unit
            handle.poller = poller
            stop_reason = handle.stop_requested
            shutting_down = self._shutting_down
            if stop_reason:
                self._begin_stop_locked(handle, stop_reason)
            else:
                handle.state = HandleState.ACTIVE
                self._lifecycle.begin_turn(handle, self._clock())

        if stop_reason:
            self._agents.transition(handle.agent_id, AgentStatus.IDLE, AgentStatus.ERROR, reason=stop_reason)
            if shutting_down:
                # The pool may already be closed to new work.
                self._stop_unit(handle, 0)
            else:
                self._submit(self._stop_unit, handle, self._limits.stop_grace_seconds)
        else:
            self._agents.transition(handle.agent_id, AgentStatus.IDLE, AgentStatus.RUNNING)
            self._deliver_pending(handle)
        self._bus.flush()

    def _prompt_preview(self, group_jid: str) -> str:
        pending = self._inbox.pending(group_jid, self._cursors.get(group_jid))
        if not pending:
            return ""
        return pending[-1].content[:MAX_PROMPT_PREVIEW]

    # ========================================================================
    # STOP / RELEASE
    # ========================================================================

    def _begin_stop_locked(self, handle: ExecutionHandle, reason: str) -> None:
        handle.state = HandleState.STOPPING
        handle.stopping_since = self._clock()
        handle.stop_reason = reason
        handle.turn_active = False

    def _stop_unit(self, handle: ExecutionHandle, grace: float) -> None:
        """Runs on the pool: stop the unit, then release its slot."""
        try:
            self._backends[handle.mode].stop(handle, grace)
        except Exception as e:
            logger.error(f"Error stopping unit for '{handle.group_jid}': {e}", exc_info=True)
        finally:
            self._finish(handle)

    def _finish(self, handle: ExecutionHandle) -> None:
        with self._lock:
            if self._handles.get(handle.group_jid) is not handle:
                return
            admitted = self._release_locked(handle)

        # A turn that never reported a result ends here.
        self._agents.transition(
            handle.agent_id,
            AgentStatus.RUNNING,
            AgentStatus.ERROR,
            reason=handle.stop_reason or EXITED_REASON,
        )
        self._launch(admitted)

    def _release_locked(self, handle: ExecutionHandle) -> List[Tuple[ExecutionHandle, Group]]:
        jid = handle.group_jid
        del self._handles[jid]
        self._active[handle.mode] -= 1
        logger.info(
            f"Released '{jid}' ({handle.mode.value}, "
            f"{self._active[handle.mode]}/{self._ceilings[handle.mode]} active)"
        )

        if (
            not self._shutting_down
            and (handle.pending_after_run or handle.pending_delivery)
            and jid not in self._waiting
            and self._registry.get(jid) is not None
        ):
            self._waiting[jid] = QueueEntry(group_jid=jid, enqueued_at=self._clock())
        return self._scan_locked()

    # ========================================================================
    # MAILBOX PUMP
    # ========================================================================

    def pump_mailboxes(self) -> None:
        """One delivery + collection pass over every active unit."""
        with self._lock:
            handles = [h for h in self._handles.values() if h.state == HandleState.ACTIVE]

        for handle in handles:
            try:
                self._deliver_pending(handle)
                self._collect(handle)
            except Exception as e:
                logger.error(f"Mailbox pump error for '{handle.group_jid}': {e}", exc_info=True)
        self._bus.flush()

    def _deliver_pending(self, handle: ExecutionHandle) -> bool:
        """Write messages past the group's cursor that this unit has not seen."""
        jid = handle.group_jid
        with self._lock:
            if (
                self._handles.get(jid) is not handle
                or handle.state != HandleState.ACTIVE
                or not handle.pending_delivery
            ):
                return False
            handle.pending_delivery = False
            batch = [
                m for m in self._inbox.pending(jid, self._cursors.get(jid))
                if m.id not in handle.delivered_ids
            ]
            group = self._registry.get(jid)
            if not batch or group is None:
                return False
            handle.delivered_ids.update(m.id for m in batch)

            new_agent_id = None
            if not handle.turn_active:
                new_agent_id = uuid.uuid4().hex[:12]
                handle.agent_id = new_agent_id
                self._lifecycle.begin_turn(handle, self._clock())

        if new_agent_id is not None:
            self._agents.create(
                group, AgentKind.TASK, name=group.name,
                prompt=batch[-1].content[:MAX_PROMPT_PREVIEW], agent_id=new_agent_id,
            )
            self._agents.transition(new_agent_id, AgentStatus.IDLE, AgentStatus.RUNNING)

        try:
            name = self._backends[handle.mode].deliver_input(handle, batch)
        except OSError as e:
            logger.error(f"Could not write input for '{jid}': {e}")
            with self._lock:
                handle.delivered_ids.difference_update(m.id for m in batch)
                handle.pending_delivery = True
            return False

        with self._lock:
            handle.inflight[name] = batch[-1].cursor
            self._lifecycle.touch(handle, self._clock())
        logger.info(f"Delivered {len(batch)} message(s) to '{jid}' ({name})")
        return True

    def _collect(self, handle: ExecutionHandle) -> None:
        backend = self._backends[handle.mode]
        # Probe before reading so everything written before an exit is consumed.
        alive = backend.is_alive(handle)
        result = backend.collect_output(handle)

        for _channel, record in result.records:
            if isinstance(record, ReplyRecord):
                self._on_reply(handle, record)
            elif isinstance(record, AckRecord):
                self._on_ack(handle, record)
            elif isinstance(record, ResultRecord):
                self._on_result(handle, record)

        if result.has_activity:
            with self._lock:
                self._lifecycle.touch(handle, self._clock())

        if result.corrupt:
            self._on_corrupt(handle, result.corrupt)

        if not alive or result.vanished:
            self._on_unit_exit(handle, result.vanished)

    def _on_reply(self, handle: ExecutionHandle, record: ReplyRecord) -> None:
        with self._lock:
            accepted, overflowed = self._lifecycle.record_output(handle, record.text)
            agent_id = handle.agent_id
        if accepted:
            self._bus.post(AgentReplyEvent(group_jid=handle.group_jid, agent_id=agent_id, text=accepted))
        if overflowed:
            self._on_overflow(handle)

    def _on_ack(self, handle: ExecutionHandle, record: AckRecord) -> None:
        with self._lock:
            cursor = handle.inflight.pop(record.file, None)
        try:
            handle.mailbox.remove_input(record.file)
        except OSError as e:
            logger.warning(f"Could not remove acknowledged input {record.file}: {e}")
        if cursor is not None:
            self._cursors.advance(handle.group_jid, cursor)
            self._inbox.compact(handle.group_jid, self._cursors.get(handle.group_jid))
        else:
            logger.debug(f"Ack for untracked input {record.file} on '{handle.group_jid}'")

    def _on_result(self, handle: ExecutionHandle, record: ResultRecord) -> None:
        with self._lock:
            if handle.state != HandleState.ACTIVE or not handle.turn_active:
                logger.debug(f"Ignoring late result for '{handle.group_jid}'")
                return
            agent_id = handle.agent_id
            self._lifecycle.end_turn(handle, self._clock())
            overflowed = handover = False
            if record.status == ResultStatus.SUCCESS:
                if record.result is not None:
                    # The result text counts against the same ceiling as replies.
                    summary, overflowed = self._lifecycle.record_result(handle, record.result)
                else:
                    summary = truncate_utf8("".join(handle.output_chunks), self._lifecycle.max_output_bytes)
                if overflowed:
                    self._begin_stop_locked(handle, OVERFLOW_REASON)
                else:
                    handover = (
                        not handle.pending_delivery
                        and handle.mode in self._starved_modes_locked()
                    )
                    if handover:
                        self._begin_stop_locked(handle, HANDOVER_REASON)
            else:
                reason = (record.error or RUN_FAILED_REASON)[:MAX_REASON_CHARS]
                self._begin_stop_locked(handle, reason)

        if overflowed:
            logger.warning(f"Result for '{handle.group_jid}' exceeds the output ceiling, stopping unit")
            self._agents.transition(
                agent_id, AgentStatus.RUNNING, AgentStatus.COMPLETED,
                reason=OVERFLOW_REASON, result_summary=summary,
            )
            self._submit(self._stop_unit, handle, 0)
        elif record.status == ResultStatus.SUCCESS:
            self._agents.transition(agent_id, AgentStatus.RUNNING, AgentStatus.COMPLETED, result_summary=summary)
            if handover:
                self._submit(self._stop_unit, handle, self._limits.stop_grace_seconds)
        else:
            logger.warning(f"Run failed for '{handle.group_jid}': {reason}")
            self._agents.transition(agent_id, AgentStatus.RUNNING, AgentStatus.ERROR, reason=reason)
            self._submit(self._stop_unit, handle, self._limits.stop_grace_seconds)

    def _on_overflow(self, handle: ExecutionHandle) -> None:
        with self._lock:
            if handle.state != HandleState.ACTIVE:
                return
            summary = self._lifecycle.truncated_summary(handle)
            agent_id = handle.agent_id
            self._begin_stop_locked(handle, OVERFLOW_REASON)

        logger.warning(f"Output ceiling exceeded for '{handle.group_jid}', stopping unit")
        self._agents.transition(
            agent_id, AgentStatus.RUNNING, AgentStatus.COMPLETED,
            reason=OVERFLOW_REASON, result_summary=summary,
        )
        self._submit(self._stop_unit, handle, 0)

    def _on_corrupt(self, handle: ExecutionHandle, count: int) -> None:
        with self._lock:
            handle.corrupt_records += count
            if handle.corrupt_records <= self._limits.max_corrupt_records or handle.state != HandleState.ACTIVE:
                return
            agent_id = handle.agent_id
            self._begin_stop_locked(handle, CORRUPT_REASON)

        logger.error(f"Too many malformed mailbox records for '{handle.group_jid}', failing run")
        self._agents.transition(agent_id, AgentStatus.RUNNING, AgentStatus.ERROR, reason=CORRUPT_REASON)
        self._submit(self._stop_unit, handle, 0)

    def _on_unit_exit(self, handle: ExecutionHandle, vanished: List[str]) -> None:
        with self._lock:
            if self._handles.get(handle.group_jid) is not handle or handle.state != HandleState.ACTIVE:
                return
            self._begin_stop_locked(handle, EXITED_REASON)

        if vanished:
            logger.warning(f"Mailbox files vanished for '{handle.group_jid}': {vanished}")
        else:
            logger.info(f"Unit for '{handle.group_jid}' exited")
        self._submit(self._stop_unit, handle, 0)

    # ========================================================================
    # LIFECYCLE SWEEP
    # ========================================================================

    def sweep(self) -> List[LifecycleAction]:
        """Apply idle eviction, run timeouts, slot handover and the stop watchdog."""
        now = self._clock()
        with self._lock:
            actions = self._lifecycle.evaluate(
                list(self._handles.items()), now, self._starved_modes_locked(),
            )
            stops: List[Tuple[ExecutionHandle, float]] = []
            timed_out: List[str] = []
            stuck: List[ExecutionHandle] = []
            for action in actions:
                handle = action.handle
                if action.verdict == Verdict.WATCHDOG:
                    stuck.append(handle)
                elif action.verdict == Verdict.TIMEOUT:
                    timed_out.append(handle.agent_id)
                    self._begin_stop_locked(handle, TIMEOUT_REASON)
                    stops.append((handle, 0))
                elif action.verdict == Verdict.IDLE:
                    self._begin_stop_locked(handle, IDLE_REASON)
                    stops.append((handle, self._limits.stop_grace_seconds))
                elif action.verdict == Verdict.PRESSURE:
                    self._begin_stop_locked(handle, HANDOVER_REASON)
                    stops.append((handle, self._limits.stop_grace_seconds))

        for agent_id in timed_out:
            self._agents.transition(agent_id, AgentStatus.RUNNING, AgentStatus.ERROR, reason=TIMEOUT_REASON)

        for action in actions:
            if action.verdict in (Verdict.IDLE, Verdict.PRESSURE):
                logger.info(f"Evicting '{action.group_jid}' ({action.verdict.value})")
            elif action.verdict == Verdict.TIMEOUT:
                logger.warning(f"Run for '{action.group_jid}' timed out, force stopping")

        for handle, grace in stops:
            self._submit(self._stop_unit, handle, grace)

        for handle in stuck:
            logger.error(
                f"Unit for '{handle.group_jid}' did not stop within "
                f"{self._lifecycle.watchdog_timeout:.0f}s, releasing slot"
            )
            if handle.unit is not None:
                self._submit(self._backends[handle.mode].force_release, handle.unit)
            self._finish(handle)

        self._bus.flush()
        return actions

    # ========================================================================
    # SHUTDOWN
    # ========================================================================

    def shutdown(self, grace: Optional[float] = None) -> None:
        """Refuse new work, stop every unit, wait for the stops to finish."""
        grace = self._limits.stop_grace_seconds if grace is None else grace
        with self._lock:
            if self._shutting_down:
                return
            self._shutting_down = True
            self._waiting.clear()
            to_stop: List[ExecutionHandle] = []
            for handle in self._handles.values():
                if handle.state == HandleState.STARTING:
                    handle.stop_requested = SHUTDOWN_REASON
                elif handle.state == HandleState.ACTIVE:
                    self._begin_stop_locked(handle, SHUTDOWN_REASON)
                    to_stop.append(handle)
            # Starts still in flight stop their own unit from _on_started.
            futures = list(self._start_futures)

        logger.info(f"Shutting down, stopping {len(to_stop)} unit(s), {len(futures)} still starting")
        for handle in to_stop:
            self._agents.transition(handle.agent_id, AgentStatus.RUNNING, AgentStatus.ERROR, reason=SHUTDOWN_REASON)
            futures.append(self._submit(self._stop_unit, handle, grace))
        if futures:
            wait(futures, timeout=2 * grace + 10)
        if self._owns_pool:
            self._pool.shutdown(wait=False, cancel_futures=True)
        self._bus.flush()
