"""
EXECUTION BACKEND - Base Classes
================================

Capability interface shared by the container and host-process variants.

The scheduler only ever talks to ``ExecutionBackend``; both variants run
the same admission logic and the same agent state machine and differ only
in how a unit is launched, probed and killed.

    start(group, agent_id, mailbox) -> UnitRef
    stop(handle, grace)           close sentinel, wait, terminate, kill
    is_alive(handle)              non-blocking liveness probe
    deliver_input(handle, msgs)   write one input batch to the mailbox
    collect_output(handle)        one poll pass over messages/ and tasks/
"""

import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..ipc import Mailbox, MailboxPoller, PollResult
from ..models import ExecutionHandle, ExecutionMode, Group, InboundMessage

logger = logging.getLogger(__name__)


class BackendStartError(Exception):
    """A unit could not be launched (engine unavailable, bad image, spawn failure)."""

    def __init__(self, message: str, mode: Optional[ExecutionMode] = None):
        super().__init__(message)
        self.mode = mode


@dataclass
class UnitRef:
    """Backend-specific reference to one running unit."""
    unit_id: str
    mode: ExecutionMode
    adopted: bool = False
    started_at: float = field(default_factory=time.time)
    exited: threading.Event = field(default_factory=threading.Event)
    exit_code: Optional[int] = None
    native: Any = None  # docker Container / subprocess.Popen / pid
    meta: Dict[str, Any] = field(default_factory=dict)


class ExecutionBackend(ABC):
    """Abstract base for execution backends."""

    mode: ExecutionMode

    # How often stop() re-probes liveness while waiting.
    wait_poll_interval = 0.1

    @abstractmethod
    def start(self, group: Group, agent_id: Optional[str], mailbox: Mailbox) -> UnitRef:
        """
        Launch a unit for ``group`` bound to ``mailbox``, or adopt a live one
        left over from a previous scheduler process.

        Args:
            group: The group being run.
            agent_id: Conversation agent id for a conversation binding,
                None for the group's main unit.
            mailbox: The unit's mailbox triad.

        Raises:
            BackendStartError: the unit could not be launched.
        """
        ...

    @abstractmethod
    def probe(self, unit: UnitRef) -> bool:
        """True while the unit is running. Must not block."""
        ...

    @abstractmethod
    def terminate(self, unit: UnitRef, grace: float) -> None:
        """Ask the OS / engine to stop the unit (SIGTERM or equivalent)."""
        ...

    @abstractmethod
    def kill(self, unit: UnitRef) -> None:
        """Force the unit down (SIGKILL or equivalent)."""
        ...

    def cleanup(self, unit: UnitRef) -> None:
        """Release backend resources after the unit is gone."""

    # ========================================================================
    # SHARED BEHAVIOR
    # ========================================================================

    def is_alive(self, handle: ExecutionHandle) -> bool:
        unit = handle.unit
        if unit is None or unit.exited.is_set():
            return False
        return self.probe(unit)

    def wait(self, unit: UnitRef, timeout: float) -> bool:
        """Wait up to ``timeout`` seconds for the unit to exit."""
        deadline = time.monotonic() + max(timeout, 0.0)
        while True:
            if unit.exited.is_set() or not self.probe(unit):
                return True
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            time.sleep(min(self.wait_poll_interval, remaining))

    def stop(self, handle: ExecutionHandle, grace: float) -> None:
        """
        Graceful stop with forced fallback. Idempotent on a dead unit.

        1. ``_close`` sentinel in the input mailbox, wait ``grace``
        2. terminate, wait ``grace``
        3. kill
        """
        unit = handle.unit
        if unit is None:
            return

        if self.is_alive(handle):
            if grace > 0 and handle.mailbox is not None:
                try:
                    handle.mailbox.write_close_sentinel()
                except OSError as e:
                    logger.warning(f"Could not write close sentinel for {unit.unit_id}: {e}")
                if self.wait(unit, grace):
                    logger.info(f"Unit {unit.unit_id} exited after close sentinel")
                    self.cleanup(unit)
                    return

            logger.info(f"Terminating unit {unit.unit_id}")
            self.terminate(unit, grace)
            if not self.wait(unit, grace):
                logger.warning(f"Unit {unit.unit_id} ignored terminate, killing")
                self.kill(unit)
                self.wait(unit, 5.0)

        self.cleanup(unit)

    def force_release(self, unit: UnitRef) -> None:
        """Kill without waiting and drop backend state (stop watchdog)."""
        try:
            self.kill(unit)
        finally:
            self.cleanup(unit)

    def deliver_input(self, handle: ExecutionHandle, messages: List[InboundMessage]) -> str:
        """Write one input batch for the unit. Returns the input file name."""
        return handle.mailbox.write_input(handle.group_jid, messages)

    def collect_output(self, handle: ExecutionHandle) -> PollResult:
        """One poll pass over the unit's outbound mailbox."""
        if handle.poller is None:
            handle.poller = MailboxPoller(handle.mailbox)
        return handle.poller.poll()
