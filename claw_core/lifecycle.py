"""
LIFECYCLE MANAGER
=================

Resource policy for running units: idle eviction, hard run timeout,
output-size ceiling and the stop watchdog.

The manager owns no threads and no locks. The GroupQueue calls it with
handles it already holds under its own lock and acts on the verdicts:

- ``begin_turn()``    a new turn starts: fresh deadline, output counter reset
- ``touch()``         any mailbox activity in either direction
- ``record_output()`` reply text arriving; returns the part that fits under
                      the ceiling and whether the ceiling was crossed
- ``record_result()`` the final result's text, against the same ceiling
- ``evaluate()``      periodic sweep: which handles to evict, time out or
                      force-release

Verdict kinds:
    IDLE      warm unit (turn finished) with no activity for
              ``idle_timeout_seconds``; reclaim the unit, leave the agent's
              status as last reported. A turn in flight is bounded by the
              run timeout instead.
    TIMEOUT   turn ran past ``started + run_timeout_seconds``; force stop,
              agent -> error
    WATCHDOG  handle stuck in ``stopping`` for more than twice the stop
              grace period; release the slot even though the backend never
              confirmed the stop
    PRESSURE  warm unit (turn finished) while a group of the same execution
              mode waits for a slot; hand the slot over
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, List, Set, Tuple

from .config import LimitsConfig
from .models import ExecutionHandle, ExecutionMode, HandleState

logger = logging.getLogger(__name__)

TRUNCATION_MARKER = "\n\n[output truncated]"
TIMEOUT_REASON = "timed out"
IDLE_REASON = "idle timeout"
OVERFLOW_REASON = "output truncated"


class Verdict(str, Enum):
    IDLE = "idle"
    TIMEOUT = "timeout"
    WATCHDOG = "watchdog"
    PRESSURE = "pressure"


@dataclass
class LifecycleAction:
    group_jid: str
    verdict: Verdict
    handle: ExecutionHandle


def truncate_utf8(text: str, max_bytes: int) -> str:
    """Cut ``text`` to at most ``max_bytes`` UTF-8 bytes without splitting a character."""
    encoded = text.encode("utf-8")
    if len(encoded) <= max_bytes:
        return text
    return encoded[:max(max_bytes, 0)].decode("utf-8", errors="ignore")


class LifecycleManager:
    """Idle, timeout and output policy for execution handles."""

    def __init__(self, limits: LimitsConfig):
        self.idle_timeout = float(limits.idle_timeout_seconds)
        self.run_timeout = float(limits.run_timeout_seconds)
        self.max_output_bytes = int(limits.max_output_bytes)
        self.stop_grace = float(limits.stop_grace_seconds)

    @property
    def watchdog_timeout(self) -> float:
        return max(2 * self.stop_grace, 1.0)

    # ========================================================================
    # PER-HANDLE BOOKKEEPING
    # ========================================================================

    def begin_turn(self, handle: ExecutionHandle, now: float) -> None:
        handle.turn_active = True
        handle.deadline = now + self.run_timeout
        handle.last_activity = now
        handle.output_bytes = 0
        handle.output_chunks = []
        handle.corrupt_records = 0

    def end_turn(self, handle: ExecutionHandle, now: float) -> None:
        handle.turn_active = False
        handle.last_activity = now

    def touch(self, handle: ExecutionHandle, now: float) -> None:
        handle.last_activity = max(handle.last_activity, now)

    def record_output(self, handle: ExecutionHandle, text: str) -> Tuple[str, bool]:
        """
        Account for a reply chunk.

        Returns:
            (accepted_text, overflowed). ``accepted_text`` is the prefix that
            still fits under the ceiling; once a handle has overflowed every
            later chunk is rejected.
        """
        size = len(text.encode("utf-8"))
        remaining = self.max_output_bytes - handle.output_bytes
        if size <= remaining:
            handle.output_bytes += size
            handle.output_chunks.append(text)
            return text, False

        accepted = truncate_utf8(text, max(remaining, 0))
        handle.output_bytes += len(accepted.encode("utf-8"))
        if accepted:
            handle.output_chunks.append(accepted)
        # Force the counter past the ceiling so later chunks are refused.
        handle.output_bytes = max(handle.output_bytes, self.max_output_bytes) + 1
        return accepted, True

    def record_result(self, handle: ExecutionHandle, text: str) -> Tuple[str, bool]:
        """
        Account for the text of a turn's final result.

        Returns (summary, overflowed). On overflow the summary is the text cut
        to the ceiling plus the truncation marker.
        """
        size = len(text.encode("utf-8"))
        if size <= self.max_output_bytes - handle.output_bytes:
            handle.output_bytes += size
            return text, False
        handle.output_bytes = max(handle.output_bytes, self.max_output_bytes) + 1
        return truncate_utf8(text, self.max_output_bytes) + TRUNCATION_MARKER, True

    def is_overflowed(self, handle: ExecutionHandle) -> bool:
        return handle.output_bytes > self.max_output_bytes

    def truncated_summary(self, handle: ExecutionHandle) -> str:
        """Accumulated output of the turn, at most the ceiling, plus the marker."""
        text = truncate_utf8("".join(handle.output_chunks), self.max_output_bytes)
        return text + TRUNCATION_MARKER

    # ========================================================================
    # SWEEP
    # ========================================================================

    def evaluate(
        self,
        handles: Iterable[Tuple[str, ExecutionHandle]],
        now: float,
        starved_modes: Set[ExecutionMode] = frozenset(),
    ) -> List[LifecycleAction]:
        """
        Decide what the sweep should do with each handle.

        Args:
            handles: (group_jid, handle) pairs, read under the queue lock.
            now: Current clock value.
            starved_modes: Execution modes that have a group waiting for a
                slot right now.
        """
        actions: List[LifecycleAction] = []
        for jid, handle in handles:
            if handle.state == HandleState.STOPPING:
                since = handle.stopping_since if handle.stopping_since is not None else now
                if now - since > self.watchdog_timeout:
                    actions.append(LifecycleAction(jid, Verdict.WATCHDOG, handle))
                continue

            if handle.state != HandleState.ACTIVE:
                continue

            if handle.turn_active and now >= handle.deadline:
                actions.append(LifecycleAction(jid, Verdict.TIMEOUT, handle))
            elif not handle.turn_active and now - handle.last_activity > self.idle_timeout:
                actions.append(LifecycleAction(jid, Verdict.IDLE, handle))
            elif not handle.turn_active and not handle.pending_delivery and handle.mode in starved_modes:
                actions.append(LifecycleAction(jid, Verdict.PRESSURE, handle))

        return actions
