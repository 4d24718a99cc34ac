"""
AGENT STORE
===========

Persistent Agent records and their status state machine.

    idle ──► running ──► completed
      │         │
      └─────────┴──────► error

Every status change goes through ``transition()``, a compare-and-set: the
caller names the status(es) it expects the agent to be in. If another
thread got there first (a user stop racing natural completion), the call
returns False and the recorded terminal status stands. Asking for an edge
the state machine does not have raises ``InvalidTransition``.

Each successful transition posts an ``AgentStatusEvent`` to the event bus
while the store lock is held, so subscribers see transitions in the order
they were committed.

Usage:
    store = AgentStore(Path("data/agents.json"), bus)
    agent = store.create(group, AgentKind.TASK, name="scheduled report")
    store.transition(agent.id, AgentStatus.IDLE, AgentStatus.RUNNING)
"""

import logging
import threading
import uuid
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Union

from .events import AgentStatusEvent, EventBus
from .models import (
    LEGAL_TRANSITIONS,
    TERMINAL_STATUSES,
    Agent,
    AgentKind,
    AgentStatus,
    Group,
    utc_now_iso,
)
from .utils import read_json_dict, write_json_atomic

logger = logging.getLogger(__name__)

# Completed task agents kept on disk for history.
MAX_RETIRED_TASK_AGENTS = 500


class InvalidTransition(Exception):
    """Requested status change is not an edge of the agent state machine."""

    def __init__(self, agent_id: str, current: AgentStatus, target: AgentStatus):
        self.agent_id = agent_id
        self.current = current
        self.target = target
        super().__init__(f"Agent '{agent_id}': {current.value} -> {target.value} is not allowed")


class AgentStore:
    """Agent records persisted to one JSON file."""

    def __init__(self, store_file: Path, bus: Optional[EventBus] = None):
        self._store_file = Path(store_file)
        self._bus = bus
        self._lock = threading.Lock()
        self._agents: Dict[str, Agent] = {}
        self._load()

    def _load(self) -> None:
        data = read_json_dict(self._store_file)
        for raw in data.get("agents", []):
            try:
                agent = Agent.from_dict(raw)
            except (KeyError, ValueError) as e:
                logger.warning(f"Skipping bad agent record: {e}")
                continue
            self._agents[agent.id] = agent

    def _save_locked(self) -> None:
        self._prune_locked()
        write_json_atomic(
            self._store_file,
            {"agents": [a.to_dict() for a in self._agents.values()]},
        )

    def _prune_locked(self) -> None:
        retired = [
            a for a in self._agents.values()
            if a.kind == AgentKind.TASK and a.status in TERMINAL_STATUSES
        ]
        excess = len(retired) - MAX_RETIRED_TASK_AGENTS
        if excess > 0:
            retired.sort(key=lambda a: a.completed_at or a.created_at)
            for agent in retired[:excess]:
                del self._agents[agent.id]

    # ========================================================================
    # CRUD
    # ========================================================================

    def create(
        self,
        group: Group,
        kind: AgentKind,
        name: str = "",
        prompt: str = "",
        agent_id: Optional[str] = None,
    ) -> Agent:
        """Create an agent in ``idle``."""
        agent = Agent(
            id=agent_id or uuid.uuid4().hex[:12],
            group_jid=group.jid,
            group_folder=group.folder,
            kind=kind,
            name=name,
            prompt=prompt,
        )
        with self._lock:
            if agent.id in self._agents:
                raise ValueError(f"Agent already exists: {agent.id}")
            self._agents[agent.id] = agent
            self._save_locked()
        logger.debug(f"Agent created: {agent.id} ({kind.value}) for '{group.jid}'")
        return agent

    def get(self, agent_id: str) -> Optional[Agent]:
        with self._lock:
            return self._agents.get(agent_id)

    def get_status(self, agent_id: str) -> Optional[AgentStatus]:
        with self._lock:
            agent = self._agents.get(agent_id)
            return agent.status if agent else None

    def list_agents(
        self,
        group_jid: Optional[str] = None,
        kind: Optional[AgentKind] = None,
    ) -> List[Agent]:
        with self._lock:
            agents = list(self._agents.values())
        if group_jid is not None:
            agents = [a for a in agents if a.group_jid == group_jid]
        if kind is not None:
            agents = [a for a in agents if a.kind == kind]
        return sorted(agents, key=lambda a: a.created_at)

    def delete(self, agent_id: str) -> Optional[Agent]:
        with self._lock:
            agent = self._agents.pop(agent_id, None)
            if agent is not None:
                self._save_locked()
        return agent

    # ========================================================================
    # STATE MACHINE
    # ========================================================================

    def transition(
        self,
        agent_id: str,
        expected: Union[AgentStatus, Iterable[AgentStatus]],
        target: AgentStatus,
        reason: Optional[str] = None,
        result_summary: Optional[str] = None,
    ) -> bool:
        """
        Compare-and-set an agent's status.

        Returns:
            True if the transition was applied, False if the agent is unknown
            or no longer in an expected status.

        Raises:
            InvalidTransition: current status matched but ``target`` is not a
                legal next state.
        """
        expected_set = {expected} if isinstance(expected, AgentStatus) else set(expected)

        with self._lock:
            agent = self._agents.get(agent_id)
            if agent is None or agent.status not in expected_set:
                return False
            if target not in LEGAL_TRANSITIONS[agent.status]:
                raise InvalidTransition(agent_id, agent.status, target)

            agent.status = target
            agent.reason = reason
            if result_summary is not None:
                agent.result_summary = result_summary
            if target in TERMINAL_STATUSES:
                agent.completed_at = utc_now_iso()
            self._save_locked()

            if self._bus is not None:
                self._bus.post(AgentStatusEvent(
                    group_jid=agent.group_jid,
                    agent_id=agent.id,
                    status=target.value,
                    name=agent.name,
                    description=agent.prompt,
                    reason=reason,
                ))

        logger.info(f"Agent '{agent_id}' -> {target.value}" + (f" ({reason})" if reason else ""))
        return True
