"""
MODELS
======

Core records shared by the scheduler components.

- ``Group``          conversational destination, unit of serialization
- ``Agent``          logical record of one execution unit's purpose and outcome
- ``InboundMessage`` normalized message handed in by a channel adapter
- ``MessageCursor``  (timestamp, id) watermark over processed messages
- ``QueueEntry``     one slot in the FIFO wait list
- ``ExecutionHandle`` live binding between a group and a running unit
"""

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional, Set, Union


# ============================================================================
# ENUMS
# ============================================================================

class ExecutionMode(str, Enum):
    """Which backend (and which concurrency ceiling) a group runs under."""
    CONTAINER = "container"
    HOST = "host"


class AgentKind(str, Enum):
    CONVERSATION = "conversation"
    TASK = "task"


class AgentStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"


LEGAL_TRANSITIONS: Dict[AgentStatus, FrozenSet[AgentStatus]] = {
    AgentStatus.IDLE: frozenset({AgentStatus.RUNNING, AgentStatus.ERROR}),
    AgentStatus.RUNNING: frozenset({AgentStatus.COMPLETED, AgentStatus.ERROR}),
    AgentStatus.COMPLETED: frozenset(),
    AgentStatus.ERROR: frozenset(),
}

TERMINAL_STATUSES = frozenset({AgentStatus.COMPLETED, AgentStatus.ERROR})


class HandleState(str, Enum):
    STARTING = "starting"   # admitted, backend start in flight
    ACTIVE = "active"       # unit running, mailbox polled
    STOPPING = "stopping"   # stop requested, slot still held


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ============================================================================
# CURSOR
# ============================================================================

@dataclass(frozen=True, order=True)
class MessageCursor:
    """
    Watermark over processed messages.

    Ordered on ``timestamp`` first, then ``id``, so two messages sharing a
    timestamp are still totally ordered.
    """
    timestamp: str
    id: str = ""

    def to_dict(self) -> Dict:
        return {"timestamp": self.timestamp, "id": self.id}

    @classmethod
    def from_value(cls, value: Union[str, Dict, "MessageCursor", None]) -> Optional["MessageCursor"]:
        """Normalize a stored cursor; plain strings are legacy timestamp-only cursors."""
        if value is None:
            return None
        if isinstance(value, MessageCursor):
            return value
        if isinstance(value, str):
            return cls(timestamp=value, id="") if value else None
        if isinstance(value, dict) and value.get("timestamp"):
            return cls(timestamp=str(value["timestamp"]), id=str(value.get("id") or ""))
        return None

    def is_after(self, other: Optional["MessageCursor"]) -> bool:
        return other is None or self > other


# ============================================================================
# GROUP
# ============================================================================

FOLDER_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]{0,63}$")
CONVERSATION_SEPARATOR = "#agent:"


def conversation_jid(parent_jid: str, agent_id: str) -> str:
    """Virtual chat id addressing one conversation agent of a group."""
    return f"{parent_jid}{CONVERSATION_SEPARATOR}{agent_id}"


def split_conversation_jid(jid: str):
    """Return (parent_jid, agent_id) for a virtual chat id, (jid, None) otherwise."""
    if CONVERSATION_SEPARATOR in jid:
        parent, agent_id = jid.split(CONVERSATION_SEPARATOR, 1)
        return parent, agent_id
    return jid, None


@dataclass
class Group:
    """A registered conversational destination. Execution mode never changes."""
    jid: str
    name: str
    folder: str
    execution_mode: ExecutionMode = ExecutionMode.CONTAINER
    added_at: str = field(default_factory=utc_now_iso)
    agent_id: Optional[str] = None  # set on a conversation binding

    @property
    def is_conversation(self) -> bool:
        return self.agent_id is not None

    def to_dict(self) -> Dict:
        result = {
            "jid": self.jid,
            "name": self.name,
            "folder": self.folder,
            "execution_mode": self.execution_mode.value,
            "added_at": self.added_at,
        }
        if self.agent_id:
            result["agent_id"] = self.agent_id
        return result

    @classmethod
    def from_dict(cls, data: Dict) -> "Group":
        return cls(
            jid=data["jid"],
            name=data.get("name", data["jid"]),
            folder=data["folder"],
            execution_mode=ExecutionMode(data.get("execution_mode", "container")),
            added_at=data.get("added_at") or utc_now_iso(),
            agent_id=data.get("agent_id"),
        )


# ============================================================================
# AGENT
# ============================================================================

@dataclass
class Agent:
    """Logical record of one execution unit, independent of its live process."""
    id: str
    group_jid: str
    group_folder: str
    kind: AgentKind
    status: AgentStatus = AgentStatus.IDLE
    name: str = ""
    prompt: str = ""
    created_at: str = field(default_factory=utc_now_iso)
    completed_at: Optional[str] = None
    result_summary: Optional[str] = None
    reason: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "group_jid": self.group_jid,
            "group_folder": self.group_folder,
            "kind": self.kind.value,
            "status": self.status.value,
            "name": self.name,
            "prompt": self.prompt,
            "created_at": self.created_at,
            "completed_at": self.completed_at,
            "result_summary": self.result_summary,
            "reason": self.reason,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "Agent":
        return cls(
            id=data["id"],
            group_jid=data["group_jid"],
            group_folder=data.get("group_folder", ""),
            kind=AgentKind(data.get("kind", "task")),
            status=AgentStatus(data.get("status", "idle")),
            name=data.get("name", ""),
            prompt=data.get("prompt", ""),
            created_at=data.get("created_at") or utc_now_iso(),
            completed_at=data.get("completed_at"),
            result_summary=data.get("result_summary"),
            reason=data.get("reason"),
        )


# ============================================================================
# MESSAGES
# ============================================================================

@dataclass
class InboundMessage:
    """A message normalized by a channel adapter."""
    id: str
    chat_jid: str
    content: str
    timestamp: str
    sender: str = ""
    sender_name: str = ""

    @property
    def cursor(self) -> MessageCursor:
        return MessageCursor(timestamp=self.timestamp, id=self.id)

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "chat_jid": self.chat_jid,
            "sender": self.sender,
            "sender_name": self.sender_name,
            "content": self.content,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "InboundMessage":
        return cls(
            id=str(data["id"]),
            chat_jid=data["chat_jid"],
            content=data.get("content", ""),
            timestamp=data["timestamp"],
            sender=data.get("sender", ""),
            sender_name=data.get("sender_name", ""),
        )


# ============================================================================
# QUEUE STATE
# ============================================================================

@dataclass
class QueueEntry:
    group_jid: str
    enqueued_at: float


@dataclass
class ExecutionHandle:
    """
    Live binding between a group and a backend unit.

    Owned by the GroupQueue; every field is read and written under its lock.
    ``agent_id`` is the Agent for the current turn; a warm unit that picks up
    a follow-up turn gets a fresh task Agent.
    """
    group_jid: str
    agent_id: str
    mode: ExecutionMode
    started_at: float
    last_activity: float
    deadline: float
    mailbox: Any = None                 # ipc.Mailbox
    poller: Any = None                  # ipc.MailboxPoller
    unit: Any = None                    # backend UnitRef
    state: HandleState = HandleState.STARTING
    turn_active: bool = True
    output_bytes: int = 0
    output_chunks: list = field(default_factory=list)
    corrupt_records: int = 0
    delivered_ids: Set[str] = field(default_factory=set)
    inflight: Dict[str, MessageCursor] = field(default_factory=dict)  # input file -> max cursor
    pending_delivery: bool = True
    pending_after_run: bool = False
    stop_requested: Optional[str] = None
    stop_reason: Optional[str] = None
    stopping_since: Optional[float] = None

    @property
    def unit_id(self) -> Optional[str]:
        return getattr(self.unit, "unit_id", None)

    def summary(self) -> Dict:
        return {
            "state": self.state.value,
            "execution_mode": self.mode.value,
            "agent_id": self.agent_id,
            "unit_id": self.unit_id,
            "started_at": self.started_at,
            "last_activity": self.last_activity,
            "output_bytes": self.output_bytes,
            "turn_active": self.turn_active,
        }
