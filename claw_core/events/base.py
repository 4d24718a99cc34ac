"""
STATUS EVENTS - Base Classes
============================

Event records published by the scheduler and the subscriber interface that
receives them (web socket fan-out, webhooks, channel adapters).

Each subscriber implements ``EventSubscriber`` and handles delivery to one
destination.
"""

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional, Union


@dataclass
class AgentStatusEvent:
    """An Agent changed status (or was removed)."""
    group_jid: str
    agent_id: str
    status: str
    name: str = ""
    description: str = ""
    reason: Optional[str] = None
    timestamp: float = field(default_factory=time.time)

    event_type = "agent_status"

    def to_dict(self) -> Dict:
        return {
            "type": self.event_type,
            "group_jid": self.group_jid,
            "agent_id": self.agent_id,
            "status": self.status,
            "name": self.name,
            "description": self.description,
            "reason": self.reason,
            "timestamp": self.timestamp,
        }


@dataclass
class AgentReplyEvent:
    """A reply chunk produced by a running unit."""
    group_jid: str
    agent_id: str
    text: str
    timestamp: float = field(default_factory=time.time)

    event_type = "agent_reply"

    def to_dict(self) -> Dict:
        return {
            "type": self.event_type,
            "group_jid": self.group_jid,
            "agent_id": self.agent_id,
            "text": self.text,
            "timestamp": self.timestamp,
        }


Event = Union[AgentStatusEvent, AgentReplyEvent]


@dataclass
class DeliveryResult:
    """Result of a subscriber delivery attempt."""
    success: bool
    subscriber: str
    detail: Optional[str] = None


class EventSubscriber(ABC):
    """Abstract base for event subscribers."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Unique subscriber identifier, e.g. 'webhook'."""
        ...

    @abstractmethod
    def deliver(self, event: Event) -> DeliveryResult:
        """
        Deliver one event.

        Called from the bus drain, never while a scheduler lock is held.
        Exceptions are caught and logged by the bus.
        """
        ...


StatusCallback = Callable[[str, str, str, str, str, Optional[str]], None]


class CallbackSubscriber(EventSubscriber):
    """
    Adapts plain callables to the subscriber interface.

    ``on_status`` receives ``(group_jid, agent_id, status, name, description, reason)``;
    ``on_reply`` receives ``(group_jid, agent_id, text)``.
    """

    def __init__(
        self,
        on_status: Optional[StatusCallback] = None,
        on_reply: Optional[Callable[[str, str, str], None]] = None,
        name: str = "callback",
    ):
        self._on_status = on_status
        self._on_reply = on_reply
        self._name = name

    @property
    def name(self) -> str:
        return self._name

    def deliver(self, event: Event) -> DeliveryResult:
        if isinstance(event, AgentStatusEvent) and self._on_status:
            self._on_status(
                event.group_jid, event.agent_id, event.status,
                event.name, event.description, event.reason,
            )
        elif isinstance(event, AgentReplyEvent) and self._on_reply:
            self._on_reply(event.group_jid, event.agent_id, event.text)
        return DeliveryResult(success=True, subscriber=self._name)
