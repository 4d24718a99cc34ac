"""
Scheduler event fan-out: status and reply events, subscriber plugins.
"""

from .base import (
    AgentReplyEvent,
    AgentStatusEvent,
    CallbackSubscriber,
    DeliveryResult,
    Event,
    EventSubscriber,
)
from .bus import EventBus
from .webhook import WebhookSubscriber

__all__ = [
    "AgentReplyEvent",
    "AgentStatusEvent",
    "CallbackSubscriber",
    "DeliveryResult",
    "Event",
    "EventBus",
    "EventSubscriber",
    "WebhookSubscriber",
]
