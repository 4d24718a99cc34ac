"""
EVENT BUS
=========

Ordered fan-out of scheduler events to registered subscribers.

Publishing is split in two steps:

- ``post(event)`` appends to a FIFO and returns immediately. It is safe to
  call while holding any scheduler lock; the agent store posts status events
  inside its own lock, so FIFO order equals transition order.
- ``flush()`` drains the FIFO and calls subscribers. Only one thread drains
  at a time; a thread that finds a drain in progress returns and leaves its
  events to the active drainer, so delivery order is never interleaved.

Callers flush after releasing their locks.
"""

import logging
import threading
from collections import deque
from typing import Deque, Dict, List

from .base import DeliveryResult, Event, EventSubscriber

logger = logging.getLogger(__name__)


class EventBus:
    """Dispatches events to registered subscribers in publish order."""

    def __init__(self):
        self._subscribers: Dict[str, EventSubscriber] = {}
        self._pending: Deque[Event] = deque()
        self._lock = threading.Lock()
        self._draining = False

    def register(self, subscriber: EventSubscriber) -> None:
        """Register a subscriber by name (replaces one with the same name)."""
        with self._lock:
            self._subscribers[subscriber.name] = subscriber
        logger.info(f"Event subscriber registered: {subscriber.name}")

    def unregister(self, name: str) -> bool:
        with self._lock:
            return self._subscribers.pop(name, None) is not None

    @property
    def subscriber_names(self) -> List[str]:
        with self._lock:
            return list(self._subscribers)

    def post(self, event: Event) -> None:
        """Queue an event for delivery."""
        with self._lock:
            self._pending.append(event)

    def publish(self, event: Event) -> None:
        """Queue an event and deliver everything pending."""
        self.post(event)
        self.flush()

    def flush(self) -> int:
        """Deliver pending events. Returns how many this call delivered."""
        with self._lock:
            if self._draining:
                return 0
            self._draining = True

        delivered = 0
        try:
            while True:
                with self._lock:
                    if not self._pending:
                        self._draining = False
                        return delivered
                    event = self._pending.popleft()
                    subscribers = list(self._subscribers.values())
                for subscriber in subscribers:
                    self._deliver(subscriber, event)
                delivered += 1
        except BaseException:
            with self._lock:
                self._draining = False
            raise

    def _deliver(self, subscriber: EventSubscriber, event: Event) -> None:
        try:
            result = subscriber.deliver(event)
        except Exception as e:
            logger.error(f"Subscriber error ({subscriber.name}): {e}", exc_info=True)
            return
        if isinstance(result, DeliveryResult) and not result.success:
            logger.warning(f"Delivery failed for {subscriber.name}: {result.detail}")
