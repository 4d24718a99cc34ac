"""
WEBHOOK SUBSCRIBER
==================

POSTs scheduler events as JSON to an external fan-out service (the API
layer's broadcaster, a chat bridge, ...).

Request:
    POST {url}
    Authorization: Bearer {token}      (when a token is configured)
    {"type": "agent_status", "group_jid": ..., "agent_id": ..., ...}

Any 2xx response counts as delivered.
"""

import logging
from typing import Optional

import requests

from .base import DeliveryResult, Event, EventSubscriber

logger = logging.getLogger(__name__)


class WebhookSubscriber(EventSubscriber):
    """Delivers events to one HTTP endpoint."""

    def __init__(
        self,
        url: str,
        token: Optional[str] = None,
        timeout: float = 5.0,
        session: Optional[requests.Session] = None,
    ):
        self._url = url
        self._token = token
        self._timeout = timeout
        self._session = session or requests.Session()

    @property
    def name(self) -> str:
        return "webhook"

    def deliver(self, event: Event) -> DeliveryResult:
        headers = {"Content-Type": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"

        try:
            resp = self._session.post(
                self._url,
                json=event.to_dict(),
                headers=headers,
                timeout=self._timeout,
            )
        except requests.RequestException as e:
            return DeliveryResult(
                success=False,
                subscriber=self.name,
                detail=f"Request failed: {e}",
            )

        if 200 <= resp.status_code < 300:
            return DeliveryResult(
                success=True,
                subscriber=self.name,
                detail=f"{event.event_type} -> HTTP {resp.status_code}",
            )
        return DeliveryResult(
            success=False,
            subscriber=self.name,
            detail=f"HTTP {resp.status_code}: {resp.text[:200]}",
        )
