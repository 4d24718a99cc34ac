"""
CURSOR TRACKER
==============

Durable, forward-only watermarks over processed inbound messages.

- One cursor per group: the last message the group's agent has consumed.
  Channel adapters compare re-delivered messages against it after a
  reconnect.
- One global cursor: the newest message the core has seen from any source,
  bounding how far back a reconnecting adapter needs to replay.

A cursor update that would move a watermark backward (or leave it
unchanged) is silently ignored.

State file layout (router_state.json):

    {
        "last_timestamp": "2026-01-01T10:00:00Z",
        "last_timestamp_id": "msg-42",
        "last_agent_timestamp": {
            "web:main": {"timestamp": "2026-01-01T09:59:00Z", "id": "msg-41"}
        }
    }

Older files stored plain timestamp strings per group; those load as
cursors with an empty id.
"""

import logging
import threading
from pathlib import Path
from typing import Dict, Optional

from .models import MessageCursor
from .utils import read_json, write_json_atomic

logger = logging.getLogger(__name__)


class CursorTracker:
    """Per-group and global message watermarks persisted to one JSON file."""

    def __init__(self, state_file: Path):
        self._state_file = Path(state_file)
        self._lock = threading.Lock()
        self._cursors: Dict[str, MessageCursor] = {}
        self._global: Optional[MessageCursor] = None
        self.load()

    # ========================================================================
    # PERSISTENCE
    # ========================================================================

    def load(self) -> None:
        """Load state from disk. A corrupt file resets to empty."""
        try:
            data = read_json(self._state_file, {})
        except (OSError, ValueError) as e:
            logger.warning(f"Cursor state unreadable ({e}), starting empty")
            data = {}
        if not isinstance(data, dict):
            logger.warning("Cursor state is not an object, starting empty")
            data = {}

        cursors: Dict[str, MessageCursor] = {}
        for jid, raw in (data.get("last_agent_timestamp") or {}).items():
            cursor = MessageCursor.from_value(raw)
            if cursor is not None:
                cursors[jid] = cursor

        global_cursor = None
        if data.get("last_timestamp"):
            global_cursor = MessageCursor(
                timestamp=str(data["last_timestamp"]),
                id=str(data.get("last_timestamp_id") or ""),
            )

        with self._lock:
            self._cursors = cursors
            self._global = global_cursor

    def _save_locked(self) -> None:
        payload = {
            "last_timestamp": self._global.timestamp if self._global else "",
            "last_timestamp_id": self._global.id if self._global else "",
            "last_agent_timestamp": {
                jid: cursor.to_dict() for jid, cursor in sorted(self._cursors.items())
            },
        }
        write_json_atomic(self._state_file, payload)

    # ========================================================================
    # READ
    # ========================================================================

    def get(self, group_jid: str) -> Optional[MessageCursor]:
        """Last committed cursor for a group, or None if nothing was processed."""
        with self._lock:
            return self._cursors.get(group_jid)

    def get_global(self) -> Optional[MessageCursor]:
        with self._lock:
            return self._global

    def is_processed(self, group_jid: str, cursor: MessageCursor) -> bool:
        """True when ``cursor`` is at or behind the group's committed cursor."""
        with self._lock:
            current = self._cursors.get(group_jid)
        return current is not None and not cursor.is_after(current)

    def snapshot(self) -> Dict:
        with self._lock:
            return {
                "global": self._global.to_dict() if self._global else None,
                "groups": {jid: c.to_dict() for jid, c in self._cursors.items()},
            }

    # ========================================================================
    # WRITE
    # ========================================================================

    def advance(self, group_jid: str, cursor: MessageCursor) -> bool:
        """Move a group's cursor forward. Returns False (no-op) if not newer."""
        with self._lock:
            current = self._cursors.get(group_jid)
            if not cursor.is_after(current):
                return False
            self._cursors[group_jid] = cursor
            self._save_locked()
        logger.debug(f"Cursor for '{group_jid}' -> {cursor.timestamp}/{cursor.id}")
        return True

    def advance_global(self, cursor: MessageCursor) -> bool:
        """Move the process-wide watermark forward. Returns False if not newer."""
        with self._lock:
            if not cursor.is_after(self._global):
                return False
            self._global = cursor
            self._save_locked()
        return True

    def forget(self, group_jid: str) -> None:
        """Drop a group's cursor (group deregistered or conversation deleted)."""
        with self._lock:
            if self._cursors.pop(group_jid, None) is not None:
                self._save_locked()
