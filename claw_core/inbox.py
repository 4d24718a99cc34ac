"""
MESSAGE INBOX
=============

Store of inbound messages not yet committed, one JSON Lines file per chat.

The inbox is the source the queue reads from when it delivers input to a
running unit: everything past the group's committed cursor is pending.
Messages are kept in cursor order in memory and deduplicated by id, so a
channel adapter re-sending a message after a reconnect is harmless.

Once the group's cursor moves past a message it is compacted away, in
memory and on disk. The ids of the most recent compacted messages are kept
so a late re-send is still recognized; anything older is behind the cursor
and is dropped by the queue before it reaches the inbox.

Layout:
    {data_dir}/messages/{safe_jid}.jsonl
"""

import hashlib
import json
import logging
import re
import threading
from bisect import bisect_right, insort
from collections import deque
from pathlib import Path
from typing import Deque, Dict, List, Optional, Set

from .models import InboundMessage, MessageCursor
from .utils import write_text_atomic

logger = logging.getLogger(__name__)

_UNSAFE = re.compile(r"[^A-Za-z0-9._-]")

COMPACTED_IDS_KEPT = 256


def _file_stem(jid: str) -> str:
    digest = hashlib.sha1(jid.encode("utf-8")).hexdigest()[:10]
    return f"{_UNSAFE.sub('_', jid)[:80]}-{digest}"


def _cursor_key(item: tuple) -> MessageCursor:
    return item[0]


class MessageInbox:
    """Per-chat message log with id dedup and cursor-ordered reads."""

    def __init__(self, messages_dir: Path):
        self._dir = Path(messages_dir)
        self._dir.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        # jid -> [(cursor, message)] sorted by cursor
        self._messages: Dict[str, List[tuple]] = {}
        self._ids: Dict[str, Set[str]] = {}
        self._compacted: Dict[str, Deque[str]] = {}
        self._load()

    def _path_for(self, jid: str) -> Path:
        return self._dir / f"{_file_stem(jid)}.jsonl"

    def _load(self) -> None:
        for path in sorted(self._dir.glob("*.jsonl")):
            with open(path, "r", encoding="utf-8") as f:
                for line_no, line in enumerate(f, start=1):
                    if not line.strip():
                        continue
                    try:
                        msg = InboundMessage.from_dict(json.loads(line))
                    except (ValueError, KeyError, TypeError) as e:
                        logger.warning(f"Skipping bad inbox line {path.name}:{line_no}: {e}")
                        continue
                    self._insert(msg)

    def _insert(self, msg: InboundMessage) -> bool:
        ids = self._ids.setdefault(msg.chat_jid, set())
        if msg.id in ids or msg.id in self._compacted.get(msg.chat_jid, ()):
            return False
        ids.add(msg.id)
        insort(self._messages.setdefault(msg.chat_jid, []), (msg.cursor, msg), key=_cursor_key)
        return True

    def add(self, msg: InboundMessage) -> bool:
        """Record a message. Returns False if its id was already stored."""
        with self._lock:
            if not self._insert(msg):
                return False
            with open(self._path_for(msg.chat_jid), "a", encoding="utf-8") as f:
                f.write(json.dumps(msg.to_dict(), ensure_ascii=False) + "\n")
        return True

    def pending(self, jid: str, since: Optional[MessageCursor]) -> List[InboundMessage]:
        """Messages for ``jid`` strictly after ``since``, in cursor order."""
        with self._lock:
            entries = self._messages.get(jid, ())
            start = 0 if since is None else bisect_right(entries, since, key=_cursor_key)
            return [msg for _cursor, msg in entries[start:]]

    def has_pending(self, jid: str, since: Optional[MessageCursor]) -> bool:
        with self._lock:
            entries = self._messages.get(jid)
            return bool(entries) and entries[-1][0].is_after(since)

    def compact(self, jid: str, upto: Optional[MessageCursor]) -> int:
        """
        Release every message of ``jid`` at or behind ``upto``.

        Rewrites the chat's file with what is still pending. Returns the
        number of messages released.
        """
        if upto is None:
            return 0
        with self._lock:
            entries = self._messages.get(jid)
            if not entries:
                return 0
            cut = bisect_right(entries, upto, key=_cursor_key)
            if cut == 0:
                return 0

            released = entries[:cut]
            kept = entries[cut:]
            ids = self._ids[jid]
            recent = self._compacted.setdefault(jid, deque(maxlen=COMPACTED_IDS_KEPT))
            for _cursor, msg in released:
                ids.discard(msg.id)
                recent.append(msg.id)

            path = self._path_for(jid)
            if kept:
                self._messages[jid] = kept
                write_text_atomic(
                    path,
                    "".join(json.dumps(msg.to_dict(), ensure_ascii=False) + "\n" for _c, msg in kept),
                )
            else:
                del self._messages[jid]
                if path.exists():
                    path.unlink()
        logger.debug(f"Compacted {cut} message(s) for '{jid}'")
        return cut

    def chats(self) -> List[str]:
        with self._lock:
            return list(self._messages)

    def count(self, jid: str) -> int:
        with self._lock:
            return len(self._messages.get(jid, ()))

    def drop_chat(self, jid: str) -> int:
        """Forget every message of a chat (conversation deleted). Returns count."""
        with self._lock:
            removed = len(self._messages.pop(jid, ()))
            self._ids.pop(jid, None)
            self._compacted.pop(jid, None)
            path = self._path_for(jid)
            if path.exists():
                path.unlink()
        if removed:
            logger.info(f"Dropped {removed} messages for '{jid}'")
        return removed
