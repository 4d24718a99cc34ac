"""
IPC MAILBOX
===========

Filesystem mailbox between the scheduler and one running execution unit.

Each (group folder, agent) pair owns a directory triad:

    {ipc_dir}/{folder}/[agents/{agent_id}/]
    ├── input/      host → unit   one JSON file per batch, written temp + rename
    ├── messages/   unit → host   JSON Lines reply chunks, append-only
    └── tasks/      unit → host   JSON Lines ack/status/result records, append-only

Two sentinel files in input/ carry control signals:
    _close      finish the current turn and exit
    _interrupt  abort the current turn, keep the unit alive

Reading is done by ``MailboxPoller``: it tails every ``*.jsonl`` file with a
per-file byte offset and only consumes complete, newline-terminated lines,
so a record that is still being written is never observed. A tracked file
that disappears is reported as unit termination.

Delivery is at-least-once: an input file stays in input/ until the unit
acknowledges it with an ``ack`` record, then the host deletes it.
"""

import itertools
import json
import logging
import secrets
import shutil
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

from ..models import InboundMessage, utc_now_iso
from ..utils import write_json_atomic
from .models import Channel, InputBatch, InputMessage, MailboxRecordError, Record, parse_record

logger = logging.getLogger(__name__)

CLOSE_SENTINEL = "_close"
INTERRUPT_SENTINEL = "_interrupt"
SENTINELS = (CLOSE_SENTINEL, INTERRUPT_SENTINEL)

# Upper bound on bytes consumed from one file per poll.
MAX_READ_BYTES = 4 * 1024 * 1024


class Mailbox:
    """One (group folder, agent) directory triad."""

    def __init__(self, root: Path):
        self.root = Path(root)
        self.input_dir = self.root / "input"
        self.messages_dir = self.root / "messages"
        self.tasks_dir = self.root / "tasks"
        self._seq = itertools.count()

    @classmethod
    def for_group(cls, ipc_dir: Path, folder: str, agent_id: Optional[str] = None) -> "Mailbox":
        base = Path(ipc_dir) / folder
        if agent_id:
            base = base / "agents" / agent_id
        return cls(base)

    def __repr__(self) -> str:
        return f"Mailbox({self.root})"

    def channel_dir(self, channel: Channel) -> Path:
        return self.messages_dir if channel == Channel.MESSAGES else self.tasks_dir

    def ensure(self) -> None:
        for directory in (self.input_dir, self.messages_dir, self.tasks_dir):
            directory.mkdir(parents=True, exist_ok=True)

    def reset(self) -> None:
        """Empty all three directories before a fresh unit starts."""
        for directory in (self.input_dir, self.messages_dir, self.tasks_dir):
            if directory.exists():
                for path in directory.iterdir():
                    if path.is_dir():
                        shutil.rmtree(path)
                    else:
                        path.unlink()
        self.ensure()

    def teardown(self) -> None:
        """Remove the whole triad (conversation deleted)."""
        if self.root.exists():
            shutil.rmtree(self.root)
            logger.info(f"Removed mailbox {self.root}")

    # ========================================================================
    # INPUT (host → unit)
    # ========================================================================

    def write_input(self, chat_jid: str, messages: Iterable[InboundMessage]) -> str:
        """Write one input batch atomically. Returns the file name."""
        self.input_dir.mkdir(parents=True, exist_ok=True)
        # Lexical order of names is write order; the unit reads input/ sorted.
        name = f"{int(time.time() * 1000):013d}-{next(self._seq):06d}-{secrets.token_hex(3)}.json"
        batch = InputBatch(
            chat_jid=chat_jid,
            messages=[
                InputMessage(
                    id=m.id,
                    sender=m.sender,
                    sender_name=m.sender_name,
                    content=m.content,
                    timestamp=m.timestamp,
                )
                for m in messages
            ],
            written_at=utc_now_iso(),
        )
        write_json_atomic(self.input_dir / name, batch.model_dump(mode="json"))
        return name

    def remove_input(self, name: str) -> bool:
        """Delete an acknowledged input file. Names outside input/ are refused."""
        path = self.input_dir / Path(name).name
        if path.name in SENTINELS or not path.exists():
            return False
        path.unlink()
        return True

    def pending_inputs(self) -> List[str]:
        if not self.input_dir.exists():
            return []
        return sorted(p.name for p in self.input_dir.glob("*.json"))

    def write_close_sentinel(self) -> None:
        self.input_dir.mkdir(parents=True, exist_ok=True)
        (self.input_dir / CLOSE_SENTINEL).write_text("", encoding="utf-8")

    def write_interrupt_sentinel(self) -> None:
        self.input_dir.mkdir(parents=True, exist_ok=True)
        (self.input_dir / INTERRUPT_SENTINEL).write_text("", encoding="utf-8")

    def has_sentinel(self, name: str) -> bool:
        return (self.input_dir / name).exists()


# ============================================================================
# POLLER (unit → host)
# ============================================================================

@dataclass
class PollResult:
    """Everything one poll pass observed, in file order."""
    records: List[Tuple[Channel, Record]] = field(default_factory=list)
    corrupt: int = 0
    vanished: List[str] = field(default_factory=list)
    bytes_read: int = 0

    @property
    def has_activity(self) -> bool:
        return bool(self.records) or self.bytes_read > 0


class MailboxPoller:
    """Tails messages/ and tasks/ of one mailbox with per-file offsets."""

    def __init__(self, mailbox: Mailbox, max_read_bytes: int = MAX_READ_BYTES):
        self.mailbox = mailbox
        self.max_read_bytes = max_read_bytes
        self._offsets: Dict[Path, int] = {}

    def skip_existing(self) -> None:
        """Start tailing at the current end of every file (adopted unit)."""
        for channel in Channel:
            directory = self.mailbox.channel_dir(channel)
            if not directory.exists():
                continue
            for path in directory.glob("*.jsonl"):
                self._offsets[path] = path.stat().st_size

    def poll(self) -> PollResult:
        result = PollResult()
        seen = set()
        for channel in Channel:
            directory = self.mailbox.channel_dir(channel)
            if not directory.exists():
                continue
            for path in sorted(directory.glob("*.jsonl")):
                seen.add(path)
                self._read_file(channel, path, result)

        for path in list(self._offsets):
            if path not in seen:
                del self._offsets[path]
                result.vanished.append(path.name)
        return result

    def _read_file(self, channel: Channel, path: Path, result: PollResult) -> None:
        offset = self._offsets.setdefault(path, 0)
        try:
            with open(path, "rb") as f:
                f.seek(offset)
                chunk = f.read(self.max_read_bytes)
        except FileNotFoundError:
            return  # reported as vanished on the next pass

        if not chunk:
            return

        end = chunk.rfind(b"\n")
        if end < 0:
            if len(chunk) >= self.max_read_bytes:
                # One line larger than the read window: discard it.
                logger.warning(f"Oversized record in {path.name}, skipping {len(chunk)} bytes")
                self._offsets[path] = offset + len(chunk)
                result.corrupt += 1
                result.bytes_read += len(chunk)
            return

        complete = chunk[: end + 1]
        self._offsets[path] = offset + len(complete)
        result.bytes_read += len(complete)

        for raw in complete.split(b"\n"):
            if not raw.strip():
                continue
            try:
                record = parse_record(channel, json.loads(raw))
            except (ValueError, MailboxRecordError) as e:
                logger.warning(f"Malformed record in {channel.value}/{path.name}: {e}")
                result.corrupt += 1
                continue
            result.records.append((channel, record))
