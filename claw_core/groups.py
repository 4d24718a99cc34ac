"""
GROUP REGISTRY
==============

Registered conversational destinations, persisted to ``{data_dir}/groups.json``.

A group's execution mode is fixed when it is registered. Conversation
bindings are registered as virtual groups (``{jid}#agent:{agent_id}``) that
share the parent's folder and execution mode.
"""

import logging
import threading
from pathlib import Path
from typing import Dict, List, Optional

from .models import FOLDER_PATTERN, ExecutionMode, Group, conversation_jid
from .utils import read_json_dict, write_json_atomic

logger = logging.getLogger(__name__)


class GroupRegistry:
    """Lookup and persistence for groups."""

    def __init__(self, store_file: Path):
        self._store_file = Path(store_file)
        self._lock = threading.Lock()
        self._groups: Dict[str, Group] = {}
        self._load()

    def _load(self) -> None:
        data = read_json_dict(self._store_file)
        for raw in data.get("groups", []):
            try:
                group = Group.from_dict(raw)
            except (KeyError, ValueError) as e:
                logger.warning(f"Skipping bad group record: {e}")
                continue
            self._groups[group.jid] = group

    def _save_locked(self) -> None:
        write_json_atomic(
            self._store_file,
            {"groups": [g.to_dict() for g in self._groups.values()]},
        )

    def register(
        self,
        jid: str,
        name: str,
        folder: str,
        execution_mode: ExecutionMode = ExecutionMode.CONTAINER,
    ) -> Group:
        """
        Register a group, or return the existing registration.

        Raises:
            ValueError: bad folder name, or the jid is already registered
                with a different folder or execution mode.
        """
        if not FOLDER_PATTERN.match(folder):
            raise ValueError(f"Invalid group folder name: {folder!r}")
        mode = ExecutionMode(execution_mode)

        with self._lock:
            existing = self._groups.get(jid)
            if existing is not None:
                if existing.folder != folder or existing.execution_mode != mode:
                    raise ValueError(
                        f"Group '{jid}' is already registered as "
                        f"{existing.folder}/{existing.execution_mode.value}"
                    )
                return existing
            group = Group(jid=jid, name=name, folder=folder, execution_mode=mode)
            self._groups[jid] = group
            self._save_locked()

        logger.info(f"Group registered: {jid} -> {folder} ({mode.value})")
        return group

    def register_conversation(self, parent: Group, agent_id: str, name: str) -> Group:
        """Register the virtual group addressing one conversation agent."""
        group = Group(
            jid=conversation_jid(parent.jid, agent_id),
            name=name or parent.name,
            folder=parent.folder,
            execution_mode=parent.execution_mode,
            agent_id=agent_id,
        )
        with self._lock:
            self._groups[group.jid] = group
            self._save_locked()
        return group

    def deregister(self, jid: str) -> Optional[Group]:
        with self._lock:
            group = self._groups.pop(jid, None)
            if group is not None:
                self._save_locked()
        if group is not None:
            logger.info(f"Group deregistered: {jid}")
        return group

    def get(self, jid: str) -> Optional[Group]:
        with self._lock:
            return self._groups.get(jid)

    def list_groups(self, include_conversations: bool = True) -> List[Group]:
        with self._lock:
            groups = list(self._groups.values())
        if not include_conversations:
            groups = [g for g in groups if not g.is_conversation]
        return groups

    def conversations_of(self, parent_jid: str) -> List[Group]:
        prefix = conversation_jid(parent_jid, "")
        with self._lock:
            return [g for g in self._groups.values() if g.jid.startswith(prefix)]
