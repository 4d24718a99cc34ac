"""
Tests for the persistent stores: cursors, inbox, agents, groups.
"""

import json
from unittest.mock import MagicMock

import pytest

from claw_core.agents import AgentStore, InvalidTransition
from claw_core.cursors import CursorTracker
from claw_core.events import AgentStatusEvent
from claw_core.groups import GroupRegistry
from claw_core.inbox import MessageInbox
from claw_core.models import AgentKind, AgentStatus, ExecutionMode, Group, MessageCursor

from .conftest import make_message


# =============================================================================
# CursorTracker
# =============================================================================


class TestCursorTracker:
    """Tests for CursorTracker."""

    def test_advance_is_forward_only(self, tmp_path):
        tracker = CursorTracker(tmp_path / "router_state.json")

        assert tracker.advance("a@g.us", MessageCursor("2026-01-01T00:00:05Z", "m5")) is True
        assert tracker.advance("a@g.us", MessageCursor("2026-01-01T00:00:03Z", "m3")) is False
        assert tracker.advance("a@g.us", MessageCursor("2026-01-01T00:00:05Z", "m5")) is False
        assert tracker.get("a@g.us") == MessageCursor("2026-01-01T00:00:05Z", "m5")

    def test_same_timestamp_ordered_by_id(self, tmp_path):
        tracker = CursorTracker(tmp_path / "router_state.json")
        tracker.advance("a@g.us", MessageCursor("2026-01-01T00:00:05Z", "m1"))

        assert tracker.advance("a@g.us", MessageCursor("2026-01-01T00:00:05Z", "m2")) is True
        assert tracker.is_processed("a@g.us", MessageCursor("2026-01-01T00:00:05Z", "m1"))
        assert not tracker.is_processed("a@g.us", MessageCursor("2026-01-01T00:00:05Z", "m3"))

    def test_persisted_and_reloaded(self, tmp_path):
        path = tmp_path / "router_state.json"
        tracker = CursorTracker(path)
        tracker.advance("a@g.us", MessageCursor("2026-01-01T00:00:05Z", "m5"))
        tracker.advance_global(MessageCursor("2026-01-01T00:00:09Z", "m9"))

        reloaded = CursorTracker(path)

        assert reloaded.get("a@g.us") == MessageCursor("2026-01-01T00:00:05Z", "m5")
        assert reloaded.get_global() == MessageCursor("2026-01-01T00:00:09Z", "m9")

    def test_legacy_string_cursor_loads(self, tmp_path):
        path = tmp_path / "router_state.json"
        path.write_text(json.dumps({
            "last_timestamp": "2026-01-01T00:00:01Z",
            "last_agent_timestamp": {"a@g.us": "2026-01-01T00:00:01Z"},
        }))

        tracker = CursorTracker(path)

        assert tracker.get("a@g.us") == MessageCursor("2026-01-01T00:00:01Z", "")

    def test_corrupt_file_starts_empty(self, tmp_path):
        path = tmp_path / "router_state.json"
        path.write_text("{not json")

        tracker = CursorTracker(path)

        assert tracker.get("a@g.us") is None
        assert tracker.get_global() is None

    def test_forget(self, tmp_path):
        tracker = CursorTracker(tmp_path / "router_state.json")
        tracker.advance("a@g.us", MessageCursor("2026-01-01T00:00:05Z", "m5"))

        tracker.forget("a@g.us")

        assert tracker.get("a@g.us") is None
        assert "a@g.us" not in tracker.snapshot()["groups"]


# =============================================================================
# MessageInbox
# =============================================================================


class TestMessageInbox:
    """Tests for MessageInbox."""

    def test_pending_after_cursor_in_order(self, tmp_path):
        inbox = MessageInbox(tmp_path / "messages")
        for n in (3, 1, 2):
            inbox.add(make_message("a@g.us", n))

        pending = inbox.pending("a@g.us", make_message("a@g.us", 1).cursor)

        assert [m.id for m in pending] == ["m2", "m3"]
        assert inbox.has_pending("a@g.us", make_message("a@g.us", 2).cursor)
        assert not inbox.has_pending("a@g.us", make_message("a@g.us", 3).cursor)

    def test_dedup_by_id(self, tmp_path):
        inbox = MessageInbox(tmp_path / "messages")

        assert inbox.add(make_message("a@g.us", 1)) is True
        assert inbox.add(make_message("a@g.us", 1)) is False
        assert inbox.count("a@g.us") == 1

    def test_reload_from_disk(self, tmp_path):
        inbox = MessageInbox(tmp_path / "messages")
        inbox.add(make_message("a@g.us", 1))
        inbox.add(make_message("b@g.us", 1))

        reloaded = MessageInbox(tmp_path / "messages")

        assert sorted(reloaded.chats()) == ["a@g.us", "b@g.us"]
        assert reloaded.pending("a@g.us", None)[0].content == "hello 1"

    def test_drop_chat(self, tmp_path):
        inbox = MessageInbox(tmp_path / "messages")
        inbox.add(make_message("a@g.us", 1))
        inbox.add(make_message("a@g.us", 2))

        assert inbox.drop_chat("a@g.us") == 2
        assert inbox.count("a@g.us") == 0
        assert MessageInbox(tmp_path / "messages").count("a@g.us") == 0
        assert inbox.add(make_message("a@g.us", 1)) is True

    def test_compact_releases_history_behind_cursor(self, tmp_path):
        inbox = MessageInbox(tmp_path / "messages")
        for n in range(1, 6):
            inbox.add(make_message("a@g.us", n))

        assert inbox.compact("a@g.us", make_message("a@g.us", 3).cursor) == 3

        assert inbox.count("a@g.us") == 2
        assert [m.id for m in inbox.pending("a@g.us", None)] == ["m4", "m5"]
        reloaded = MessageInbox(tmp_path / "messages")
        assert [m.id for m in reloaded.pending("a@g.us", None)] == ["m4", "m5"]

    def test_compacted_ids_still_deduplicated(self, tmp_path):
        inbox = MessageInbox(tmp_path / "messages")
        inbox.add(make_message("a@g.us", 1))
        inbox.compact("a@g.us", make_message("a@g.us", 1).cursor)

        assert inbox.chats() == []
        assert inbox.add(make_message("a@g.us", 1)) is False

    def test_compact_with_nothing_behind_cursor(self, tmp_path):
        inbox = MessageInbox(tmp_path / "messages")
        inbox.add(make_message("a@g.us", 4))

        assert inbox.compact("a@g.us", make_message("a@g.us", 2).cursor) == 0
        assert inbox.compact("a@g.us", None) == 0
        assert inbox.compact("b@g.us", make_message("b@g.us", 9).cursor) == 0
        assert inbox.count("a@g.us") == 1


# =============================================================================
# AgentStore
# =============================================================================


@pytest.fixture
def group():
    return Group(jid="a@g.us", name="Team", folder="team")


class TestAgentStore:
    """Tests for AgentStore and the status state machine."""

    def test_create_starts_idle(self, tmp_path, group):
        store = AgentStore(tmp_path / "agents.json")

        agent = store.create(group, AgentKind.TASK, name="run", prompt="hi")

        assert agent.status == AgentStatus.IDLE
        assert store.get(agent.id).group_folder == "team"

    def test_duplicate_id_rejected(self, tmp_path, group):
        store = AgentStore(tmp_path / "agents.json")
        store.create(group, AgentKind.TASK, agent_id="x")

        with pytest.raises(ValueError):
            store.create(group, AgentKind.TASK, agent_id="x")

    def test_transition_happy_path_posts_events(self, tmp_path, group):
        bus = MagicMock()
        store = AgentStore(tmp_path / "agents.json", bus)
        agent = store.create(group, AgentKind.TASK, name="run", prompt="summarize")

        assert store.transition(agent.id, AgentStatus.IDLE, AgentStatus.RUNNING) is True
        assert store.transition(
            agent.id, AgentStatus.RUNNING, AgentStatus.COMPLETED, result_summary="ok",
        ) is True

        events = [call.args[0] for call in bus.post.call_args_list]
        assert all(isinstance(e, AgentStatusEvent) for e in events)
        assert [e.status for e in events] == ["running", "completed"]
        assert events[0].description == "summarize"
        stored = store.get(agent.id)
        assert stored.result_summary == "ok"
        assert stored.completed_at is not None

    def test_compare_and_set_loses_quietly(self, tmp_path, group):
        store = AgentStore(tmp_path / "agents.json")
        agent = store.create(group, AgentKind.TASK)
        store.transition(agent.id, AgentStatus.IDLE, AgentStatus.RUNNING)
        store.transition(agent.id, AgentStatus.RUNNING, AgentStatus.ERROR, reason="stopped by user")

        assert store.transition(agent.id, AgentStatus.RUNNING, AgentStatus.COMPLETED) is False
        assert store.get(agent.id).reason == "stopped by user"

    def test_illegal_edge_raises(self, tmp_path, group):
        store = AgentStore(tmp_path / "agents.json")
        agent = store.create(group, AgentKind.TASK)

        with pytest.raises(InvalidTransition):
            store.transition(agent.id, AgentStatus.IDLE, AgentStatus.COMPLETED)

    def test_unknown_agent(self, tmp_path):
        store = AgentStore(tmp_path / "agents.json")
        assert store.transition("nope", AgentStatus.IDLE, AgentStatus.RUNNING) is False
        assert store.get_status("nope") is None

    def test_persisted_and_reloaded(self, tmp_path, group):
        store = AgentStore(tmp_path / "agents.json")
        agent = store.create(group, AgentKind.CONVERSATION, name="helper")
        store.transition(agent.id, AgentStatus.IDLE, AgentStatus.ERROR, reason="failed to start")

        reloaded = AgentStore(tmp_path / "agents.json")

        assert reloaded.get(agent.id).to_dict() == store.get(agent.id).to_dict()
        assert [a.id for a in reloaded.list_agents(kind=AgentKind.CONVERSATION)] == [agent.id]


# =============================================================================
# GroupRegistry
# =============================================================================


class TestGroupRegistry:
    """Tests for GroupRegistry."""

    def test_register_and_reload(self, tmp_path):
        registry = GroupRegistry(tmp_path / "groups.json")
        registry.register("a@g.us", "Team", "team", ExecutionMode.HOST)

        reloaded = GroupRegistry(tmp_path / "groups.json")

        group = reloaded.get("a@g.us")
        assert group.folder == "team"
        assert group.execution_mode == ExecutionMode.HOST

    def test_register_is_idempotent(self, tmp_path):
        registry = GroupRegistry(tmp_path / "groups.json")
        first = registry.register("a@g.us", "Team", "team")

        assert registry.register("a@g.us", "Team", "team") is first

    def test_execution_mode_is_fixed(self, tmp_path):
        registry = GroupRegistry(tmp_path / "groups.json")
        registry.register("a@g.us", "Team", "team", ExecutionMode.CONTAINER)

        with pytest.raises(ValueError):
            registry.register("a@g.us", "Team", "team", ExecutionMode.HOST)

    @pytest.mark.parametrize("folder", ["", "../etc", "with space", "-leading"])
    def test_bad_folder_rejected(self, tmp_path, folder):
        registry = GroupRegistry(tmp_path / "groups.json")
        with pytest.raises(ValueError):
            registry.register("a@g.us", "Team", folder)

    def test_conversation_binding(self, tmp_path):
        registry = GroupRegistry(tmp_path / "groups.json")
        parent = registry.register("a@g.us", "Team", "team", ExecutionMode.HOST)

        conv = registry.register_conversation(parent, "agent42", "Helper")

        assert conv.jid == "a@g.us#agent:agent42"
        assert conv.folder == "team"
        assert conv.execution_mode == ExecutionMode.HOST
        assert conv.is_conversation
        assert registry.conversations_of("a@g.us") == [conv]
        assert [g.jid for g in registry.list_groups(include_conversations=False)] == ["a@g.us"]
