"""
Tests for the container (mocked Docker SDK) and host-process backends.
"""

import json
import subprocess
import sys
import threading
import time
from unittest.mock import MagicMock

import pytest
from docker.errors import APIError, NotFound

from claw_core.backends import BackendStartError, ContainerBackend, HostBackend, container_name
from claw_core.backends.host import PID_FILE, process_start_token
from claw_core.config import ContainerConfig, HostConfig, PathsConfig
from claw_core.ipc import CLOSE_SENTINEL, Mailbox
from claw_core.models import ExecutionHandle, ExecutionMode, Group


@pytest.fixture
def paths(tmp_path):
    return PathsConfig(
        data_dir=str(tmp_path / "data"),
        groups_dir=str(tmp_path / "groups"),
        config_dir=str(tmp_path / "config"),
    )


@pytest.fixture
def group():
    return Group(jid="a@g.us", name="Team", folder="team")


def _handle(unit, mailbox, mode):
    return ExecutionHandle(
        group_jid="a@g.us", agent_id="agent-1", mode=mode,
        started_at=0.0, last_activity=0.0, deadline=0.0,
        mailbox=mailbox, unit=unit,
    )


# =============================================================================
# Container backend
# =============================================================================


class FakeContainer:
    """Stands in for docker.models.containers.Container."""

    def __init__(self, container_id="abcdef1234567890", status="running"):
        self.id = container_id
        self.status = status
        self.stopped = threading.Event()
        self.stop = MagicMock(side_effect=lambda timeout=None: self.stopped.set())
        self.kill = MagicMock(side_effect=lambda: self.stopped.set())
        self.remove = MagicMock()

    def wait(self):
        self.stopped.wait(10)
        return {"StatusCode": 0}


@pytest.fixture
def docker_client():
    client = MagicMock()
    client.containers.get.side_effect = NotFound("no such container")
    return client


class TestContainerBackend:
    """Tests for ContainerBackend against a mocked Docker client."""

    def test_container_name_is_deterministic_and_safe(self):
        assert container_name("team", None) == "claw-team-main"
        assert container_name("team", "a/b") == "claw-team-a-b"

    def test_start_runs_container_with_limits_and_mounts(self, paths, group, docker_client, tmp_path):
        container = FakeContainer()
        docker_client.containers.run.return_value = container
        config = ContainerConfig(image="claw-agent:test", memory_limit="1g", cpu_limit=1.5)
        backend = ContainerBackend(config, paths, client=docker_client)
        mailbox = Mailbox.for_group(paths.ipc_dir, "team")

        unit = backend.start(group, None, mailbox)

        kwargs = docker_client.containers.run.call_args.kwargs
        assert kwargs["image"] == "claw-agent:test"
        assert kwargs["name"] == "claw-team-main"
        assert kwargs["mem_limit"] == "1g"
        assert kwargs["nano_cpus"] == 1_500_000_000
        assert kwargs["volumes"][str(mailbox.root)]["bind"] == config.ipc_mount
        assert kwargs["environment"]["CLAW_GROUP_JID"] == "a@g.us"
        assert unit.unit_id == "abcdef123456"
        assert unit.adopted is False
        assert mailbox.input_dir.is_dir()

        handle = _handle(unit, mailbox, ExecutionMode.CONTAINER)
        assert backend.is_alive(handle)
        container.stopped.set()
        assert unit.exited.wait(5)
        assert not backend.is_alive(handle)

    def test_running_container_is_adopted(self, paths, group, docker_client):
        existing = FakeContainer(status="running")
        docker_client.containers.get.side_effect = None
        docker_client.containers.get.return_value = existing
        backend = ContainerBackend(ContainerConfig(), paths, client=docker_client)

        unit = backend.start(group, None, Mailbox.for_group(paths.ipc_dir, "team"))

        assert unit.adopted is True
        docker_client.containers.run.assert_not_called()
        existing.stopped.set()

    def test_stale_container_is_removed_then_replaced(self, paths, group, docker_client):
        stale = FakeContainer(status="exited")
        docker_client.containers.get.side_effect = None
        docker_client.containers.get.return_value = stale
        fresh = FakeContainer(container_id="1111111111111111")
        docker_client.containers.run.return_value = fresh
        backend = ContainerBackend(ContainerConfig(), paths, client=docker_client)

        unit = backend.start(group, None, Mailbox.for_group(paths.ipc_dir, "team"))

        stale.remove.assert_called_once_with(force=True)
        assert unit.unit_id == "111111111111"
        fresh.stopped.set()

    def test_engine_error_becomes_start_error(self, paths, group, docker_client):
        docker_client.containers.run.side_effect = APIError("image not found")
        backend = ContainerBackend(ContainerConfig(), paths, client=docker_client)

        with pytest.raises(BackendStartError):
            backend.start(group, None, Mailbox.for_group(paths.ipc_dir, "team"))

    def test_stop_writes_sentinel_then_terminates(self, paths, group, docker_client):
        container = FakeContainer()
        docker_client.containers.run.return_value = container
        backend = ContainerBackend(ContainerConfig(), paths, client=docker_client)
        mailbox = Mailbox.for_group(paths.ipc_dir, "team")
        unit = backend.start(group, None, mailbox)
        handle = _handle(unit, mailbox, ExecutionMode.CONTAINER)

        backend.stop(handle, grace=0.1)

        assert mailbox.has_sentinel(CLOSE_SENTINEL)
        container.stop.assert_called_once()
        container.remove.assert_called_once_with(force=True)
        assert unit.exited.is_set()

    def test_force_stop_skips_sentinel(self, paths, group, docker_client):
        container = FakeContainer()
        docker_client.containers.run.return_value = container
        backend = ContainerBackend(ContainerConfig(), paths, client=docker_client)
        mailbox = Mailbox.for_group(paths.ipc_dir, "team")
        unit = backend.start(group, None, mailbox)

        backend.stop(_handle(unit, mailbox, ExecutionMode.CONTAINER), grace=0)

        assert not mailbox.has_sentinel(CLOSE_SENTINEL)
        container.stop.assert_called_once()


# =============================================================================
# Host backend
# =============================================================================


@pytest.fixture
def host_config():
    return HostConfig(command=[sys.executable, "-c", "import time; time.sleep(30)"])


class TestHostBackend:
    """Tests for HostBackend with real subprocesses."""

    def test_start_probe_and_stop(self, paths, group, host_config):
        backend = HostBackend(host_config, paths)
        backend.wait_poll_interval = 0.02
        mailbox = Mailbox.for_group(paths.ipc_dir, "team")

        unit = backend.start(group, None, mailbox)
        handle = _handle(unit, mailbox, ExecutionMode.HOST)
        pid_file = paths.get_session_dir("team") / "unit.pid"

        try:
            assert backend.is_alive(handle)
            record = json.loads(pid_file.read_text())
            assert record["pid"] == unit.native.pid
            assert record["start"] == process_start_token(unit.native.pid)
        finally:
            backend.stop(handle, grace=0.2)

        assert not backend.is_alive(handle)
        assert mailbox.has_sentinel(CLOSE_SENTINEL)
        assert not pid_file.exists()

    def test_live_pid_is_adopted(self, paths, group, host_config):
        first = HostBackend(host_config, paths)
        mailbox = Mailbox.for_group(paths.ipc_dir, "team")
        unit = first.start(group, None, mailbox)

        try:
            adopted = HostBackend(host_config, paths).start(group, None, mailbox)
            assert adopted.adopted is True
            assert adopted.unit_id == unit.unit_id
        finally:
            first.stop(_handle(unit, mailbox, ExecutionMode.HOST), grace=0)

    def test_process_exit_is_observed(self, paths, group):
        backend = HostBackend(HostConfig(command=[sys.executable, "-c", "pass"]), paths)
        mailbox = Mailbox.for_group(paths.ipc_dir, "team")
        unit = backend.start(group, None, mailbox)
        handle = _handle(unit, mailbox, ExecutionMode.HOST)

        deadline = time.monotonic() + 10
        while backend.is_alive(handle) and time.monotonic() < deadline:
            time.sleep(0.05)

        assert not backend.is_alive(handle)
        assert unit.exit_code == 0

    def test_missing_binary_is_start_error(self, paths, group):
        backend = HostBackend(HostConfig(command=["/nonexistent/claw-runner"]), paths)

        with pytest.raises(BackendStartError):
            backend.start(group, None, Mailbox.for_group(paths.ipc_dir, "team"))

    def test_pid_of_unrelated_process_is_not_adopted(self, paths, group, host_config):
        """A reused pid (same number, different start time) is never adopted or signalled."""
        stranger = subprocess.Popen([sys.executable, "-c", "import time; time.sleep(30)"])
        session_dir = paths.get_session_dir("team")
        session_dir.mkdir(parents=True, exist_ok=True)
        pid_file = session_dir / PID_FILE
        pid_file.write_text(json.dumps({"pid": stranger.pid, "start": "not-its-start-time"}))
        mailbox = Mailbox.for_group(paths.ipc_dir, "team")
        backend = HostBackend(host_config, paths)

        try:
            unit = backend.start(group, None, mailbox)
            try:
                assert unit.adopted is False
                assert unit.native.pid != stranger.pid
                assert json.loads(pid_file.read_text())["pid"] == unit.native.pid
            finally:
                backend.stop(_handle(unit, mailbox, ExecutionMode.HOST), grace=0)
            assert stranger.poll() is None
        finally:
            stranger.kill()
            stranger.wait()

    def test_legacy_pid_file_without_start_time_is_discarded(self, paths, group, host_config):
        stranger = subprocess.Popen([sys.executable, "-c", "import time; time.sleep(30)"])
        session_dir = paths.get_session_dir("team")
        session_dir.mkdir(parents=True, exist_ok=True)
        (session_dir / PID_FILE).write_text(str(stranger.pid))
        mailbox = Mailbox.for_group(paths.ipc_dir, "team")
        backend = HostBackend(host_config, paths)

        try:
            unit = backend.start(group, None, mailbox)
            assert unit.adopted is False
            backend.stop(_handle(unit, mailbox, ExecutionMode.HOST), grace=0)
            assert stranger.poll() is None
        finally:
            stranger.kill()
            stranger.wait()

    def test_force_release_kills_and_removes_pid_file(self, paths, group, host_config):
        backend = HostBackend(host_config, paths)
        mailbox = Mailbox.for_group(paths.ipc_dir, "team")
        unit = backend.start(group, None, mailbox)
        pid_file = paths.get_session_dir("team") / PID_FILE

        backend.force_release(unit)

        assert not pid_file.exists()
        assert unit.native.wait(5) == -9
