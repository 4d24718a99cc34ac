"""
CONTAINER BACKEND
=================

Runs units as Docker containers through the ``docker`` SDK.

Each unit gets:
- bounded memory and CPU (``mem_limit`` / ``nano_cpus``)
- the group workspace, its mailbox triad and its session directory as
  bind mounts
- a deterministic name per (folder, agent) and ``claw.*`` labels

Because the name is deterministic, a container that is still running when
the scheduler restarts is found by name and adopted rather than launched a
second time.

Liveness comes from a waiter thread blocked in ``container.wait()``; it
flips ``UnitRef.exited`` when the container stops, so ``probe()`` never
calls the engine.
"""

import logging
import re
import threading
from typing import Any, Dict, Optional

import docker
import requests
from docker.errors import APIError, DockerException, NotFound

from ..config import ContainerConfig, PathsConfig
from ..ipc import Mailbox
from ..models import ExecutionMode, Group
from .base import BackendStartError, ExecutionBackend, UnitRef

logger = logging.getLogger(__name__)

_NAME_UNSAFE = re.compile(r"[^a-zA-Z0-9_.-]")


def container_name(folder: str, agent_id: Optional[str]) -> str:
    """Deterministic container name for a (folder, agent) pair."""
    raw = f"claw-{folder}-{agent_id or 'main'}"
    return _NAME_UNSAFE.sub("-", raw)[:63]


class ContainerBackend(ExecutionBackend):
    """Launches and supervises Docker containers."""

    mode = ExecutionMode.CONTAINER

    def __init__(self, config: ContainerConfig, paths: PathsConfig, client: Any = None):
        self._config = config
        self._paths = paths
        self._client = client
        self._client_lock = threading.Lock()

    def _get_client(self):
        with self._client_lock:
            if self._client is None:
                try:
                    self._client = docker.from_env()
                    self._client.ping()
                except DockerException as e:
                    self._client = None
                    raise BackendStartError(f"Docker engine unavailable: {e}", self.mode) from e
                logger.info("Docker client connected")
            return self._client

    # ========================================================================
    # START
    # ========================================================================

    def start(self, group: Group, agent_id: Optional[str], mailbox: Mailbox) -> UnitRef:
        client = self._get_client()
        name = container_name(group.folder, agent_id)

        adopted = self._adopt(client, name)
        if adopted is not None:
            return adopted

        mailbox.reset()
        group_dir = self._paths.get_group_dir(group.folder)
        session_dir = self._paths.get_session_dir(group.folder, agent_id)
        group_dir.mkdir(parents=True, exist_ok=True)
        session_dir.mkdir(parents=True, exist_ok=True)

        cfg = self._config
        environment: Dict[str, str] = dict(cfg.environment)
        environment.update({
            "CLAW_GROUP_JID": group.jid,
            "CLAW_GROUP_FOLDER": group.folder,
            "CLAW_AGENT_ID": agent_id or "",
            "CLAW_IPC_DIR": cfg.ipc_mount,
        })

        try:
            container = client.containers.run(
                image=cfg.image,
                name=name,
                detach=True,
                environment=environment,
                volumes={
                    str(group_dir): {"bind": cfg.workspace_mount, "mode": "rw"},
                    str(mailbox.root): {"bind": cfg.ipc_mount, "mode": "rw"},
                    str(session_dir): {"bind": cfg.session_mount, "mode": "rw"},
                },
                working_dir=cfg.workspace_mount,
                mem_limit=cfg.memory_limit,
                nano_cpus=int(cfg.cpu_limit * 1e9),
                network=cfg.network,
                labels={
                    "claw.type": "agent-unit",
                    "claw.group": group.folder,
                    "claw.agent": agent_id or "main",
                },
            )
        except DockerException as e:
            raise BackendStartError(f"Failed to start container {name}: {e}", self.mode) from e

        unit = UnitRef(unit_id=container.id[:12], mode=self.mode, native=container)
        self._watch(unit)
        logger.info(f"Started container {name} ({unit.unit_id}) for '{group.jid}'")
        return unit

    def _adopt(self, client, name: str) -> Optional[UnitRef]:
        """Reuse a running container with this name; remove a dead one."""
        try:
            existing = client.containers.get(name)
        except NotFound:
            return None
        except DockerException as e:
            raise BackendStartError(f"Could not inspect container {name}: {e}", self.mode) from e

        if existing.status == "running":
            unit = UnitRef(unit_id=existing.id[:12], mode=self.mode, adopted=True, native=existing)
            self._watch(unit)
            logger.info(f"Adopted running container {name} ({unit.unit_id})")
            return unit

        logger.info(f"Removing stale container {name} (status={existing.status})")
        try:
            existing.remove(force=True)
        except DockerException as e:
            raise BackendStartError(f"Could not remove stale container {name}: {e}", self.mode) from e
        return None

    def _watch(self, unit: UnitRef) -> None:
        def waiter():
            try:
                status = unit.native.wait()
                unit.exit_code = status.get("StatusCode") if isinstance(status, dict) else None
            except (DockerException, requests.RequestException) as e:
                logger.debug(f"Container wait ended for {unit.unit_id}: {e}")
            finally:
                unit.exited.set()

        threading.Thread(target=waiter, daemon=True, name=f"claw-wait-{unit.unit_id}").start()

    # ========================================================================
    # STOP / PROBE
    # ========================================================================

    def probe(self, unit: UnitRef) -> bool:
        return not unit.exited.is_set()

    def wait(self, unit: UnitRef, timeout: float) -> bool:
        return unit.exited.wait(max(timeout, 0.0))

    def terminate(self, unit: UnitRef, grace: float) -> None:
        try:
            unit.native.stop(timeout=max(int(grace), 1))
        except NotFound:
            unit.exited.set()
        except APIError as e:
            logger.warning(f"docker stop failed for {unit.unit_id}: {e}")

    def kill(self, unit: UnitRef) -> None:
        try:
            unit.native.kill()
        except NotFound:
            unit.exited.set()
        except APIError as e:
            logger.error(f"docker kill failed for {unit.unit_id}: {e}")

    def cleanup(self, unit: UnitRef) -> None:
        try:
            unit.native.remove(force=True)
        except NotFound:
            logger.debug(f"Container {unit.unit_id} already removed")
        except APIError as e:
            logger.warning(f"Could not remove container {unit.unit_id}: {e}")
