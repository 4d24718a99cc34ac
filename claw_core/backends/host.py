"""
HOST BACKEND
============

Runs units as plain subprocesses under the scheduler's own OS user.

No sandbox: host-mode groups are trusted, and their global ceiling is
smaller than the container one. Each unit runs in its own session (process
group) so terminate/kill reach everything it spawned.

The pid is written to ``{session_dir}/unit.pid`` together with the
process start time. When the scheduler restarts and a process with that pid
and that start time is still alive, the unit is adopted instead of being
launched again; a reused pid belongs to a different process and is ignored.
Output that the unit writes to stdout/stderr goes to
``{session_dir}/unit.log``; the mailbox is the only data channel.
"""

import logging
import os
import signal
import subprocess
from pathlib import Path
from typing import Optional

from ..config import HostConfig, PathsConfig
from ..ipc import Mailbox
from ..models import ExecutionMode, Group
from ..utils import read_json, write_json_atomic
from .base import BackendStartError, ExecutionBackend, UnitRef

logger = logging.getLogger(__name__)

PID_FILE = "unit.pid"
LOG_FILE = "unit.log"


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def process_start_token(pid: int) -> Optional[str]:
    """
    Identify one incarnation of ``pid``: its start time.

    Returns None when the process is gone or is a zombie.
    """
    try:
        stat = Path(f"/proc/{pid}/stat").read_text()
    except FileNotFoundError:
        if Path("/proc/self/stat").exists():
            return None
        return _ps_start_token(pid)
    except OSError:
        return None
    # Fields after the parenthesised command: state is field 3, starttime field 22.
    fields = stat[stat.rfind(")") + 2:].split()
    if len(fields) < 20 or fields[0] == "Z":
        return None
    return fields[19]


def _ps_start_token(pid: int) -> Optional[str]:
    try:
        out = subprocess.run(
            ["ps", "-o", "lstart=", "-p", str(pid)],
            capture_output=True, text=True, timeout=5,
        )
    except (OSError, subprocess.SubprocessError) as e:
        logger.warning(f"Could not read start time of pid {pid}: {e}")
        return None
    token = out.stdout.strip()
    return token or None


class HostBackend(ExecutionBackend):
    """Launches and supervises host subprocesses."""

    mode = ExecutionMode.HOST

    def __init__(self, config: HostConfig, paths: PathsConfig):
        self._config = config
        self._paths = paths

    def start(self, group: Group, agent_id: Optional[str], mailbox: Mailbox) -> UnitRef:
        session_dir = self._paths.get_session_dir(group.folder, agent_id)
        session_dir.mkdir(parents=True, exist_ok=True)
        pid_file = session_dir / PID_FILE

        adopted = self._adopt(pid_file)
        if adopted is not None:
            return adopted

        if not self._config.command:
            raise BackendStartError("host.command is empty", self.mode)

        mailbox.reset()
        group_dir = self._paths.get_group_dir(group.folder)
        group_dir.mkdir(parents=True, exist_ok=True)

        env = os.environ.copy()
        env.update(self._config.environment)
        env.update({
            "CLAW_GROUP_JID": group.jid,
            "CLAW_GROUP_FOLDER": group.folder,
            "CLAW_AGENT_ID": agent_id or "",
            "CLAW_IPC_DIR": str(mailbox.root),
            "CLAW_SESSION_DIR": str(session_dir),
        })

        log_handle = open(session_dir / LOG_FILE, "ab")
        try:
            proc = subprocess.Popen(
                self._config.command,
                cwd=str(group_dir),
                env=env,
                stdin=subprocess.DEVNULL,
                stdout=log_handle,
                stderr=subprocess.STDOUT,
                start_new_session=True,
            )
        except OSError as e:
            log_handle.close()
            raise BackendStartError(f"Failed to spawn {self._config.command[0]}: {e}", self.mode) from e
        log_handle.close()  # the child holds its own descriptor

        write_json_atomic(pid_file, {"pid": proc.pid, "start": process_start_token(proc.pid)})
        unit = UnitRef(unit_id=f"pid-{proc.pid}", mode=self.mode, native=proc)
        unit.meta["pid_file"] = pid_file
        logger.info(f"Started host process {proc.pid} for '{group.jid}'")
        return unit

    def _adopt(self, pid_file) -> Optional[UnitRef]:
        if not pid_file.exists():
            return None
        try:
            record = read_json(pid_file, {})
            pid = int(record["pid"])
            start = record.get("start")
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.warning(f"Unreadable pid file {pid_file}: {e}")
            pid_file.unlink()
            return None

        if not start or not _pid_alive(pid) or process_start_token(pid) != start:
            logger.info(f"Pid {pid} from {pid_file} is gone or belongs to another process")
            pid_file.unlink()
            return None

        unit = UnitRef(unit_id=f"pid-{pid}", mode=self.mode, adopted=True, native=pid)
        unit.meta["pid_file"] = pid_file
        logger.info(f"Adopted running host process {pid}")
        return unit

    # ========================================================================
    # STOP / PROBE
    # ========================================================================

    @staticmethod
    def _pid(unit: UnitRef) -> int:
        native = unit.native
        return native if isinstance(native, int) else native.pid

    def probe(self, unit: UnitRef) -> bool:
        native = unit.native
        if isinstance(native, subprocess.Popen):
            alive = native.poll() is None
            if not alive:
                unit.exit_code = native.returncode
        else:
            alive = _pid_alive(native)
        if not alive:
            unit.exited.set()
        return alive

    def _signal(self, unit: UnitRef, sig: int) -> None:
        pid = self._pid(unit)
        try:
            os.killpg(pid, sig)
        except ProcessLookupError:
            unit.exited.set()
        except PermissionError as e:
            logger.error(f"Not permitted to signal process group {pid}: {e}")

    def terminate(self, unit: UnitRef, grace: float) -> None:
        self._signal(unit, signal.SIGTERM)

    def kill(self, unit: UnitRef) -> None:
        self._signal(unit, signal.SIGKILL)

    def cleanup(self, unit: UnitRef) -> None:
        pid_file = unit.meta.get("pid_file")
        if pid_file is not None and pid_file.exists():
            pid_file.unlink()
