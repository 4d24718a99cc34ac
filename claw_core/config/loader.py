"""
CONFIG_LOADER
=============

Configuration management for the claw_core scheduler.

Handles:
- Directory layout (data, groups, config)
- Concurrency ceilings and per-run limits
- Container and host backend settings
- Environment overrides for the operational knobs

All values are read once at startup and stay fixed for the process lifetime.

Usage:
    from claw_core.config import get_config_manager

    config = get_config_manager().global_config
    print(config.limits.max_concurrent_containers)
    print(config.paths.ipc_dir)
"""

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Mapping, Optional

logger = logging.getLogger(__name__)


class ConfigError(Exception):
    """Raised when a configuration value is present but unusable."""


# ============================================================================
# PATH RESOLUTION
# ============================================================================

def _find_project_root() -> Path:
    """
    Find the project root directory.

    ``CLAW_HOME`` wins when set. Otherwise walk up from the working directory
    looking for ``data/config/config.json``, falling back to the working
    directory itself.
    """
    env_home = os.environ.get("CLAW_HOME")
    if env_home:
        return Path(env_home).resolve()

    current = Path.cwd().resolve()
    for candidate in [current, *current.parents][:5]:
        if (candidate / "data" / "config" / "config.json").exists():
            return candidate

    return current


# ============================================================================
# DATA STRUCTURES
# ============================================================================

@dataclass
class PathsConfig:
    """Directory layout.

    - Mailboxes:  {data_dir}/ipc/{folder}[/agents/{agent_id}]/{input,messages,tasks}
    - Sessions:   {data_dir}/sessions/{folder}[/agents/{agent_id}]
    - Workspaces: {groups_dir}/{folder}
    """
    data_dir: str = "./data"
    groups_dir: str = "./data/groups"
    config_dir: str = "./data/config"

    def to_dict(self) -> Dict:
        return {
            "data_dir": self.data_dir,
            "groups_dir": self.groups_dir,
            "config_dir": self.config_dir,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "PathsConfig":
        return cls(
            data_dir=data.get("data_dir", "./data"),
            groups_dir=data.get("groups_dir", "./data/groups"),
            config_dir=data.get("config_dir", "./data/config"),
        )

    def resolve(self, base_path: Path) -> "PathsConfig":
        """Resolve relative paths against base path."""
        return PathsConfig(
            data_dir=str((base_path / self.data_dir).resolve()),
            groups_dir=str((base_path / self.groups_dir).resolve()),
            config_dir=str((base_path / self.config_dir).resolve()),
        )

    @property
    def ipc_dir(self) -> Path:
        return Path(self.data_dir) / "ipc"

    @property
    def sessions_dir(self) -> Path:
        return Path(self.data_dir) / "sessions"

    @property
    def messages_dir(self) -> Path:
        return Path(self.data_dir) / "messages"

    @property
    def tasks_dir(self) -> Path:
        return Path(self.data_dir) / "tasks"

    @property
    def logs_dir(self) -> Path:
        return Path(self.data_dir) / "logs"

    @property
    def state_file(self) -> Path:
        """Cursor state (router_state.json)."""
        return Path(self.data_dir) / "router_state.json"

    def get_group_dir(self, folder: str) -> Path:
        """Workspace directory for a group."""
        return Path(self.groups_dir) / folder

    def get_session_dir(self, folder: str, agent_id: Optional[str] = None) -> Path:
        """Session-state directory for a (group folder, agent) pair."""
        base = self.sessions_dir / folder
        if agent_id:
            return base / "agents" / agent_id
        return base


@dataclass
class LimitsConfig:
    """Concurrency ceilings and per-run limits."""
    max_concurrent_containers: int = 20
    max_concurrent_host_processes: int = 5
    run_timeout_seconds: float = 1800.0
    max_output_bytes: int = 10 * 1024 * 1024
    idle_timeout_seconds: float = 1800.0
    ipc_poll_interval: float = 1.0
    sweep_interval: float = 1.0
    stop_grace_seconds: float = 10.0
    max_corrupt_records: int = 5

    def to_dict(self) -> Dict:
        return {
            "max_concurrent_containers": self.max_concurrent_containers,
            "max_concurrent_host_processes": self.max_concurrent_host_processes,
            "run_timeout_seconds": self.run_timeout_seconds,
            "max_output_bytes": self.max_output_bytes,
            "idle_timeout_seconds": self.idle_timeout_seconds,
            "ipc_poll_interval": self.ipc_poll_interval,
            "sweep_interval": self.sweep_interval,
            "stop_grace_seconds": self.stop_grace_seconds,
            "max_corrupt_records": self.max_corrupt_records,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "LimitsConfig":
        return cls(
            max_concurrent_containers=data.get("max_concurrent_containers", 20),
            max_concurrent_host_processes=data.get("max_concurrent_host_processes", 5),
            run_timeout_seconds=data.get("run_timeout_seconds", 1800.0),
            max_output_bytes=data.get("max_output_bytes", 10 * 1024 * 1024),
            idle_timeout_seconds=data.get("idle_timeout_seconds", 1800.0),
            ipc_poll_interval=data.get("ipc_poll_interval", 1.0),
            sweep_interval=data.get("sweep_interval", 1.0),
            stop_grace_seconds=data.get("stop_grace_seconds", 10.0),
            max_corrupt_records=data.get("max_corrupt_records", 5),
        )

    def validate(self) -> None:
        """Reject values the scheduler cannot work with."""
        for name in ("max_concurrent_containers", "max_concurrent_host_processes"):
            value = getattr(self, name)
            if not isinstance(value, int) or value < 1:
                raise ConfigError(f"limits.{name} must be a positive integer, got {value!r}")
        for name in (
            "run_timeout_seconds",
            "idle_timeout_seconds",
            "ipc_poll_interval",
            "sweep_interval",
        ):
            value = getattr(self, name)
            if not isinstance(value, (int, float)) or value <= 0:
                raise ConfigError(f"limits.{name} must be a positive number, got {value!r}")
        if not isinstance(self.max_output_bytes, int) or self.max_output_bytes < 1:
            raise ConfigError(
                f"limits.max_output_bytes must be a positive integer, got {self.max_output_bytes!r}"
            )
        if self.stop_grace_seconds < 0:
            raise ConfigError("limits.stop_grace_seconds must not be negative")
        if self.max_corrupt_records < 0:
            raise ConfigError("limits.max_corrupt_records must not be negative")


@dataclass
class ContainerConfig:
    """Container backend settings."""
    image: str = "claw-agent:latest"
    memory_limit: str = "2g"
    cpu_limit: float = 2.0
    network: Optional[str] = None
    workspace_mount: str = "/workspace/group"
    ipc_mount: str = "/workspace/ipc"
    session_mount: str = "/workspace/session"
    environment: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict:
        result = {
            "image": self.image,
            "memory_limit": self.memory_limit,
            "cpu_limit": self.cpu_limit,
            "workspace_mount": self.workspace_mount,
            "ipc_mount": self.ipc_mount,
            "session_mount": self.session_mount,
        }
        if self.network:
            result["network"] = self.network
        if self.environment:
            result["environment"] = self.environment
        return result

    @classmethod
    def from_dict(cls, data: Dict) -> "ContainerConfig":
        return cls(
            image=data.get("image", "claw-agent:latest"),
            memory_limit=data.get("memory_limit", "2g"),
            cpu_limit=data.get("cpu_limit", 2.0),
            network=data.get("network"),
            workspace_mount=data.get("workspace_mount", "/workspace/group"),
            ipc_mount=data.get("ipc_mount", "/workspace/ipc"),
            session_mount=data.get("session_mount", "/workspace/session"),
            environment=data.get("environment", {}),
        )


@dataclass
class HostConfig:
    """Host-process backend settings."""
    command: List[str] = field(default_factory=lambda: ["claw-agent-runner"])
    environment: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict:
        result = {"command": self.command}
        if self.environment:
            result["environment"] = self.environment
        return result

    @classmethod
    def from_dict(cls, data: Dict) -> "HostConfig":
        command = data.get("command", ["claw-agent-runner"])
        if isinstance(command, str):
            command = command.split()
        return cls(
            command=command,
            environment=data.get("environment", {}),
        )


@dataclass
class EventsConfig:
    """Status event fan-out."""
    webhook_url: Optional[str] = None
    webhook_token: Optional[str] = None
    webhook_timeout_seconds: float = 5.0

    def to_dict(self) -> Dict:
        return {
            "webhook_url": self.webhook_url,
            "webhook_token": self.webhook_token,
            "webhook_timeout_seconds": self.webhook_timeout_seconds,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "EventsConfig":
        return cls(
            webhook_url=data.get("webhook_url"),
            webhook_token=data.get("webhook_token"),
            webhook_timeout_seconds=data.get("webhook_timeout_seconds", 5.0),
        )


@dataclass
class GlobalConfig:
    """Global configuration for the scheduler."""
    version: str = "1.0.0"
    paths: PathsConfig = field(default_factory=PathsConfig)
    limits: LimitsConfig = field(default_factory=LimitsConfig)
    container: ContainerConfig = field(default_factory=ContainerConfig)
    host: HostConfig = field(default_factory=HostConfig)
    events: EventsConfig = field(default_factory=EventsConfig)
    logging_level: str = "INFO"
    logging_file: Optional[str] = None

    def to_dict(self) -> Dict:
        return {
            "version": self.version,
            "paths": self.paths.to_dict(),
            "limits": self.limits.to_dict(),
            "container": self.container.to_dict(),
            "host": self.host.to_dict(),
            "events": self.events.to_dict(),
            "logging": {
                "level": self.logging_level,
                "file": self.logging_file,
            },
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "GlobalConfig":
        logging_cfg = data.get("logging", {})
        return cls(
            version=data.get("version", "1.0.0"),
            paths=PathsConfig.from_dict(data.get("paths", {})),
            limits=LimitsConfig.from_dict(data.get("limits", {})),
            container=ContainerConfig.from_dict(data.get("container", {})),
            host=HostConfig.from_dict(data.get("host", {})),
            events=EventsConfig.from_dict(data.get("events", {})),
            logging_level=logging_cfg.get("level", "INFO"),
            logging_file=logging_cfg.get("file"),
        )


# ============================================================================
# ENVIRONMENT OVERRIDES
# ============================================================================

def _env_int(environ: Mapping[str, str], name: str) -> Optional[int]:
    raw = environ.get(name)
    if raw is None or raw.strip() == "":
        return None
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from None


def apply_env_overrides(config: GlobalConfig, environ: Optional[Mapping[str, str]] = None) -> GlobalConfig:
    """
    Apply environment overrides in place and return the config.

    Timeouts in the environment are given in milliseconds; the config
    keeps seconds.
    """
    env = os.environ if environ is None else environ
    limits = config.limits

    value = _env_int(env, "MAX_CONCURRENT_CONTAINERS")
    if value is not None:
        limits.max_concurrent_containers = value

    value = _env_int(env, "MAX_CONCURRENT_HOST_PROCESSES")
    if value is not None:
        limits.max_concurrent_host_processes = value

    value = _env_int(env, "CONTAINER_TIMEOUT")
    if value is not None:
        limits.run_timeout_seconds = value / 1000.0

    value = _env_int(env, "IDLE_TIMEOUT")
    if value is not None:
        limits.idle_timeout_seconds = value / 1000.0

    value = _env_int(env, "CONTAINER_MAX_OUTPUT_SIZE")
    if value is not None:
        limits.max_output_bytes = value

    image = env.get("CONTAINER_IMAGE")
    if image:
        config.container.image = image

    return config


# ============================================================================
# CONFIG MANAGER
# ============================================================================

class ConfigManager:
    """Load and hold the global configuration."""

    def __init__(self, config_dir: Optional[str] = None, project_root: Optional[str] = None):
        self._project_root = Path(project_root).resolve() if project_root else _find_project_root()
        if config_dir:
            self.config_dir = Path(config_dir)
        else:
            self.config_dir = self._project_root / "data" / "config"

        self.config_dir.mkdir(parents=True, exist_ok=True)
        self.global_config: GlobalConfig = GlobalConfig()

    @property
    def config_path(self) -> Path:
        return self.config_dir / "config.json"

    def load_global(self, environ: Optional[Mapping[str, str]] = None) -> GlobalConfig:
        """Load global configuration from file, then apply env overrides."""
        if self.config_path.exists():
            try:
                data = json.loads(self.config_path.read_text(encoding="utf-8"))
                self.global_config = GlobalConfig.from_dict(data)
            except (OSError, ValueError) as e:
                logger.warning(f"Could not load global config: {e}, using defaults")
                self.global_config = GlobalConfig()
        else:
            self.global_config = GlobalConfig()
            self.save_global()

        apply_env_overrides(self.global_config, environ)
        self.global_config.limits.validate()

        # Resolve paths relative to project root
        self.global_config.paths = self.global_config.paths.resolve(self._project_root)
        return self.global_config

    def save_global(self) -> None:
        """Save global configuration to file."""
        with open(self.config_path, "w", encoding="utf-8") as f:
            json.dump(self.global_config.to_dict(), f, indent=2)


# ============================================================================
# GLOBAL INSTANCE
# ============================================================================

_config_manager: Optional[ConfigManager] = None


def get_config_manager(config_dir: Optional[str] = None) -> ConfigManager:
    """Get or create the global config manager."""
    global _config_manager
    if _config_manager is None:
        _config_manager = ConfigManager(config_dir)
        _config_manager.load_global()
    return _config_manager


def load_global_config() -> GlobalConfig:
    """Load and return global configuration."""
    return get_config_manager().load_global()
