"""
Configuration management for claw_core.
"""

from .loader import (
    ConfigError,
    ConfigManager,
    ContainerConfig,
    EventsConfig,
    GlobalConfig,
    HostConfig,
    LimitsConfig,
    PathsConfig,
    apply_env_overrides,
    get_config_manager,
    load_global_config,
)

__all__ = [
    "ConfigError",
    "ConfigManager",
    "ContainerConfig",
    "EventsConfig",
    "GlobalConfig",
    "HostConfig",
    "LimitsConfig",
    "PathsConfig",
    "apply_env_overrides",
    "get_config_manager",
    "load_global_config",
]
