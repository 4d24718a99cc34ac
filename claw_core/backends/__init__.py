"""
Execution backends: container (Docker) and host subprocess.
"""

from .base import BackendStartError, ExecutionBackend, UnitRef
from .container import ContainerBackend, container_name
from .host import HostBackend

__all__ = [
    "BackendStartError",
    "ContainerBackend",
    "ExecutionBackend",
    "HostBackend",
    "UnitRef",
    "container_name",
]
