"""Data models."""

from berth.models.container import (
    Capabilities,
    ContainerSpec,
    FilesystemPolicy,
    ResourceLimits,
    SecurityOptions,
)
from berth.models.labels import OwnershipLabels
from berth.models.session import SandboxSession, SessionStatus

__all__ = [
    "Capabilities",
    "ContainerSpec",
    "FilesystemPolicy",
    "OwnershipLabels",
    "ResourceLimits",
    "SandboxSession",
    "SecurityOptions",
    "SessionStatus",
]
