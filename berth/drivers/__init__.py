"""Driver layer - container runtime abstraction."""

from berth.drivers.base import (
    ContainerInspection,
    Driver,
    NetworkAttachment,
    NetworkDescriptor,
)
from berth.drivers.docker import DockerDriver

__all__ = [
    "ContainerInspection",
    "DockerDriver",
    "Driver",
    "NetworkAttachment",
    "NetworkDescriptor",
]
