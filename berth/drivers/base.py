"""Driver base class - container runtime abstraction.

Driver is responsible ONLY for runtime primitives. It does NOT handle:
- Session workflow ordering
- Retry policy
- Persistence

Every failure is raised as a BerthError subclass reading
"Failed to <action>: <cause>", with the engine error as ``__cause__``.
Not-found is never an error for inspect(); stop/remove/network removal treat
an object that is already gone as done.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from berth.models.container import ContainerSpec


@dataclass
class NetworkDescriptor:
    """A session-scoped network."""

    id: str
    name: str
    labels: dict[str, str] = field(default_factory=dict)
    driver: str = "bridge"


@dataclass
class NetworkAttachment:
    """A container's attachment to one network."""

    network_id: str = ""
    ip_address: str = ""


@dataclass
class ContainerInspection:
    """Live container state from the runtime."""

    container_id: str
    name: str = ""
    running: bool = False
    created_at: datetime | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    labels: dict[str, str] = field(default_factory=dict)
    working_dir: str = ""
    # network name -> attachment
    networks: dict[str, NetworkAttachment] = field(default_factory=dict)

    def find_network(self, prefix: str) -> tuple[str, NetworkAttachment] | None:
        """First attachment whose network name starts with ``prefix``."""
        for name, attachment in self.networks.items():
            if name.startswith(prefix):
                return name, attachment
        return None


class Driver(ABC):
    """Abstract runtime client for sandbox sessions."""

    @abstractmethod
    async def ping(self) -> None:
        """Health-probe the runtime.

        Raises:
            RuntimeUnavailable: If the engine cannot be reached
        """
        ...

    @abstractmethod
    async def pull_image(self, ref: str) -> None:
        """Ensure ``ref`` is available locally. Idempotent, no retry."""
        ...

    @abstractmethod
    async def create_network(self, name: str, labels: dict[str, str] | None = None) -> str:
        """Create an isolated bridge network.

        Args:
            name: Network name (duplicates are rejected by the engine)
            labels: Ownership labels

        Returns:
            Network ID
        """
        ...

    @abstractmethod
    async def remove_network(self, network_id: str) -> None:
        """Remove a network by ID or name."""
        ...

    @abstractmethod
    async def create_container(self, spec: "ContainerSpec", session_id: str) -> str:
        """Create a container (not started) tagged with ownership labels.

        Returns:
            Container ID
        """
        ...

    @abstractmethod
    async def start_container(self, container_id: str) -> None:
        ...

    @abstractmethod
    async def stop_container(self, container_id: str, timeout_seconds: int = 30) -> None:
        """Stop a container. Already stopped counts as success."""
        ...

    @abstractmethod
    async def remove_container(self, container_id: str, force: bool = False) -> None:
        ...

    @abstractmethod
    async def archive_workspace(
        self,
        container_id: str,
        destination: str,
        *,
        path: str = "/workspace",
    ) -> None:
        """Copy ``path`` out of the container as a tar archive at ``destination``.

        Raises:
            ArchiveError: On any failure
        """
        ...

    @abstractmethod
    async def inspect(self, container_id: str) -> ContainerInspection | None:
        """Inspect a container.

        Returns:
            Inspection, or None if the container does not exist
        """
        ...

    @abstractmethod
    async def list_containers(self, *, labels: dict[str, str]) -> list[ContainerInspection]:
        """List containers (any state) matching ALL label filters."""
        ...

    async def close(self) -> None:
        """Release runtime client resources."""
        return None
