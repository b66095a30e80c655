"""Docker driver implementation using aiodocker.

Each session gets its own user-defined bridge network and one container on
it. The driver never decides workflow order; SessionOrchestrator does.

Status codes handled specially:
- 304 on stop: container already stopped (success)
- 404 on stop/remove/network delete: already gone (success, logged)
- 404 on inspect: returned as None
"""

from __future__ import annotations

import asyncio
import json
import tarfile
from pathlib import Path
from typing import TYPE_CHECKING, Any

import aiodocker
import structlog
from aiodocker.exceptions import DockerError

from berth.config import Settings, get_settings
from berth.drivers.base import ContainerInspection, Driver, NetworkAttachment
from berth.errors import (
    ArchiveError,
    ContainerCreationError,
    ContainerRemovalError,
    ContainerStartError,
    ContainerStopError,
    ImagePullError,
    InspectError,
    NetworkCreationError,
    NetworkRemovalError,
    RuntimeUnavailable,
)
from berth.models import labels as label_names
from berth.utils.datetime import parse_timestamp, to_iso, utcnow

if TYPE_CHECKING:
    from berth.models.container import ContainerSpec

logger = structlog.get_logger()

HTTP_NOT_MODIFIED = 304
HTTP_NOT_FOUND = 404


def _is_status(error: BaseException, status: int) -> bool:
    return isinstance(error, DockerError) and error.status == status


def _copy_tar(archive: tarfile.TarFile, destination: Path) -> None:
    """Write every member of ``archive`` into a new tar at ``destination``.

    The tar is built next to the destination and only renamed into place once
    complete, so a failed copy never leaves a truncated archive behind.
    """
    destination.parent.mkdir(parents=True, exist_ok=True)
    partial = destination.with_name(destination.name + ".partial")
    try:
        with tarfile.open(partial, "w") as out:
            for member in archive:
                fileobj = archive.extractfile(member) if member.isfile() else None
                out.addfile(member, fileobj)
        partial.replace(destination)
    except BaseException:
        partial.unlink(missing_ok=True)
        raise


class DockerDriver(Driver):
    """Docker driver implementation using aiodocker."""

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()
        socket_url = self._settings.runtime.socket
        if "://" in socket_url:
            self._socket = socket_url
        else:
            self._socket = f"unix://{socket_url}"

        self._pull_policy = self._settings.runtime.image_pull_policy
        self._label_prefix = self._settings.session.label_prefix

        self._log = logger.bind(driver="docker")
        self._client: aiodocker.Docker | None = None

    async def _get_client(self) -> aiodocker.Docker:
        """Get or create the aiodocker client."""
        if self._client is None:
            self._client = aiodocker.Docker(url=self._socket)
        return self._client

    async def close(self) -> None:
        """Close the docker client."""
        if self._client is not None:
            await self._client.close()
            self._client = None

    def _label(self, name: str) -> str:
        return label_names.label_key(self._label_prefix, name)

    async def ping(self) -> None:
        """Probe the engine with a version request."""
        try:
            client = await self._get_client()
            await client.version()
        except Exception as e:
            self._log.error("docker.ping_failed", socket=self._socket, error=str(e))
            raise RuntimeUnavailable.wrap("reach container runtime", e, socket=self._socket) from e

    # Images

    async def _image_present(self, ref: str) -> bool:
        client = await self._get_client()
        try:
            await client.images.inspect(ref)
            return True
        except DockerError as e:
            if e.status == HTTP_NOT_FOUND:
                return False
            raise

    async def pull_image(self, ref: str) -> None:
        """Ensure an image is available according to the pull policy."""
        self._log.info("docker.pull_image", image=ref, policy=self._pull_policy)
        try:
            if self._pull_policy != "always" and await self._image_present(ref):
                self._log.debug("docker.pull_image.cached", image=ref)
                return

            if self._pull_policy == "never":
                raise ImagePullError(
                    message=f"Failed to pull image: {ref} is not present locally and pull policy is 'never'",
                    details={"image": ref},
                )

            client = await self._get_client()
            progress = await client.images.pull(from_image=ref)
        except ImagePullError:
            raise
        except Exception as e:
            raise ImagePullError.wrap("pull image", e, image=ref) from e

        # Pull errors arrive inside the progress stream, not as HTTP errors
        for entry in progress or []:
            if isinstance(entry, dict) and entry.get("error"):
                raise ImagePullError(
                    message=f"Failed to pull image: {entry['error']}",
                    details={"image": ref},
                )

        self._log.info("docker.image_pulled", image=ref)

    # Networks

    async def create_network(self, name: str, labels: dict[str, str] | None = None) -> str:
        """Create a session-scoped bridge network."""
        client = await self._get_client()

        network_labels = {
            self._label(label_names.MANAGED): "true",
            self._label(label_names.CREATED_AT): to_iso(utcnow()),
        }
        if labels:
            network_labels.update(labels)

        self._log.info("docker.create_network", network_name=name)

        try:
            network = await client.networks.create(
                {
                    "Name": name,
                    "Driver": "bridge",
                    "Internal": False,
                    "CheckDuplicate": True,
                    "Labels": network_labels,
                }
            )
        except Exception as e:
            self._log.error("docker.create_network_failed", network_name=name, error=str(e))
            raise NetworkCreationError.wrap("create network", e, network_name=name) from e

        self._log.info("docker.network_created", network_name=name, network_id=network.id)
        return network.id

    async def remove_network(self, network_id: str) -> None:
        """Remove a network. Missing networks are treated as removed."""
        client = await self._get_client()
        self._log.info("docker.remove_network", network_id=network_id)

        try:
            network = await client.networks.get(network_id)
            await network.delete()
        except Exception as e:
            if _is_status(e, HTTP_NOT_FOUND):
                self._log.warning("docker.remove_network.not_found", network_id=network_id)
                return
            self._log.error("docker.remove_network_failed", network_id=network_id, error=str(e))
            raise NetworkRemovalError.wrap("remove network", e, network_id=network_id) from e

        self._log.info("docker.network_removed", network_id=network_id)

    # Containers

    def _build_container_config(self, spec: "ContainerSpec", session_id: str) -> dict[str, Any]:
        """Translate a ContainerSpec into a Docker create payload."""
        container_labels = dict(spec.labels)
        container_labels[self._label(label_names.SESSION_ID)] = session_id
        container_labels[self._label(label_names.MANAGED)] = "true"
        container_labels.setdefault(self._label(label_names.CREATED_AT), to_iso(utcnow()))

        host_config: dict[str, Any] = {
            # CpuCount is Windows-only; NanoCpus is what Linux enforces
            "NanoCpus": int(spec.resources.cpu_count * 1e9),
            "Memory": spec.resources.memory_bytes,
            "PidsLimit": spec.resources.pids_limit,
            "ReadonlyRootfs": spec.filesystem.read_only_root,
            "Tmpfs": dict(spec.filesystem.tmpfs),
            "SecurityOpt": spec.security.to_security_opt(),
            "NetworkMode": spec.network_mode,
            "CapDrop": list(spec.capabilities.drop),
            "CapAdd": list(spec.capabilities.add),
        }

        return {
            "Image": spec.image,
            "User": spec.user,
            "WorkingDir": spec.working_dir,
            "Env": [f"{k}={v}" for k, v in spec.env.items()],
            "Cmd": list(spec.command),
            "Labels": container_labels,
            "HostConfig": host_config,
        }

    async def create_container(self, spec: "ContainerSpec", session_id: str) -> str:
        """Create a container without starting it."""
        client = await self._get_client()
        config = self._build_container_config(spec, session_id)

        self._log.info(
            "docker.create",
            session_id=session_id,
            image=spec.image,
            container_name=spec.name,
            network=spec.network_mode,
        )

        try:
            container = await client.containers.create(config=config, name=spec.name)
        except Exception as e:
            self._log.error("docker.create_failed", session_id=session_id, error=str(e))
            raise ContainerCreationError.wrap(
                "create container", e, session_id=session_id, container_name=spec.name
            ) from e

        container_id = container.id
        self._log.info("docker.created", container_id=container_id)
        return container_id

    async def start_container(self, container_id: str) -> None:
        client = await self._get_client()
        self._log.info("docker.start", container_id=container_id)

        try:
            await client.containers.container(container_id).start()
        except Exception as e:
            self._log.error("docker.start_failed", container_id=container_id, error=str(e))
            raise ContainerStartError.wrap("start container", e, container_id=container_id) from e

    async def stop_container(self, container_id: str, timeout_seconds: int = 30) -> None:
        """Stop a container, treating already-stopped and missing as success."""
        client = await self._get_client()
        self._log.info("docker.stop", container_id=container_id, timeout=timeout_seconds)

        try:
            await client.containers.container(container_id).stop(t=timeout_seconds)
        except Exception as e:
            if _is_status(e, HTTP_NOT_MODIFIED):
                self._log.info("docker.stop.already_stopped", container_id=container_id)
                return
            if _is_status(e, HTTP_NOT_FOUND):
                self._log.warning("docker.stop.not_found", container_id=container_id)
                return
            self._log.error("docker.stop_failed", container_id=container_id, error=str(e))
            raise ContainerStopError.wrap("stop container", e, container_id=container_id) from e

    async def remove_container(self, container_id: str, force: bool = False) -> None:
        client = await self._get_client()
        self._log.info("docker.remove", container_id=container_id, force=force)

        try:
            await client.containers.container(container_id).delete(force=force)
        except Exception as e:
            if _is_status(e, HTTP_NOT_FOUND):
                self._log.warning("docker.remove.not_found", container_id=container_id)
                return
            self._log.error("docker.remove_failed", container_id=container_id, error=str(e))
            raise ContainerRemovalError.wrap("remove container", e, container_id=container_id) from e

    async def archive_workspace(
        self,
        container_id: str,
        destination: str,
        *,
        path: str = "/workspace",
    ) -> None:
        """Save the container's workspace directory as a tar file."""
        client = await self._get_client()
        self._log.info(
            "docker.archive_workspace",
            container_id=container_id,
            path=path,
            destination=destination,
        )

        try:
            archive = await client.containers.container(container_id).get_archive(path)
            try:
                await asyncio.to_thread(_copy_tar, archive, Path(destination))
            finally:
                archive.close()
        except Exception as e:
            self._log.warning(
                "docker.archive_workspace_failed",
                container_id=container_id,
                error=str(e),
            )
            raise ArchiveError.wrap(
                "archive workspace", e, container_id=container_id, destination=destination
            ) from e

        self._log.info("docker.workspace_archived", destination=destination)

    # Inspection

    def _to_inspection(self, info: dict[str, Any]) -> ContainerInspection:
        state = info.get("State") or {}
        config = info.get("Config") or {}
        raw_networks = (info.get("NetworkSettings") or {}).get("Networks") or {}

        networks = {
            name: NetworkAttachment(
                network_id=(net or {}).get("NetworkID") or "",
                ip_address=(net or {}).get("IPAddress") or "",
            )
            for name, net in raw_networks.items()
        }

        return ContainerInspection(
            container_id=info.get("Id", ""),
            name=(info.get("Name") or "").lstrip("/"),
            running=bool(state.get("Running")),
            created_at=parse_timestamp(info.get("Created")),
            started_at=parse_timestamp(state.get("StartedAt")),
            finished_at=parse_timestamp(state.get("FinishedAt")),
            labels=dict(config.get("Labels") or {}),
            working_dir=config.get("WorkingDir") or "",
            networks=networks,
        )

    async def inspect(self, container_id: str) -> ContainerInspection | None:
        client = await self._get_client()

        try:
            info = await client.containers.container(container_id).show()
        except Exception as e:
            if _is_status(e, HTTP_NOT_FOUND):
                return None
            raise InspectError.wrap("inspect container", e, container_id=container_id) from e

        return self._to_inspection(info)

    async def list_containers(self, *, labels: dict[str, str]) -> list[ContainerInspection]:
        """List containers matching labels, including stopped ones."""
        client = await self._get_client()

        # Format: label=key=value
        filters = json.dumps({"label": [f"{k}={v}" for k, v in labels.items()]})
        self._log.debug("docker.list_containers", filters=filters)

        try:
            containers = await client.containers.list(all=True, filters=filters)
        except Exception as e:
            raise InspectError.wrap("list containers", e) from e

        results: list[ContainerInspection] = []
        for container in containers:
            try:
                info = await container.show()
            except DockerError as e:
                # Removed between list and inspect
                if e.status == HTTP_NOT_FOUND:
                    continue
                raise InspectError.wrap("inspect container", e) from e
            results.append(self._to_inspection(info))

        self._log.debug("docker.list_containers.result", count=len(results))
        return results
