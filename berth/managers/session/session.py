"""SessionOrchestrator - provisions and tears down sandbox sessions.

create_session: ping -> pull -> network -> container -> start -> inspect,
returning a SandboxSession for the caller to persist. Berth keeps no copy.

destroy_session: archive (best-effort) -> stop -> remove container ->
remove network.

Precondition for create_session: the caller has checked that no other
active session exists for the application (check-then-create against its
record store), or has injected a SessionGuard that enforces it. Berth holds
no locks.
"""

from __future__ import annotations

import uuid
from datetime import timedelta
from pathlib import PurePosixPath
from typing import TYPE_CHECKING, Protocol

import structlog

from berth.config import Settings, get_settings
from berth.drivers.base import NetworkDescriptor
from berth.errors import (
    InspectError,
    SessionCreationError,
    SessionDestroyError,
    ValidationError,
)
from berth.models.labels import OwnershipLabels
from berth.models.session import SandboxSession, SessionStatus
from berth.security import build_container_spec
from berth.utils.datetime import utcnow

if TYPE_CHECKING:
    from berth.drivers.base import ContainerInspection, Driver

logger = structlog.get_logger()


class SessionGuard(Protocol):
    """Enforces "at most one active session per application"."""

    async def ensure_available(self, application_id: str) -> None:
        """Raise SessionConflictError if the application has an active session."""
        ...


def session_urls(
    inspection: "ContainerInspection | None",
    settings: Settings,
) -> tuple[str, str]:
    """Compose (vnc_url, code_server_url) from the session-network IP.

    Both are empty strings when the container has no session network
    attachment or no IP on it.
    """
    if inspection is None:
        return "", ""
    found = inspection.find_network(settings.session.network_prefix)
    if found is None:
        return "", ""
    ip = found[1].ip_address
    if not ip:
        return "", ""

    sandbox = settings.sandbox
    vnc_url = f"http://{ip}:{sandbox.vnc_port}{sandbox.vnc_path}"
    code_server_url = f"http://{ip}:{sandbox.code_server_port}"
    return vnc_url, code_server_url


class SessionOrchestrator:
    """Sequences driver calls into session create/destroy workflows."""

    def __init__(
        self,
        driver: "Driver",
        settings: Settings | None = None,
        *,
        guard: SessionGuard | None = None,
    ) -> None:
        self._driver = driver
        self._settings = settings or get_settings()
        self._guard = guard
        self._log = logger.bind(manager="session")

    def network_name(self, session_id: str) -> str:
        return f"{self._settings.session.network_prefix}{session_id}"

    def archive_path(self, session_id: str) -> str:
        """Archive destination for a session, always directly under archive_root.

        Raises:
            ValidationError: If session_id could escape archive_root
        """
        if (
            not session_id
            or "/" in session_id
            or "\\" in session_id
            or ".." in session_id
            or "\x00" in session_id
        ):
            raise ValidationError(
                message=f"Invalid session_id for archive path: {session_id!r}",
                details={"session_id": session_id},
            )
        root = PurePosixPath(self._settings.session.archive_root)
        return str(root / f"{session_id}-workspace.tar")

    async def create_session(
        self,
        application_id: str,
        candidate_id: str,
        duration_minutes: int | None = None,
    ) -> SandboxSession:
        """Provision a new sandbox session.

        Args:
            application_id: Application the assessment belongs to
            candidate_id: Candidate taking the assessment
            duration_minutes: Session length. Only None selects the configured
                default; 0 is rejected rather than treated as "use the default".

        Returns:
            Session with status=active and container/network IDs set

        Raises:
            ValidationError: If duration_minutes is not positive
            SessionConflictError: If the injected guard rejects the application
            SessionCreationError: If any provisioning step fails
        """
        if duration_minutes is None:
            duration_minutes = self._settings.session.default_duration_minutes
        if duration_minutes <= 0:
            raise ValidationError(
                message="duration_minutes must be positive",
                details={"duration_minutes": duration_minutes},
            )

        if self._guard is not None:
            await self._guard.ensure_available(application_id)

        session_id = str(uuid.uuid4())
        session = SandboxSession(
            session_id=session_id,
            application_id=application_id,
            candidate_id=candidate_id,
            workspace_path=self._settings.sandbox.working_dir,
        )
        log = self._log.bind(
            session_id=session_id,
            application_id=application_id,
            candidate_id=candidate_id,
        )
        log.info("session.create", duration_minutes=duration_minutes)

        created_at = utcnow()
        expires_at = created_at + timedelta(minutes=duration_minutes)
        owner = OwnershipLabels(
            session_id=session_id,
            application_id=application_id,
            candidate_id=candidate_id,
            created_at=created_at,
            expires_at=expires_at,
        )
        prefix = self._settings.session.label_prefix

        network: NetworkDescriptor | None = None
        container_id: str | None = None

        try:
            await self._driver.ping()
            session.transition_to(SessionStatus.SPAWNING)

            await self._driver.pull_image(self._settings.sandbox.image)

            name = self.network_name(session_id)
            network_labels = owner.to_labels(prefix)
            network_id = await self._driver.create_network(name, network_labels)
            network = NetworkDescriptor(id=network_id, name=name, labels=network_labels)

            spec = build_container_spec(
                self._settings.sandbox,
                owner,
                network_name=network.name,
                label_prefix=prefix,
            )
            container_id = await self._driver.create_container(spec, session_id)
            await self._driver.start_container(container_id)
        except Exception as e:
            log.error("session.create_failed", error=str(e))
            session.transition_to(SessionStatus.ERROR)
            if self._settings.session.rollback_on_failure:
                await self._rollback(session_id, container_id, network)
            raise SessionCreationError.wrap(
                "create session",
                e,
                session_id=session_id,
                application_id=application_id,
            ) from e

        vnc_url, code_server_url = await self._resolve_urls(container_id, log)

        session = SandboxSession.model_validate(
            {
                **session.model_dump(),
                "container_id": container_id,
                "network_id": network.id,
                "vnc_url": vnc_url,
                "code_server_url": code_server_url,
                "created_at": created_at,
                "expires_at": expires_at,
            }
        )
        session.transition_to(SessionStatus.ACTIVE)

        log.info(
            "session.created",
            container_id=container_id,
            network_id=network.id,
            expires_at=expires_at.isoformat(),
        )
        return session

    async def _resolve_urls(self, container_id: str, log) -> tuple[str, str]:
        try:
            inspection = await self._driver.inspect(container_id)
        except InspectError as e:
            # The container is running; endpoints can be re-derived via get_status.
            log.warning("session.create.inspect_failed", container_id=container_id, error=str(e))
            return "", ""
        return session_urls(inspection, self._settings)

    async def _rollback(
        self,
        session_id: str,
        container_id: str | None,
        network: NetworkDescriptor | None,
    ) -> None:
        """Best-effort removal of what a failed create_session left behind."""
        if container_id is None and network is None:
            return

        if container_id is not None:
            try:
                await self._driver.remove_container(container_id, force=True)
            except Exception as cleanup_err:
                self._log.warning(
                    "session.create.rollback.container_failed",
                    session_id=session_id,
                    container_id=container_id,
                    error=str(cleanup_err),
                )

        if network is not None:
            try:
                await self._driver.remove_network(network.id)
            except Exception as cleanup_err:
                self._log.warning(
                    "session.create.rollback.network_failed",
                    session_id=session_id,
                    network_id=network.id,
                    error=str(cleanup_err),
                )

        self._log.info(
            "session.create.rolled_back",
            session_id=session_id,
            container_id=container_id,
            network_id=network.id if network else None,
        )

    async def destroy_session(
        self,
        session_id: str,
        container_id: str,
        network_id: str,
    ) -> None:
        """Tear down a session's container and network.

        The workspace is archived first; archive failures are logged and
        teardown continues. Whatever happens here, callers should mark their
        record stopped so application state is never orphaned, even if
        runtime objects leak.

        Raises:
            SessionDestroyError: If stop, remove or network removal fails
        """
        log = self._log.bind(
            session_id=session_id,
            container_id=container_id,
            network_id=network_id,
        )
        log.info("session.destroy")

        destination: str | None = None
        try:
            destination = self.archive_path(session_id)
            await self._driver.archive_workspace(
                container_id,
                destination,
                path=self._settings.sandbox.working_dir,
            )
        except Exception as e:
            # Best-effort; teardown continues without the archive
            log.error("session.destroy.archive_failed", destination=destination, error=str(e))

        try:
            await self._driver.stop_container(
                container_id,
                timeout_seconds=self._settings.session.stop_timeout_seconds,
            )
            await self._driver.remove_container(container_id, force=True)
            await self._driver.remove_network(network_id)
        except Exception as e:
            log.error("session.destroy_failed", error=str(e))
            raise SessionDestroyError.wrap("destroy session", e, session_id=session_id) from e

        log.info("session.destroyed")
