"""Reconciler - derives authoritative session state from the runtime.

Nothing here trusts a persisted record: a session view is rebuilt from a
container's live state plus its ownership labels. Pollers use it to detect
drift between a stale stored status and what is actually running.

Live state mapping:
- not found / no session label -> None
- running -> active
- exited with a finish time -> expired
- never finished (created, or Docker zero time) -> stopped
"""

from __future__ import annotations

from datetime import timedelta
from typing import TYPE_CHECKING

import structlog

from berth.config import Settings, get_settings
from berth.managers.session.session import session_urls
from berth.models import labels as label_names
from berth.models.labels import OwnershipLabels, managed_filter
from berth.models.session import SandboxSession, SessionStatus

if TYPE_CHECKING:
    from berth.drivers.base import ContainerInspection, Driver

logger = structlog.get_logger()


def live_status(inspection: "ContainerInspection") -> SessionStatus:
    if inspection.running:
        return SessionStatus.ACTIVE
    if inspection.finished_at is not None:
        return SessionStatus.EXPIRED
    return SessionStatus.STOPPED


class Reconciler:
    """Builds session views from live runtime inspection."""

    def __init__(self, driver: "Driver", settings: Settings | None = None) -> None:
        self._driver = driver
        self._settings = settings or get_settings()
        self._log = logger.bind(manager="reconciler")

    def _to_session(self, inspection: "ContainerInspection") -> SandboxSession | None:
        prefix = self._settings.session.label_prefix
        owner = OwnershipLabels.from_labels(inspection.labels, prefix)
        if owner is None:
            return None

        # Without an attachment ID fall back to the deterministic network name;
        # the engine resolves network references by ID or name.
        network_prefix = self._settings.session.network_prefix
        found = inspection.find_network(network_prefix)
        network_id = found[1].network_id if found else ""
        if not network_id:
            network_id = f"{network_prefix}{owner.session_id}"
        vnc_url, code_server_url = session_urls(inspection, self._settings)

        created_at = owner.created_at or inspection.started_at or inspection.created_at
        expires_at = owner.expires_at
        if expires_at is None and created_at is not None:
            expires_at = created_at + timedelta(
                minutes=self._settings.session.default_duration_minutes
            )

        return SandboxSession(
            session_id=owner.session_id,
            application_id=owner.application_id,
            candidate_id=owner.candidate_id,
            container_id=inspection.container_id,
            network_id=network_id,
            status=live_status(inspection),
            vnc_url=vnc_url,
            code_server_url=code_server_url,
            workspace_path=inspection.working_dir or self._settings.sandbox.working_dir,
            created_at=created_at,
            expires_at=expires_at,
        )

    async def get_status(self, container_id: str) -> SandboxSession | None:
        """Get the live session view for a container.

        Returns:
            Session view, or None if the container is gone or not one of ours

        Raises:
            InspectError: If the runtime cannot be queried
        """
        inspection = await self._driver.inspect(container_id)
        if inspection is None:
            self._log.debug("reconciler.not_found", container_id=container_id)
            return None

        session = self._to_session(inspection)
        if session is None:
            self._log.debug("reconciler.unmanaged", container_id=container_id)
        return session

    async def list_sessions(
        self,
        *,
        application_id: str | None = None,
        candidate_id: str | None = None,
    ) -> list[SandboxSession]:
        """Rebuild views for every managed container, optionally filtered.

        This is what an external reaper polls to find sessions past
        ``expires_at``.
        """
        prefix = self._settings.session.label_prefix
        filters = managed_filter(prefix)
        if application_id:
            filters[label_names.label_key(prefix, label_names.APPLICATION_ID)] = application_id
        if candidate_id:
            filters[label_names.label_key(prefix, label_names.CANDIDATE_ID)] = candidate_id

        sessions: list[SandboxSession] = []
        for inspection in await self._driver.list_containers(labels=filters):
            session = self._to_session(inspection)
            if session is not None:
                sessions.append(session)

        self._log.info("reconciler.list_sessions", count=len(sessions))
        return sessions

    async def reconcile(self, persisted: SandboxSession) -> SandboxSession:
        """Correct a persisted session against live state.

        - container gone (or owned by another session) while the record is
          non-terminal -> stopped
        - record active, container no longer running -> live terminal status
        - record active, container running -> endpoint URLs refreshed
        Every other record, terminal ones included, is returned unchanged.
        """
        if persisted.container_id is None:
            return persisted

        live = await self.get_status(persisted.container_id)
        log = self._log.bind(
            session_id=persisted.session_id,
            container_id=persisted.container_id,
            persisted_status=persisted.status.value,
        )

        if live is not None and live.session_id != persisted.session_id:
            log.warning("reconciler.session_mismatch", live_session_id=live.session_id)
            live = None

        if live is None:
            if persisted.status.is_terminal:
                return persisted
            log.info("reconciler.drift", live_status=None, corrected=SessionStatus.STOPPED.value)
            return persisted.model_copy(
                update={"status": SessionStatus.STOPPED, "vnc_url": "", "code_server_url": ""}
            )

        if persisted.status.is_terminal:
            if live.status == SessionStatus.ACTIVE:
                log.warning("reconciler.terminal_record_running")
            return persisted

        if persisted.status != SessionStatus.ACTIVE:
            # pending/spawning records belong to an in-flight create_session
            return persisted

        if live.status == SessionStatus.ACTIVE:
            if live.vnc_url:
                return persisted.model_copy(
                    update={"vnc_url": live.vnc_url, "code_server_url": live.code_server_url}
                )
            return persisted

        log.info("reconciler.drift", live_status=live.status.value)
        return persisted.model_copy(
            update={
                "status": live.status,
                "vnc_url": live.vnc_url,
                "code_server_url": live.code_server_url,
            }
        )
