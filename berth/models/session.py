"""Sandbox session data model.

A SandboxSession is the materialized view of one candidate's sandbox. Berth
builds it in memory and hands it to the caller for persistence; the
container and network it names are the real long-lived state.

Lifecycle:
    pending -> spawning -> active -> {expired | stopped | error}

pending/spawning may also fail straight to error. Terminal states never
transition again; a new session must be created instead.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, model_validator

from berth.errors import InvalidTransitionError


class SessionStatus(str, Enum):
    """Session lifecycle status."""

    PENDING = "pending"  # Record created, nothing provisioned yet
    SPAWNING = "spawning"  # Runtime objects being created
    ACTIVE = "active"  # Container running
    EXPIRED = "expired"  # Container exited after running
    STOPPED = "stopped"  # Container stopped/never ran, or gone
    ERROR = "error"  # Provisioning failed

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    def can_transition_to(self, target: "SessionStatus") -> bool:
        return target in _TRANSITIONS[self]


TERMINAL_STATUSES = frozenset(
    {SessionStatus.EXPIRED, SessionStatus.STOPPED, SessionStatus.ERROR}
)

_TRANSITIONS: dict[SessionStatus, frozenset[SessionStatus]] = {
    SessionStatus.PENDING: frozenset({SessionStatus.SPAWNING, SessionStatus.ERROR}),
    SessionStatus.SPAWNING: frozenset({SessionStatus.ACTIVE, SessionStatus.ERROR}),
    SessionStatus.ACTIVE: TERMINAL_STATUSES,
    SessionStatus.EXPIRED: frozenset(),
    SessionStatus.STOPPED: frozenset(),
    SessionStatus.ERROR: frozenset(),
}


class SandboxSession(BaseModel):
    """One candidate's sandbox session."""

    model_config = ConfigDict(validate_assignment=True)

    session_id: str = Field(frozen=True)
    application_id: str
    candidate_id: str

    # Created together; both set or both None
    container_id: str | None = None
    network_id: str | None = None

    status: SessionStatus = SessionStatus.PENDING

    vnc_url: str = ""
    code_server_url: str = ""
    workspace_path: str = "/workspace"

    created_at: datetime | None = None
    expires_at: datetime | None = None

    @model_validator(mode="after")
    def _runtime_ids_paired(self) -> "SandboxSession":
        if (self.container_id is None) != (self.network_id is None):
            raise ValueError("container_id and network_id must be set together")
        return self

    @property
    def is_active(self) -> bool:
        return self.status == SessionStatus.ACTIVE

    def transition_to(self, status: SessionStatus) -> None:
        """Move to ``status``, enforcing the forward-only lifecycle."""
        if status == self.status:
            return
        if not self.status.can_transition_to(status):
            raise InvalidTransitionError(
                message=f"Cannot transition session from {self.status.value} to {status.value}",
                details={
                    "session_id": self.session_id,
                    "from": self.status.value,
                    "to": status.value,
                },
            )
        self.status = status

    def is_expired_at(self, now: datetime) -> bool:
        """Whether the advisory expiry has passed; used by external reapers."""
        return self.expires_at is not None and now >= self.expires_at
