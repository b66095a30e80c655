"""Berth error types.

Error codes are stable strings for programmatic handling by the HTTP layer
that fronts Berth. Runtime errors carry the engine failure as ``__cause__``
and read "Failed to <action>: <cause>".
"""

from __future__ import annotations

from typing import Any


class BerthError(Exception):
    """Base error for all Berth exceptions."""

    code: str = "internal_error"
    message: str = "An internal error occurred"

    def __init__(
        self,
        message: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.message = message or self.__class__.message
        self.details = details or {}
        super().__init__(self.message)

    @classmethod
    def wrap(cls, action: str, cause: BaseException, **details: Any) -> "BerthError":
        """Build an error following the "Failed to <action>: <cause>" contract."""
        reason = str(cause) or cause.__class__.__name__
        return cls(message=f"Failed to {action}: {reason}", details=details)

    def to_dict(self, request_id: str | None = None) -> dict[str, Any]:
        """Serialize for an API error response."""
        error: dict[str, Any] = {
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }
        if request_id:
            error["request_id"] = request_id
        return {"error": error}


class ValidationError(BerthError):
    """Invalid input."""

    code = "validation_error"
    message = "Validation error"


class InvalidTransitionError(BerthError):
    """Session status change not allowed by the lifecycle."""

    code = "invalid_transition"
    message = "Invalid session status transition"


class SessionConflictError(BerthError):
    """Another active session already exists for the application."""

    code = "session_conflict"
    message = "Session already exists for this application"


# Runtime errors


class RuntimeUnavailable(BerthError):
    """Container engine health probe failed."""

    code = "runtime_unavailable"
    message = "Container runtime is unavailable"


class ImagePullError(BerthError):
    code = "image_pull_failed"
    message = "Failed to pull image"


class NetworkCreationError(BerthError):
    code = "network_creation_failed"
    message = "Failed to create network"


class NetworkRemovalError(BerthError):
    code = "network_removal_failed"
    message = "Failed to remove network"


class ContainerCreationError(BerthError):
    code = "container_creation_failed"
    message = "Failed to create container"


class ContainerStartError(BerthError):
    code = "container_start_failed"
    message = "Failed to start container"


class ContainerStopError(BerthError):
    code = "container_stop_failed"
    message = "Failed to stop container"


class ContainerRemovalError(BerthError):
    code = "container_removal_failed"
    message = "Failed to remove container"


class ArchiveError(BerthError):
    """Workspace archive failed. Never blocks teardown."""

    code = "archive_failed"
    message = "Failed to archive workspace"


class InspectError(BerthError):
    code = "inspect_failed"
    message = "Failed to inspect container"


# Workflow errors


class SessionCreationError(BerthError):
    """Coarse failure of create_session; ``__cause__`` holds the step error."""

    code = "session_creation_failed"
    message = "Failed to create session"


class SessionDestroyError(BerthError):
    """Coarse failure of destroy_session; ``__cause__`` holds the step error."""

    code = "session_destroy_failed"
    message = "Failed to destroy session"
