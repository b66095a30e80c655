"""Ownership labels attached to runtime objects.

Labels are the only durable state Berth owns. They let the reconciler
rebuild a session's identity from a container alone, and let operators find
everything Berth created with a single label filter.

Keys are ``<prefix>.<name>``, e.g. ``hr-screening.sessionId``.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from berth.utils.datetime import parse_timestamp, to_iso

SESSION_ID = "sessionId"
APPLICATION_ID = "applicationId"
CANDIDATE_ID = "candidateId"
MANAGED = "managed"
CREATED_AT = "createdAt"
EXPIRES_AT = "expiresAt"


def label_key(prefix: str, name: str) -> str:
    return f"{prefix}.{name}"


def managed_filter(prefix: str) -> dict[str, str]:
    """Label filter matching every runtime object Berth manages."""
    return {label_key(prefix, MANAGED): "true"}


@dataclass(frozen=True)
class OwnershipLabels:
    """Session identity as carried on a container or network."""

    session_id: str
    application_id: str = ""
    candidate_id: str = ""
    created_at: datetime | None = None
    expires_at: datetime | None = None

    def to_labels(self, prefix: str) -> dict[str, str]:
        labels = {
            label_key(prefix, SESSION_ID): self.session_id,
            label_key(prefix, MANAGED): "true",
        }
        if self.application_id:
            labels[label_key(prefix, APPLICATION_ID)] = self.application_id
        if self.candidate_id:
            labels[label_key(prefix, CANDIDATE_ID)] = self.candidate_id
        if self.created_at is not None:
            labels[label_key(prefix, CREATED_AT)] = to_iso(self.created_at)
        if self.expires_at is not None:
            labels[label_key(prefix, EXPIRES_AT)] = to_iso(self.expires_at)
        return labels

    @classmethod
    def from_labels(cls, labels: dict[str, str] | None, prefix: str) -> "OwnershipLabels | None":
        """Parse labels; None when the object carries no session label."""
        if not labels:
            return None
        session_id = labels.get(label_key(prefix, SESSION_ID))
        if not session_id:
            return None
        return cls(
            session_id=session_id,
            application_id=labels.get(label_key(prefix, APPLICATION_ID), ""),
            candidate_id=labels.get(label_key(prefix, CANDIDATE_ID), ""),
            created_at=parse_timestamp(labels.get(label_key(prefix, CREATED_AT))),
            expires_at=parse_timestamp(labels.get(label_key(prefix, EXPIRES_AT))),
        )
