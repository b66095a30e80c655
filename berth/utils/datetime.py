"""Datetime helpers.

All timestamps handled by Berth are naive datetimes in UTC, matching what the
session record store persists.
"""

from __future__ import annotations

from datetime import UTC, datetime

# Docker reports this for containers that never started/finished.
_DOCKER_ZERO_TIME_PREFIX = "0001-01-01"


def utcnow() -> datetime:
    """Return current UTC time as a naive datetime."""
    return datetime.now(UTC).replace(tzinfo=None)


def to_iso(value: datetime) -> str:
    """Format a naive UTC datetime as ISO-8601 with a ``Z`` suffix."""
    return value.isoformat(timespec="milliseconds") + "Z"


def parse_timestamp(value: str | None) -> datetime | None:
    """Parse an engine or label timestamp into a naive UTC datetime.

    Accepts RFC 3339 strings with nanosecond precision (as emitted by the
    Docker API) and our own ``to_iso`` output. Empty values and Docker's zero
    time return None.
    """
    if not value:
        return None
    value = value.strip()
    if not value or value.startswith(_DOCKER_ZERO_TIME_PREFIX):
        return None

    if value.endswith("Z"):
        value = value[:-1] + "+00:00"

    # datetime.fromisoformat only understands up to microseconds
    if "." in value:
        head, _, rest = value.partition(".")
        digits = ""
        for ch in rest:
            if not ch.isdigit():
                break
            digits += ch
        tz = rest[len(digits):]
        value = f"{head}.{digits[:6].ljust(6, '0')}{tz}"

    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None

    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(UTC).replace(tzinfo=None)
    return parsed
