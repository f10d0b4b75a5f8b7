"""Small helpers shared across pipeline modules."""

import uuid
from datetime import datetime


def as_uuid(value) -> uuid.UUID:
    """Coerce a UUID or string to uuid.UUID.

    Raises:
        ValueError: Not a valid UUID.
    """
    if isinstance(value, uuid.UUID):
        return value
    return uuid.UUID(str(value))


def clamp_unit(value: float) -> float:
    """Clamp a score into [0, 1]."""
    return max(0.0, min(1.0, value))


def utcnow_iso() -> str:
    return datetime.utcnow().isoformat() + "Z"
