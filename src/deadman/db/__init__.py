"""Database layer."""

from deadman.db.engine import Database
from deadman.db.models import (
    AuditEvent,
    Base,
    CheckIn,
    Recipient,
    Switch,
    utc_now,
)

__all__ = [
    # Engine
    "Database",
    # Models
    "AuditEvent",
    "Base",
    "CheckIn",
    "Recipient",
    "Switch",
    "utc_now",
]
