"""Switch subsystem public types."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import StrEnum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from deadman.db.models import Switch


class SwitchStatus(StrEnum):
    """Allowed switch statuses."""

    ACTIVE = "active"
    LAPSED = "lapsed-pending-delivery"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    DELIVERY_FAILED = "delivery-failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {SwitchStatus.DELIVERED, SwitchStatus.CANCELLED, SwitchStatus.DELIVERY_FAILED}
)


def _reject_line_breaks(field: str, value: str | None) -> None:
    # These values end up in email headers
    if value and ("\r" in value or "\n" in value):
        raise ValueError(f"{field} must not contain line breaks")


@dataclass(frozen=True)
class RecipientSpec:
    """A plaintext recipient, as supplied when creating a switch."""

    email: str
    name: str | None = None

    def __post_init__(self) -> None:
        _reject_line_breaks("recipient email", self.email)
        _reject_line_breaks("recipient name", self.name)


@dataclass(frozen=True)
class SwitchSpec:
    """Everything needed to create a switch.

    Exactly one of `timeout` (check-in based) or `scheduled_for`
    (fixed date) must be set.
    """

    owner_id: str
    title: str
    subject: str
    body: str
    recipients: list[RecipientSpec]
    timeout: timedelta | None = None
    scheduled_for: datetime | None = None
    sender_name: str | None = None

    def __post_init__(self) -> None:
        if (self.timeout is None) == (self.scheduled_for is None):
            raise ValueError("Set exactly one of timeout or scheduled_for")
        if self.timeout is not None and self.timeout <= timedelta(0):
            raise ValueError("timeout must be positive")
        if self.scheduled_for is not None and self.scheduled_for.tzinfo is None:
            raise ValueError("scheduled_for must be timezone-aware")
        if not self.recipients:
            raise ValueError("At least one recipient is required")
        if not self.title.strip():
            raise ValueError("title is required")
        _reject_line_breaks("subject", self.subject)
        _reject_line_breaks("sender_name", self.sender_name)


@dataclass
class SwitchRecord:
    """Read-only snapshot of a switch row, without payload plaintext."""

    id: str
    owner_id: str
    title: str
    status: SwitchStatus
    timeout: timedelta | None
    scheduled_for: datetime | None
    last_check_in: datetime
    deadline_at: datetime
    retry_count: int
    next_attempt_at: datetime | None
    last_error: str | None
    claimed: bool
    recipient_count: int
    lapsed_at: datetime | None
    delivered_at: datetime | None
    cancelled_at: datetime | None
    created_at: datetime

    @classmethod
    def from_row(cls, row: Switch, recipient_count: int = 0) -> SwitchRecord:
        return cls(
            id=row.id,
            owner_id=row.owner_id,
            title=row.title,
            status=SwitchStatus(row.status),
            timeout=timedelta(seconds=row.timeout_seconds)
            if row.timeout_seconds is not None
            else None,
            scheduled_for=row.scheduled_for,
            last_check_in=row.last_check_in,
            deadline_at=row.deadline_at,
            retry_count=row.retry_count,
            next_attempt_at=row.next_attempt_at,
            last_error=row.last_error,
            claimed=row.claim_token is not None,
            recipient_count=recipient_count,
            lapsed_at=row.lapsed_at,
            delivered_at=row.delivered_at,
            cancelled_at=row.cancelled_at,
            created_at=row.created_at,
        )


@dataclass(frozen=True)
class OutboundMessage:
    """One message to one recipient, decrypted and ready to send."""

    switch_id: str
    recipient_id: str
    to_address: str
    to_name: str | None
    subject: str
    body: str
    sender_name: str


@dataclass(frozen=True)
class DeliveryClaim:
    """An in-flight delivery held by one scheduler instance.

    `attempt` is 1 for the first delivery attempt of a lapse and grows by
    one per recorded failure. Every write made under the claim is guarded
    by `token`.
    """

    switch_id: str
    owner_id: str
    token: str
    attempt: int
    expires_at: datetime


@dataclass(frozen=True)
class Delivered:
    """attempt_delivery outcome: every recipient has the message."""

    switch_id: str
    recipient_count: int


@dataclass(frozen=True)
class Failed:
    """attempt_delivery outcome: delivery did not complete.

    `retry_at` is None when the switch was frozen in delivery-failed.
    """

    switch_id: str
    reason: str
    permanent: bool
    retry_at: datetime | None = None


DeliveryOutcome = Delivered | Failed


@dataclass
class TickResult:
    """Summary of one scheduler pass."""

    lapsed: list[str] = field(default_factory=list)
    delivered: list[str] = field(default_factory=list)
    retrying: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    conflicts: list[str] = field(default_factory=list)

    @property
    def attempted(self) -> int:
        return (
            len(self.delivered)
            + len(self.retrying)
            + len(self.failed)
            + len(self.conflicts)
        )
