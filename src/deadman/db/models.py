"""SQLAlchemy ORM models."""

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.dialects.sqlite import JSON
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.types import TypeDecorator


def utc_now() -> datetime:
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(UTC)


class UTCDateTime(TypeDecorator[datetime]):
    """Store naive UTC, hand back aware UTC.

    SQLite drops tzinfo on the way in; comparing the naive values it returns
    with aware ones raises, so normalise at the column boundary.
    """

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value
        return value.astimezone(UTC).replace(tzinfo=None)

    def process_result_value(
        self, value: datetime | None, dialect: Any
    ) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


class Base(DeclarativeBase):
    """Base class for all models."""

    type_annotation_map = {
        dict[str, Any]: JSON,
        datetime: UTCDateTime,
    }


class Switch(Base):
    """A user's dead man's switch.

    Status lifecycle:
    - active: armed, waiting for its deadline
    - lapsed-pending-delivery: deadline passed, delivery outstanding
    - delivered / cancelled / delivery-failed: terminal

    `deadline_at` is `last_check_in + timeout_seconds`, or `scheduled_for`
    for fixed-date switches. It is kept in sync by every write so the lapse
    scan is a range query on (status, deadline_at).

    `claim_token` marks an in-flight delivery; at most one is live per switch.
    """

    __tablename__ = "switches"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    owner_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False)

    # Deadline tracking
    timeout_seconds: Mapped[int | None] = mapped_column(Integer, nullable=True)
    scheduled_for: Mapped[datetime | None] = mapped_column(nullable=True)
    last_check_in: Mapped[datetime] = mapped_column(default=utc_now, nullable=False)
    deadline_at: Mapped[datetime] = mapped_column(nullable=False)

    # Encrypted payload
    encrypted_subject: Mapped[str] = mapped_column(Text, nullable=False)
    encrypted_body: Mapped[str] = mapped_column(Text, nullable=False)
    sender_name: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Delivery bookkeeping
    retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    next_attempt_at: Mapped[datetime | None] = mapped_column(nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    claim_token: Mapped[str | None] = mapped_column(String, nullable=True)
    claim_expires_at: Mapped[datetime | None] = mapped_column(nullable=True)

    lapsed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    delivered_at: Mapped[datetime | None] = mapped_column(nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        default=utc_now, onupdate=utc_now, nullable=False
    )

    recipients: Mapped[list["Recipient"]] = relationship(
        "Recipient",
        back_populates="switch",
        cascade="all, delete-orphan",
        order_by="Recipient.position",
    )

    __table_args__ = (
        Index("ix_switches_status_deadline", "status", "deadline_at", "id"),
        Index("ix_switches_status_next_attempt", "status", "next_attempt_at"),
    )


class Recipient(Base):
    """A recipient of a switch's message. Address and name are encrypted."""

    __tablename__ = "recipients"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    switch_id: Mapped[str] = mapped_column(
        String, ForeignKey("switches.id", ondelete="CASCADE"), nullable=False, index=True
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    encrypted_email: Mapped[str] = mapped_column(Text, nullable=False)
    encrypted_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Set once this recipient has been sent the message; retries skip it
    delivered_at: Mapped[datetime | None] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=utc_now, nullable=False)

    switch: Mapped["Switch"] = relationship("Switch", back_populates="recipients")


class CheckIn(Base):
    """Liveness signal log. `switch_id` is NULL for owner-wide check-ins."""

    __tablename__ = "check_ins"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    owner_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    switch_id: Mapped[str | None] = mapped_column(String, nullable=True)
    source: Mapped[str | None] = mapped_column(String(64), nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String(45), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        default=utc_now, nullable=False, index=True
    )


class AuditEvent(Base):
    """Append-only record of switch state changes and delivery outcomes."""

    __tablename__ = "audit_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    owner_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    switch_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    action: Mapped[str] = mapped_column(String(100), nullable=False)
    details: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=utc_now, nullable=False)
