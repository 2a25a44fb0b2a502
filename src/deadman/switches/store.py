"""Switch store backed by async SQLAlchemy.

Every state change is a single conditional UPDATE guarded by the state the
caller expects; a zero rowcount means another actor got there first. This is
the only coordination between scheduler instances and check-in/cancel
callers. There is no in-process lock.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from deadman.db.engine import Database
from deadman.db.models import AuditEvent, CheckIn, Recipient, Switch, utc_now
from deadman.errors import ConcurrencyConflict, PersistenceUnavailable, SwitchNotFound
from deadman.security.crypto import FieldCipher
from deadman.switches.tiers import check_tier_limits
from deadman.switches.types import (
    TERMINAL_STATUSES,
    DeliveryClaim,
    OutboundMessage,
    SwitchRecord,
    SwitchSpec,
    SwitchStatus,
)

logger = logging.getLogger(__name__)

DEFAULT_SENDER_NAME = "A friend"


def _new_id() -> str:
    return uuid.uuid4().hex


def _no_live_claim(now: datetime) -> Any:
    return or_(Switch.claim_token.is_(None), Switch.claim_expires_at <= now)


def _rearmable(now: datetime) -> Any:
    """Rows a check-in or cancel may take over: armed, or lapsed with no live claim."""
    return or_(
        Switch.status == SwitchStatus.ACTIVE.value,
        and_(Switch.status == SwitchStatus.LAPSED.value, _no_live_claim(now)),
    )


class SwitchStore:
    """Persistence for switches, recipients, check-ins and audit events."""

    def __init__(self, database: Database, cipher: FieldCipher) -> None:
        self._db = database
        self._cipher = cipher

    @asynccontextmanager
    async def _session(self) -> AsyncGenerator[AsyncSession, None]:
        try:
            async with self._db.session() as session:
                yield session
        except (OperationalError, InterfaceError) as e:
            raise PersistenceUnavailable(str(e)) from e

    @staticmethod
    def _audit(
        session: AsyncSession,
        owner_id: str,
        switch_id: str | None,
        action: str,
        details: dict[str, Any] | None = None,
        now: datetime | None = None,
    ) -> None:
        session.add(
            AuditEvent(
                owner_id=owner_id,
                switch_id=switch_id,
                action=action,
                details=details,
                created_at=now or utc_now(),
            )
        )

    @staticmethod
    async def _update(session: AsyncSession, stmt: Any) -> int:
        result = await session.execute(
            stmt.execution_options(synchronize_session=False)
        )
        return result.rowcount  # type: ignore[attr-defined]

    # ------------------------------------------------------------------
    # Create / read
    # ------------------------------------------------------------------

    async def create(
        self,
        spec: SwitchSpec,
        tier: str = "free",
        now: datetime | None = None,
    ) -> SwitchRecord:
        """Create an armed switch.

        Raises:
            TierLimitExceeded: If the switch does not fit the owner's tier.
        """
        now = now or utc_now()
        async with self._session() as session:
            existing = await session.scalar(
                select(func.count(Switch.id)).where(
                    Switch.owner_id == spec.owner_id,
                    Switch.status.not_in([s.value for s in TERMINAL_STATUSES]),
                )
            )
            check_tier_limits(tier, spec, existing or 0)

            timeout_seconds = (
                int(spec.timeout.total_seconds()) if spec.timeout is not None else None
            )
            deadline_at = (
                spec.scheduled_for
                if spec.scheduled_for is not None
                else now + timedelta(seconds=timeout_seconds or 0)
            )
            row = Switch(
                id=_new_id(),
                owner_id=spec.owner_id,
                title=spec.title,
                status=SwitchStatus.ACTIVE.value,
                timeout_seconds=timeout_seconds,
                scheduled_for=spec.scheduled_for,
                last_check_in=now,
                deadline_at=deadline_at,
                retry_count=0,
                encrypted_subject=self._cipher.encrypt(spec.subject),
                encrypted_body=self._cipher.encrypt(spec.body),
                sender_name=spec.sender_name,
                created_at=now,
                updated_at=now,
            )
            row.recipients = [
                Recipient(
                    id=_new_id(),
                    position=i,
                    encrypted_email=self._cipher.encrypt(r.email),
                    encrypted_name=self._cipher.encrypt_optional(r.name),
                    created_at=now,
                )
                for i, r in enumerate(spec.recipients)
            ]
            session.add(row)
            self._audit(
                session,
                spec.owner_id,
                row.id,
                "switch_created",
                {"title": spec.title, "recipient_count": len(spec.recipients)},
                now,
            )
            record = SwitchRecord.from_row(row, recipient_count=len(spec.recipients))

        logger.info(
            "switch_created",
            extra={
                "switch.id": record.id,
                "switch.owner_id": record.owner_id,
                "switch.deadline_at": record.deadline_at.isoformat(),
            },
        )
        return record

    async def get(self, switch_id: str) -> SwitchRecord:
        """Get a switch snapshot.

        Raises:
            SwitchNotFound: If no such switch exists.
        """
        async with self._session() as session:
            row = await session.get(Switch, switch_id)
            if row is None:
                raise SwitchNotFound(switch_id)
            count = await session.scalar(
                select(func.count(Recipient.id)).where(Recipient.switch_id == switch_id)
            )
            return SwitchRecord.from_row(row, recipient_count=count or 0)

    async def list(
        self,
        owner_id: str | None = None,
        status: SwitchStatus | None = None,
        limit: int | None = None,
    ) -> list[SwitchRecord]:
        """List switches ordered by deadline."""
        stmt = (
            select(Switch, func.count(Recipient.id))
            .outerjoin(Recipient, Recipient.switch_id == Switch.id)
            .group_by(Switch.id)
            .order_by(Switch.deadline_at, Switch.id)
        )
        if owner_id is not None:
            stmt = stmt.where(Switch.owner_id == owner_id)
        if status is not None:
            stmt = stmt.where(Switch.status == status.value)
        if limit is not None:
            stmt = stmt.limit(limit)

        async with self._session() as session:
            rows = (await session.execute(stmt)).all()
            return [SwitchRecord.from_row(row, recipient_count=n) for row, n in rows]

    async def audit_events(self, switch_id: str) -> list[AuditEvent]:
        """Audit trail for one switch, oldest first."""
        async with self._session() as session:
            result = await session.scalars(
                select(AuditEvent)
                .where(AuditEvent.switch_id == switch_id)
                .order_by(AuditEvent.id)
            )
            return list(result)

    # ------------------------------------------------------------------
    # Lapse scan
    # ------------------------------------------------------------------

    async def lapse_due(self, now: datetime, batch_size: int = 100) -> list[str]:
        """Transition every active switch with deadline <= now to lapsed.

        Candidates are read with a keyset cursor on (deadline_at, id), so a
        row is visited at most once per call even as earlier pages change
        status underneath the cursor. Each candidate is then moved by a
        conditional update that re-checks status and deadline; a check-in
        landing between the read and the update makes it match nothing.

        Returns:
            Ids transitioned by this call, in deadline order.
        """
        won: list[str] = []
        cursor: tuple[datetime, str] | None = None

        while True:
            async with self._session() as session:
                stmt = (
                    select(Switch.id, Switch.owner_id, Switch.deadline_at)
                    .where(
                        Switch.status == SwitchStatus.ACTIVE.value,
                        Switch.deadline_at <= now,
                    )
                    .order_by(Switch.deadline_at, Switch.id)
                    .limit(batch_size)
                )
                if cursor is not None:
                    last_deadline, last_id = cursor
                    stmt = stmt.where(
                        or_(
                            Switch.deadline_at > last_deadline,
                            and_(
                                Switch.deadline_at == last_deadline,
                                Switch.id > last_id,
                            ),
                        )
                    )
                page = (await session.execute(stmt)).all()

                for switch_id, owner_id, deadline_at in page:
                    updated = await self._update(
                        session,
                        update(Switch)
                        .where(
                            Switch.id == switch_id,
                            Switch.status == SwitchStatus.ACTIVE.value,
                            Switch.deadline_at <= now,
                        )
                        .values(
                            status=SwitchStatus.LAPSED.value,
                            lapsed_at=now,
                            retry_count=0,
                            next_attempt_at=None,
                            last_error=None,
                        ),
                    )
                    if updated:
                        won.append(switch_id)
                        self._audit(
                            session,
                            owner_id,
                            switch_id,
                            "switch_lapsed",
                            {"deadline_at": deadline_at.isoformat()},
                            now,
                        )
                    else:
                        logger.debug(
                            "lapse_conflict", extra={"switch.id": switch_id}
                        )

            if len(page) < batch_size:
                break
            last = page[-1]
            cursor = (last.deadline_at, last.id)

        return won

    async def retry_due(self, now: datetime, limit: int = 100) -> list[str]:
        """Lapsed switches ready for a delivery attempt.

        Covers switches whose backoff elapsed, switches lapsed by an earlier
        pass that never got claimed, and claims whose lease expired.
        """
        async with self._session() as session:
            result = await session.scalars(
                select(Switch.id)
                .where(
                    Switch.status == SwitchStatus.LAPSED.value,
                    or_(
                        Switch.next_attempt_at.is_(None),
                        Switch.next_attempt_at <= now,
                    ),
                    _no_live_claim(now),
                )
                .order_by(Switch.lapsed_at, Switch.id)
                .limit(limit)
            )
            return list(result)

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    async def claim(
        self, switch_id: str, now: datetime, lease: timedelta
    ) -> DeliveryClaim:
        """Take the in-flight delivery slot for a lapsed switch.

        Raises:
            ConcurrencyConflict: The switch is not lapsed, is held by a live
                claim, or is still backing off.
        """
        token = _new_id()
        expires_at = now + lease
        async with self._session() as session:
            updated = await self._update(
                session,
                update(Switch)
                .where(
                    Switch.id == switch_id,
                    Switch.status == SwitchStatus.LAPSED.value,
                    _no_live_claim(now),
                    or_(
                        Switch.next_attempt_at.is_(None),
                        Switch.next_attempt_at <= now,
                    ),
                )
                .values(claim_token=token, claim_expires_at=expires_at),
            )
            if not updated:
                raise ConcurrencyConflict(switch_id, "claim")

            row = (
                await session.execute(
                    select(Switch.owner_id, Switch.retry_count).where(
                        Switch.id == switch_id
                    )
                )
            ).one()

        return DeliveryClaim(
            switch_id=switch_id,
            owner_id=row.owner_id,
            token=token,
            attempt=row.retry_count + 1,
            expires_at=expires_at,
        )

    async def pending_messages(self, claim: DeliveryClaim) -> list[OutboundMessage]:
        """Decrypt the message for every recipient not yet delivered to.

        Raises:
            DecryptionError: If the payload cannot be decrypted.
        """
        async with self._session() as session:
            row = await session.get(Switch, claim.switch_id)
            if row is None:
                raise SwitchNotFound(claim.switch_id)
            recipients = await session.scalars(
                select(Recipient)
                .where(
                    Recipient.switch_id == claim.switch_id,
                    Recipient.delivered_at.is_(None),
                )
                .order_by(Recipient.position)
            )
            subject = self._cipher.decrypt(row.encrypted_subject)
            body = self._cipher.decrypt(row.encrypted_body)
            return [
                OutboundMessage(
                    switch_id=claim.switch_id,
                    recipient_id=r.id,
                    to_address=self._cipher.decrypt(r.encrypted_email),
                    to_name=self._cipher.decrypt_optional(r.encrypted_name),
                    subject=subject,
                    body=body,
                    sender_name=row.sender_name or DEFAULT_SENDER_NAME,
                )
                for r in recipients
            ]

    async def mark_recipient_delivered(
        self,
        claim: DeliveryClaim,
        recipient_id: str,
        now: datetime,
        lease: timedelta | None = None,
    ) -> None:
        """Record one successful send, renewing the claim lease.

        Raises:
            ConcurrencyConflict: The claim is no longer held.
        """
        async with self._session() as session:
            values: dict[str, Any] = {}
            if lease is not None:
                values["claim_expires_at"] = now + lease
            updated = await self._update(
                session,
                update(Switch)
                .where(
                    Switch.id == claim.switch_id,
                    Switch.claim_token == claim.token,
                    Switch.status == SwitchStatus.LAPSED.value,
                )
                .values(**values, updated_at=now),
            )
            if not updated:
                raise ConcurrencyConflict(claim.switch_id, "mark_recipient_delivered")
            await self._update(
                session,
                update(Recipient)
                .where(
                    Recipient.id == recipient_id,
                    Recipient.switch_id == claim.switch_id,
                    Recipient.delivered_at.is_(None),
                )
                .values(delivered_at=now),
            )

    async def complete_delivery(
        self,
        claim: DeliveryClaim,
        now: datetime,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Mark the switch delivered and release the claim.

        Raises:
            ConcurrencyConflict: The claim is no longer held.
        """
        async with self._session() as session:
            updated = await self._update(
                session,
                update(Switch)
                .where(
                    Switch.id == claim.switch_id,
                    Switch.claim_token == claim.token,
                    Switch.status == SwitchStatus.LAPSED.value,
                )
                .values(
                    status=SwitchStatus.DELIVERED.value,
                    delivered_at=now,
                    claim_token=None,
                    claim_expires_at=None,
                    next_attempt_at=None,
                    last_error=None,
                ),
            )
            if not updated:
                raise ConcurrencyConflict(claim.switch_id, "complete_delivery")
            self._audit(
                session,
                claim.owner_id,
                claim.switch_id,
                "email_sent",
                {"attempt": claim.attempt, **(details or {})},
                now,
            )

    async def record_failure(
        self,
        claim: DeliveryClaim,
        now: datetime,
        reason: str,
        retry_at: datetime | None,
    ) -> SwitchStatus:
        """Release the claim after a failed attempt.

        With `retry_at` the switch stays lapsed and backs off until then;
        without it the switch is frozen in delivery-failed.

        Raises:
            ConcurrencyConflict: The claim is no longer held.
        """
        if retry_at is not None:
            status = SwitchStatus.LAPSED
            action = "delivery_retry_scheduled"
            values: dict[str, Any] = {"next_attempt_at": retry_at}
        else:
            status = SwitchStatus.DELIVERY_FAILED
            action = "email_send_failed"
            values = {"status": status.value, "next_attempt_at": None}

        async with self._session() as session:
            updated = await self._update(
                session,
                update(Switch)
                .where(
                    Switch.id == claim.switch_id,
                    Switch.claim_token == claim.token,
                    Switch.status == SwitchStatus.LAPSED.value,
                )
                .values(
                    **values,
                    retry_count=Switch.retry_count + 1,
                    last_error=reason,
                    claim_token=None,
                    claim_expires_at=None,
                ),
            )
            if not updated:
                raise ConcurrencyConflict(claim.switch_id, "record_failure")
            self._audit(
                session,
                claim.owner_id,
                claim.switch_id,
                action,
                {
                    "attempt": claim.attempt,
                    "error": reason,
                    "retry_at": retry_at.isoformat() if retry_at else None,
                },
                now,
            )
        return status

    # ------------------------------------------------------------------
    # Check-in / cancel
    # ------------------------------------------------------------------

    async def _rearm(
        self, session: AsyncSession, row: Switch, now: datetime
    ) -> bool:
        """Conditionally re-arm one switch inside an open session."""
        if row.timeout_seconds is None:
            # Fixed-date switch: the deadline does not move, only the log does.
            return bool(
                await self._update(
                    session,
                    update(Switch)
                    .where(
                        Switch.id == row.id,
                        Switch.status == SwitchStatus.ACTIVE.value,
                    )
                    .values(last_check_in=now),
                )
            )

        updated = await self._update(
            session,
            update(Switch)
            .where(Switch.id == row.id, _rearmable(now))
            .values(
                status=SwitchStatus.ACTIVE.value,
                last_check_in=now,
                deadline_at=now + timedelta(seconds=row.timeout_seconds),
                lapsed_at=None,
                retry_count=0,
                next_attempt_at=None,
                last_error=None,
                claim_token=None,
                claim_expires_at=None,
            ),
        )
        if updated and row.status == SwitchStatus.LAPSED.value:
            # A fresh lapse later must reach every recipient again
            await self._update(
                session,
                update(Recipient)
                .where(Recipient.switch_id == row.id)
                .values(delivered_at=None),
            )
        return bool(updated)

    async def check_in(
        self,
        switch_id: str,
        now: datetime | None = None,
        source: str | None = None,
        ip_address: str | None = None,
    ) -> bool:
        """Reset a switch's deadline.

        Returns:
            True if the switch was re-armed; False if it is already terminal
            (a late check-in on a delivered switch is a no-op).

        Raises:
            SwitchNotFound: If no such switch exists.
            ConcurrencyConflict: A delivery is in flight.
        """
        now = now or utc_now()
        async with self._session() as session:
            row = await session.get(Switch, switch_id)
            if row is None:
                raise SwitchNotFound(switch_id)
            previous = row.status

            rearmed = await self._rearm(session, row, now)
            if not rearmed:
                await session.refresh(row)
                status = SwitchStatus(row.status)
                if not status.is_terminal and not (
                    row.timeout_seconds is None and status == SwitchStatus.LAPSED
                ):
                    raise ConcurrencyConflict(
                        switch_id, "check_in", "delivery in flight"
                    )
                logger.info(
                    "check_in_ignored",
                    extra={"switch.id": switch_id, "switch.status": status.value},
                )
                return False

            session.add(
                CheckIn(
                    id=_new_id(),
                    owner_id=row.owner_id,
                    switch_id=switch_id,
                    source=source,
                    ip_address=ip_address,
                    created_at=now,
                )
            )
            self._audit(
                session,
                row.owner_id,
                switch_id,
                "check_in",
                {"previous_status": previous, "source": source},
                now,
            )

        logger.info(
            "switch_checked_in",
            extra={"switch.id": switch_id, "switch.previous_status": previous},
        )
        return True

    async def check_in_owner(
        self,
        owner_id: str,
        now: datetime | None = None,
        source: str | None = None,
        ip_address: str | None = None,
    ) -> list[str]:
        """Re-arm every eligible switch of an owner.

        Switches with an in-flight delivery are skipped.

        Returns:
            Ids of re-armed switches.
        """
        now = now or utc_now()
        rearmed: list[str] = []
        async with self._session() as session:
            rows = await session.scalars(
                select(Switch).where(
                    Switch.owner_id == owner_id,
                    Switch.status.in_(
                        [SwitchStatus.ACTIVE.value, SwitchStatus.LAPSED.value]
                    ),
                )
            )
            for row in list(rows):
                if await self._rearm(session, row, now):
                    rearmed.append(row.id)
                else:
                    logger.debug(
                        "check_in_conflict",
                        extra={"switch.id": row.id, "switch.owner_id": owner_id},
                    )

            session.add(
                CheckIn(
                    id=_new_id(),
                    owner_id=owner_id,
                    switch_id=None,
                    source=source,
                    ip_address=ip_address,
                    created_at=now,
                )
            )
            for switch_id in rearmed:
                self._audit(
                    session, owner_id, switch_id, "check_in", {"source": source}, now
                )

        logger.info(
            "owner_checked_in",
            extra={"switch.owner_id": owner_id, "switch.count": len(rearmed)},
        )
        return rearmed

    async def cancel(self, switch_id: str, now: datetime | None = None) -> bool:
        """Cancel a switch so no later scan or retry can deliver it.

        Returns:
            True if this call cancelled it; False if it was already terminal.

        Raises:
            SwitchNotFound: If no such switch exists.
            ConcurrencyConflict: A delivery is in flight.
        """
        now = now or utc_now()
        async with self._session() as session:
            row = await session.get(Switch, switch_id)
            if row is None:
                raise SwitchNotFound(switch_id)
            previous = row.status

            updated = await self._update(
                session,
                update(Switch)
                .where(Switch.id == switch_id, _rearmable(now))
                .values(
                    status=SwitchStatus.CANCELLED.value,
                    cancelled_at=now,
                    next_attempt_at=None,
                    claim_token=None,
                    claim_expires_at=None,
                ),
            )
            if not updated:
                await session.refresh(row)
                if SwitchStatus(row.status).is_terminal:
                    return False
                raise ConcurrencyConflict(switch_id, "cancel", "delivery in flight")

            self._audit(
                session,
                row.owner_id,
                switch_id,
                "switch_cancelled",
                {"previous_status": previous},
                now,
            )

        logger.info("switch_cancelled", extra={"switch.id": switch_id})
        return True

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def prune_check_ins(self, before: datetime) -> int:
        """Delete check-in log rows older than `before`."""
        async with self._session() as session:
            result = await session.execute(
                delete(CheckIn)
                .where(CheckIn.created_at < before)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount  # type: ignore[attr-defined]
