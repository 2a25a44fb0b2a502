"""Deadline scheduler: polls for lapsed switches and delivers their messages.

The scheduler owns the tick loop and the delivery path. All data access is
delegated to SwitchStore, whose conditional updates are the only
coordination between scheduler instances.
"""

import asyncio
import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING
from zoneinfo import ZoneInfo

from croniter import croniter

from deadman.config.models import SchedulerConfig
from deadman.errors import (
    ConcurrencyConflict,
    PermanentDeliveryError,
    TransientDeliveryError,
)
from deadman.security.crypto import DecryptionError
from deadman.switches.retry import RetryPolicy
from deadman.switches.store import SwitchStore
from deadman.switches.types import (
    DeliveryClaim,
    DeliveryOutcome,
    Delivered,
    Failed,
    TickResult,
)

if TYPE_CHECKING:
    from deadman.notifications.base import Notifier

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def _system_clock() -> datetime:
    return datetime.now(UTC)


def next_cron_time(expression: str, after: datetime, timezone: str = "UTC") -> datetime:
    """Next firing of a cron expression strictly after `after`, in UTC."""
    try:
        tz = ZoneInfo(timezone)
    except Exception:
        logger.warning("invalid_timezone", extra={"scheduler.timezone": timezone})
        tz = ZoneInfo("UTC")
    base = after.astimezone(tz)
    return croniter(expression, base).get_next(datetime).astimezone(UTC)


class DeadlineScheduler:
    """Lapses overdue switches and drives their delivery.

    Example:
        scheduler = DeadlineScheduler(store, notifier, config=config.scheduler)
        await scheduler.start()
        ...
        await scheduler.stop()
    """

    def __init__(
        self,
        store: SwitchStore,
        notifier: "Notifier",
        policy: RetryPolicy | None = None,
        config: SchedulerConfig | None = None,
        clock: Clock | None = None,
    ):
        self._store = store
        self._notifier = notifier
        self._config = config or SchedulerConfig()
        self._policy = policy or RetryPolicy.from_config(self._config.retry)
        self._clock = clock or _system_clock
        self._lease = timedelta(seconds=self._config.claim_timeout_seconds)
        self._running = False
        self._task: asyncio.Task | None = None
        self._cleanup_task: asyncio.Task | None = None
        self._tick_count = 0

    @property
    def store(self) -> SwitchStore:
        return self._store

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    @property
    def is_running(self) -> bool:
        return self._running

    # ------------------------------------------------------------------
    # Core operations
    # ------------------------------------------------------------------

    async def scan_for_lapsed(self, now: datetime | None = None) -> list[str]:
        """Transition every overdue active switch to lapsed.

        Returns:
            Ids this pass transitioned. A switch lapsed by a concurrent pass
            or rescued by a concurrent check-in is not included.
        """
        now = now or self._clock()
        lapsed = await self._store.lapse_due(now, batch_size=self._config.batch_size)
        if lapsed:
            logger.info(
                "switches_lapsed",
                extra={"switch.count": len(lapsed), "scan.now": now.isoformat()},
            )
        return lapsed

    async def attempt_delivery(
        self, switch_id: str, now: datetime | None = None
    ) -> DeliveryOutcome:
        """Deliver a lapsed switch's message to its outstanding recipients.

        Raises:
            ConcurrencyConflict: The switch is not deliverable right now
                (already delivered, cancelled, re-armed, claimed elsewhere,
                or still backing off).
        """
        now = now or self._clock()
        claim = await self._store.claim(switch_id, now, self._lease)
        logger.info(
            "delivery_started",
            extra={"switch.id": switch_id, "delivery.attempt": claim.attempt},
        )

        try:
            messages = await self._store.pending_messages(claim)
        except DecryptionError as e:
            return await self._fail(
                claim, now, f"payload unreadable: {e}", permanent=True
            )

        for message in messages:
            try:
                await self._notifier.deliver(message)
            except PermanentDeliveryError as e:
                return await self._fail(claim, now, str(e), permanent=True)
            except TransientDeliveryError as e:
                return await self._fail(claim, now, str(e), permanent=False)
            except Exception as e:
                # Anything outside the delivery taxonomy freezes the switch
                logger.exception(
                    "delivery_error",
                    extra={"switch.id": switch_id, "delivery.attempt": claim.attempt},
                )
                return await self._fail(
                    claim, now, f"{type(e).__name__}: {e}", permanent=True
                )
            await self._store.mark_recipient_delivered(
                claim, message.recipient_id, now, lease=self._lease
            )

        await self._store.complete_delivery(
            claim, now, {"recipient_count": len(messages)}
        )
        logger.info(
            "delivery_completed",
            extra={"switch.id": switch_id, "delivery.recipients": len(messages)},
        )
        return Delivered(switch_id=switch_id, recipient_count=len(messages))

    async def _fail(
        self, claim: DeliveryClaim, now: datetime, reason: str, permanent: bool
    ) -> Failed:
        retry_at = None if permanent else self._policy.next_attempt_at(claim.attempt, now)
        await self._store.record_failure(claim, now, reason, retry_at)

        if retry_at is None:
            logger.error(
                "delivery_failed",
                extra={
                    "switch.id": claim.switch_id,
                    "delivery.attempt": claim.attempt,
                    "delivery.permanent": permanent,
                    "error.message": reason,
                },
            )
        else:
            logger.warning(
                "delivery_retry_scheduled",
                extra={
                    "switch.id": claim.switch_id,
                    "delivery.attempt": claim.attempt,
                    "delivery.retry_at": retry_at.isoformat(),
                    "error.message": reason,
                },
            )
        return Failed(
            switch_id=claim.switch_id,
            reason=reason,
            permanent=permanent,
            retry_at=retry_at,
        )

    async def check_in(self, switch_id: str, now: datetime | None = None) -> bool:
        return await self._store.check_in(switch_id, now or self._clock())

    async def cancel(self, switch_id: str, now: datetime | None = None) -> bool:
        return await self._store.cancel(switch_id, now or self._clock())

    async def run_once(self, now: datetime | None = None) -> TickResult:
        """One pass: lapse overdue switches, then deliver everything due.

        Delivery covers the switches just lapsed plus earlier lapses whose
        backoff elapsed or whose claim lease expired.
        """
        now = now or self._clock()
        result = TickResult()
        result.lapsed = await self.scan_for_lapsed(now)

        due = await self._store.retry_due(now, limit=self._config.batch_size)
        for switch_id in due:
            try:
                outcome = await self.attempt_delivery(switch_id, now)
            except ConcurrencyConflict as e:
                logger.debug("delivery_conflict", extra={"error.message": str(e)})
                result.conflicts.append(switch_id)
                continue

            if isinstance(outcome, Delivered):
                result.delivered.append(switch_id)
            elif outcome.retry_at is not None:
                result.retrying.append(switch_id)
            else:
                result.failed.append(switch_id)

        if result.lapsed or result.attempted:
            logger.info(
                "scheduler_tick",
                extra={
                    "tick.lapsed": len(result.lapsed),
                    "tick.delivered": len(result.delivered),
                    "tick.retrying": len(result.retrying),
                    "tick.failed": len(result.failed),
                    "tick.conflicts": len(result.conflicts),
                },
            )
        return result

    async def run_cleanup(self, now: datetime | None = None) -> int:
        """Prune check-in log rows past the retention period."""
        now = now or self._clock()
        cutoff = now - timedelta(days=self._config.check_in_retention_days)
        removed = await self._store.prune_check_ins(cutoff)
        logger.info(
            "check_ins_pruned",
            extra={"cleanup.removed": removed, "cleanup.cutoff": cutoff.isoformat()},
        )
        return removed

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        logger.info(
            "scheduler_started",
            extra={
                "scheduler.poll_interval": self._config.poll_interval,
                "scheduler.cron": self._config.cron,
            },
        )
        self._task = asyncio.create_task(self._poll_loop())
        if self._config.cleanup_cron:
            self._cleanup_task = asyncio.create_task(self._cleanup_loop())

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        for task in (self._task, self._cleanup_task):
            if task is None:
                continue
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._task = None
        self._cleanup_task = None
        logger.info("scheduler_stopped", extra={"tick.count": self._tick_count})

    def _seconds_until_next_tick(self) -> float:
        if not self._config.cron:
            return self._config.poll_interval
        now = self._clock()
        fire = next_cron_time(self._config.cron, now, self._config.timezone)
        return max((fire - now).total_seconds(), 0.0)

    async def _poll_loop(self) -> None:
        # Heartbeat every 60 ticks (~1 hour at the default interval)
        heartbeat_interval = 60
        while self._running:
            if self._config.cron:
                await asyncio.sleep(self._seconds_until_next_tick())
            try:
                self._tick_count += 1
                if self._tick_count % heartbeat_interval == 0:
                    logger.info(
                        "scheduler_heartbeat", extra={"tick.count": self._tick_count}
                    )
                await self.run_once()
            except Exception as e:
                # PersistenceUnavailable lands here too; the next tick retries
                logger.error("scheduler_tick_error", extra={"error.message": str(e)})
            if not self._config.cron:
                await asyncio.sleep(self._config.poll_interval)

    async def _cleanup_loop(self) -> None:
        assert self._config.cleanup_cron
        while self._running:
            now = self._clock()
            fire = next_cron_time(
                self._config.cleanup_cron, now, self._config.timezone
            )
            await asyncio.sleep(max((fire - now).total_seconds(), 0.0))
            try:
                await self.run_cleanup()
            except Exception as e:
                logger.error("cleanup_error", extra={"error.message": str(e)})
