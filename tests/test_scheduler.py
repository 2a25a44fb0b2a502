"""Tests for the deadline scheduler."""

import asyncio
import logging
from datetime import timedelta

import pytest

from deadman.db.engine import Database
from deadman.db.models import utc_now
from deadman.errors import (
    ConcurrencyConflict,
    PermanentDeliveryError,
    TransientDeliveryError,
)
from deadman.switches import (
    DeadlineScheduler,
    Delivered,
    Failed,
    RecipientSpec,
    SwitchStatus,
    SwitchStore,
    next_cron_time,
)

from tests.conftest import T0, make_spec


class TestScanForLapsed:
    """Tests for lapse detection."""

    async def test_deadline_boundary(self, scheduler, create_switch):
        switch = await create_switch(timeout=timedelta(days=7))

        just_before = T0 + timedelta(days=7) - timedelta(seconds=1)
        assert await scheduler.scan_for_lapsed(just_before) == []

        just_after = T0 + timedelta(days=7) + timedelta(seconds=1)
        assert await scheduler.scan_for_lapsed(just_after) == [switch.id]

    async def test_deadline_is_inclusive(self, scheduler, create_switch):
        switch = await create_switch(timeout=timedelta(days=7))
        assert await scheduler.scan_for_lapsed(T0 + timedelta(days=7)) == [switch.id]

    async def test_every_due_switch_lapsed_once_across_pages(
        self, scheduler, store, create_switch, clock
    ):
        """batch_size=2 forces several pages; each switch appears exactly once."""
        ids = []
        for i in range(5):
            record = await create_switch(owner_id=f"owner-{i}")
            ids.append(record.id)
            clock.advance(timedelta(minutes=1))
        not_due = await create_switch(owner_id="late", timeout=timedelta(days=30))

        now = T0 + timedelta(days=8)
        lapsed = await scheduler.scan_for_lapsed(now)

        assert sorted(lapsed) == sorted(ids)
        assert len(lapsed) == len(set(lapsed))
        assert lapsed == ids  # Deadline order
        assert (await store.get(not_due.id)).status == SwitchStatus.ACTIVE

    async def test_second_pass_finds_nothing(self, scheduler, create_switch):
        await create_switch()
        now = T0 + timedelta(days=8)
        assert len(await scheduler.scan_for_lapsed(now)) == 1
        assert await scheduler.scan_for_lapsed(now) == []

    async def test_competing_instances_never_both_win(
        self, store, notifier, scheduler_config, create_switch, clock
    ):
        for i in range(3):
            await create_switch(owner_id=f"owner-{i}")
        first = DeadlineScheduler(store, notifier, config=scheduler_config, clock=clock)
        other = DeadlineScheduler(store, notifier, config=scheduler_config, clock=clock)

        now = T0 + timedelta(days=8)
        won_a = await first.scan_for_lapsed(now)
        won_b = await other.scan_for_lapsed(now)

        assert len(won_a) == 3
        assert won_b == []

    async def test_lapse_records_audit_event(self, scheduler, store, create_switch):
        switch = await create_switch()
        await scheduler.scan_for_lapsed(T0 + timedelta(days=8))

        record = await store.get(switch.id)
        assert record.status == SwitchStatus.LAPSED
        assert record.lapsed_at == T0 + timedelta(days=8)
        actions = [e.action for e in await store.audit_events(switch.id)]
        assert actions == ["switch_created", "switch_lapsed"]

    async def test_fixed_date_switch_lapses_on_its_date(
        self, scheduler, store, create_switch
    ):
        fire_at = T0 + timedelta(days=1)
        switch = await create_switch(scheduled_for=fire_at)

        # Check-ins do not move a fixed date
        assert await store.check_in(switch.id, now=T0 + timedelta(hours=12))
        assert (await store.get(switch.id)).deadline_at == fire_at

        assert await scheduler.scan_for_lapsed(fire_at - timedelta(seconds=1)) == []
        assert await scheduler.scan_for_lapsed(fire_at) == [switch.id]


class TestAttemptDelivery:
    """Tests for the delivery path."""

    async def test_delivers_to_every_recipient(
        self, scheduler, store, notifier, create_switch
    ):
        switch = await create_switch(
            recipients=[
                RecipientSpec("bob@example.com", "Bob"),
                RecipientSpec("carol@example.com"),
            ]
        )
        now = T0 + timedelta(days=8)
        await scheduler.scan_for_lapsed(now)

        outcome = await scheduler.attempt_delivery(switch.id, now)

        assert outcome == Delivered(switch_id=switch.id, recipient_count=2)
        assert [m.to_address for m in notifier.sent] == [
            "bob@example.com",
            "carol@example.com",
        ]
        message = notifier.sent[0]
        assert message.subject == "If you are reading this"
        assert message.body == "The spare key is under the third flower pot."
        assert message.sender_name == "Alice"
        assert message.to_name == "Bob"

        record = await store.get(switch.id)
        assert record.status == SwitchStatus.DELIVERED
        assert record.delivered_at == now
        assert not record.claimed

    async def test_repeated_attempts_never_double_send(
        self, scheduler, store, notifier, create_switch
    ):
        switch = await create_switch()
        now = T0 + timedelta(days=8)
        await scheduler.scan_for_lapsed(now)

        await scheduler.attempt_delivery(switch.id, now)
        for _ in range(3):
            with pytest.raises(ConcurrencyConflict):
                await scheduler.attempt_delivery(switch.id, now)

        assert len(notifier.sent) == 1
        actions = [e.action for e in await store.audit_events(switch.id)]
        assert actions.count("email_sent") == 1

    async def test_active_switch_cannot_be_delivered(self, scheduler, create_switch):
        switch = await create_switch()
        with pytest.raises(ConcurrencyConflict):
            await scheduler.attempt_delivery(switch.id, T0 + timedelta(days=8))

    async def test_transient_failure_backs_off(
        self, scheduler, store, notifier, create_switch
    ):
        notifier.errors = [TransientDeliveryError("connection reset")]
        switch = await create_switch()
        now = T0 + timedelta(days=8)
        await scheduler.scan_for_lapsed(now)

        outcome = await scheduler.attempt_delivery(switch.id, now)

        assert isinstance(outcome, Failed)
        assert not outcome.permanent
        assert outcome.retry_at == now + timedelta(minutes=5)
        record = await store.get(switch.id)
        assert record.status == SwitchStatus.LAPSED
        assert record.retry_count == 1
        assert record.last_error == "connection reset"
        assert not record.claimed

        # Not eligible again until the backoff elapses
        with pytest.raises(ConcurrencyConflict):
            await scheduler.attempt_delivery(switch.id, now + timedelta(minutes=4))
        assert isinstance(
            await scheduler.attempt_delivery(switch.id, now + timedelta(minutes=5)),
            Delivered,
        )

    async def test_retry_budget_exhausted_only_after_max_retries(
        self, scheduler, store, notifier, create_switch
    ):
        """Three consecutive failures with max_retries=3 still leave a retry."""
        notifier.errors = [TransientDeliveryError("timeout")] * 4
        switch = await create_switch()
        now = T0 + timedelta(days=8)
        await scheduler.scan_for_lapsed(now)

        delays = []
        for _ in range(3):
            outcome = await scheduler.attempt_delivery(switch.id, now)
            assert isinstance(outcome, Failed)
            assert outcome.retry_at is not None
            delays.append(outcome.retry_at - now)
            now = outcome.retry_at
            assert (await store.get(switch.id)).status == SwitchStatus.LAPSED

        assert delays == [
            timedelta(minutes=5),
            timedelta(minutes=10),
            timedelta(minutes=20),
        ]

        outcome = await scheduler.attempt_delivery(switch.id, now)
        assert isinstance(outcome, Failed)
        assert outcome.retry_at is None

        record = await store.get(switch.id)
        assert record.status == SwitchStatus.DELIVERY_FAILED
        assert record.retry_count == 4
        assert notifier.sent == []

    async def test_permanent_failure_freezes_immediately(
        self, scheduler, store, notifier, create_switch, caplog
    ):
        notifier.errors = [PermanentDeliveryError("550 mailbox unavailable")]
        switch = await create_switch()
        now = T0 + timedelta(days=8)
        await scheduler.scan_for_lapsed(now)

        with caplog.at_level(logging.ERROR, logger="deadman.switches.scheduler"):
            outcome = await scheduler.attempt_delivery(switch.id, now)

        assert isinstance(outcome, Failed)
        assert outcome.permanent
        assert outcome.retry_at is None
        record = await store.get(switch.id)
        assert record.status == SwitchStatus.DELIVERY_FAILED
        assert record.last_error == "550 mailbox unavailable"
        assert "delivery_failed" in [r.message for r in caplog.records]

        actions = [e.action for e in await store.audit_events(switch.id)]
        assert "email_send_failed" in actions

    async def test_unclassified_notifier_error_is_permanent(
        self, scheduler, store, notifier, create_switch, caplog
    ):
        notifier.errors = [RuntimeError("template exploded")]
        switch = await create_switch()
        now = T0 + timedelta(days=8)
        await scheduler.scan_for_lapsed(now)

        with caplog.at_level(logging.ERROR, logger="deadman.switches.scheduler"):
            outcome = await scheduler.attempt_delivery(switch.id, now)

        assert isinstance(outcome, Failed)
        assert outcome.permanent
        record = await store.get(switch.id)
        assert record.status == SwitchStatus.DELIVERY_FAILED
        assert record.last_error == "RuntimeError: template exploded"
        assert "delivery_error" in [r.message for r in caplog.records]

        actions = [e.action for e in await store.audit_events(switch.id)]
        assert "email_send_failed" in actions
        with pytest.raises(ConcurrencyConflict):
            await scheduler.attempt_delivery(switch.id, now + timedelta(hours=1))

    async def test_retry_skips_recipients_already_delivered(
        self, scheduler, notifier, create_switch
    ):
        notifier.errors = [None, TransientDeliveryError("421 try later")]
        switch = await create_switch(
            recipients=[
                RecipientSpec("bob@example.com"),
                RecipientSpec("carol@example.com"),
            ]
        )
        now = T0 + timedelta(days=8)
        await scheduler.scan_for_lapsed(now)

        first = await scheduler.attempt_delivery(switch.id, now)
        assert isinstance(first, Failed)
        second = await scheduler.attempt_delivery(switch.id, first.retry_at)

        assert second == Delivered(switch_id=switch.id, recipient_count=1)
        assert [m.to_address for m in notifier.sent] == [
            "bob@example.com",
            "carol@example.com",
        ]

    async def test_unreadable_payload_is_permanent(
        self, database, notifier, scheduler_config, clock, create_switch
    ):
        from deadman.security import FieldCipher

        switch = await create_switch()
        wrong_key = SwitchStore(database, FieldCipher("some-other-key"))
        scheduler = DeadlineScheduler(
            wrong_key, notifier, config=scheduler_config, clock=clock
        )
        now = T0 + timedelta(days=8)
        await scheduler.scan_for_lapsed(now)

        outcome = await scheduler.attempt_delivery(switch.id, now)

        assert isinstance(outcome, Failed)
        assert outcome.permanent
        assert notifier.sent == []
        assert (await wrong_key.get(switch.id)).status == SwitchStatus.DELIVERY_FAILED

    async def test_expired_claim_is_reclaimed(
        self, scheduler, store, notifier, create_switch
    ):
        """A claim left by a crashed instance is picked up after its lease."""
        switch = await create_switch()
        now = T0 + timedelta(days=8)
        await scheduler.scan_for_lapsed(now)
        await store.claim(switch.id, now, timedelta(minutes=10))

        with pytest.raises(ConcurrencyConflict):
            await scheduler.attempt_delivery(switch.id, now + timedelta(minutes=1))
        assert notifier.sent == []

        outcome = await scheduler.attempt_delivery(
            switch.id, now + timedelta(minutes=11)
        )
        assert isinstance(outcome, Delivered)
        assert len(notifier.sent) == 1


class TestCheckInRaces:
    """Tests for check-in and cancel racing the scheduler."""

    async def test_check_in_before_claim_prevents_delivery(
        self, scheduler, store, notifier, create_switch
    ):
        switch = await create_switch()
        now = T0 + timedelta(days=8)
        assert await scheduler.scan_for_lapsed(now) == [switch.id]

        assert await scheduler.check_in(switch.id, now + timedelta(seconds=1))

        with pytest.raises(ConcurrencyConflict):
            await scheduler.attempt_delivery(switch.id, now + timedelta(seconds=2))
        assert notifier.sent == []

        record = await store.get(switch.id)
        assert record.status == SwitchStatus.ACTIVE
        assert record.deadline_at == now + timedelta(seconds=1) + timedelta(days=7)
        assert record.lapsed_at is None

    async def test_check_in_during_delivery_conflicts(
        self, scheduler, store, notifier, create_switch
    ):
        switch = await create_switch()
        now = T0 + timedelta(days=8)
        await scheduler.scan_for_lapsed(now)

        conflicts: list[ConcurrencyConflict] = []

        async def check_in_mid_flight(message):
            try:
                await store.check_in(switch.id, now=now)
            except ConcurrencyConflict as e:
                conflicts.append(e)

        notifier.on_deliver = check_in_mid_flight
        outcome = await scheduler.attempt_delivery(switch.id, now)

        assert isinstance(outcome, Delivered)
        assert len(conflicts) == 1
        assert conflicts[0].operation == "check_in"

    async def test_late_check_in_on_delivered_switch_is_noop(
        self, scheduler, store, create_switch
    ):
        switch = await create_switch()
        now = T0 + timedelta(days=8)
        await scheduler.run_once(now)

        assert await scheduler.check_in(switch.id, now + timedelta(hours=1)) is False
        assert (await store.get(switch.id)).status == SwitchStatus.DELIVERED

    async def test_cancel_lapsed_switch_prevents_send(
        self, scheduler, store, notifier, create_switch
    ):
        switch = await create_switch()
        now = T0 + timedelta(days=8)
        await scheduler.scan_for_lapsed(now)

        assert await scheduler.cancel(switch.id, now)

        with pytest.raises(ConcurrencyConflict):
            await scheduler.attempt_delivery(switch.id, now)
        result = await scheduler.run_once(now + timedelta(days=30))
        assert result.attempted == 0
        assert notifier.sent == []
        assert (await store.get(switch.id)).status == SwitchStatus.CANCELLED

    async def test_cancel_after_abandoned_claim_prevents_send(
        self, scheduler, store, notifier, create_switch
    ):
        switch = await create_switch()
        now = T0 + timedelta(days=8)
        await scheduler.scan_for_lapsed(now)
        await store.claim(switch.id, now, timedelta(minutes=10))

        assert await scheduler.cancel(switch.id, now + timedelta(hours=1))

        result = await scheduler.run_once(now + timedelta(hours=2))
        assert result.attempted == 0
        assert notifier.sent == []
        assert (await store.get(switch.id)).status == SwitchStatus.CANCELLED

    async def test_cancel_during_delivery_conflicts(
        self, scheduler, store, notifier, create_switch
    ):
        switch = await create_switch()
        now = T0 + timedelta(days=8)
        await scheduler.scan_for_lapsed(now)

        async def cancel_mid_flight(message):
            with pytest.raises(ConcurrencyConflict):
                await store.cancel(switch.id, now)

        notifier.on_deliver = cancel_mid_flight
        assert isinstance(await scheduler.attempt_delivery(switch.id, now), Delivered)

    async def test_check_in_during_backoff_rearms(
        self, scheduler, store, notifier, create_switch
    ):
        """Between retries no claim is live, so a check-in rescues the switch."""
        notifier.errors = [TransientDeliveryError("timeout")]
        switch = await create_switch()
        now = T0 + timedelta(days=8)
        await scheduler.scan_for_lapsed(now)
        await scheduler.attempt_delivery(switch.id, now)

        assert await scheduler.check_in(switch.id, now + timedelta(minutes=1))

        record = await store.get(switch.id)
        assert record.status == SwitchStatus.ACTIVE
        assert record.retry_count == 0
        assert record.next_attempt_at is None
        result = await scheduler.run_once(now + timedelta(hours=1))
        assert result.attempted == 0


class TestRunOnce:
    """Tests for a full scheduler pass."""

    async def test_lapses_and_delivers(self, scheduler, store, notifier, create_switch):
        switch = await create_switch()
        now = T0 + timedelta(days=8)

        result = await scheduler.run_once(now)

        assert result.lapsed == [switch.id]
        assert result.delivered == [switch.id]
        assert result.attempted == 1
        actions = [e.action for e in await store.audit_events(switch.id)]
        assert actions == ["switch_created", "switch_lapsed", "email_sent"]

    async def test_picks_up_retries_when_due(self, scheduler, notifier, create_switch):
        notifier.errors = [TransientDeliveryError("timeout")]
        switch = await create_switch()
        now = T0 + timedelta(days=8)

        first = await scheduler.run_once(now)
        assert first.retrying == [switch.id]

        early = await scheduler.run_once(now + timedelta(minutes=1))
        assert early.attempted == 0

        later = await scheduler.run_once(now + timedelta(minutes=5))
        assert later.lapsed == []
        assert later.delivered == [switch.id]

    async def test_reports_failures(self, scheduler, notifier, create_switch):
        notifier.errors = [PermanentDeliveryError("auth failed")]
        switch = await create_switch()

        result = await scheduler.run_once(T0 + timedelta(days=8))

        assert result.failed == [switch.id]
        assert result.delivered == []

    async def test_unclassified_error_does_not_abort_tick(
        self, scheduler, notifier, create_switch
    ):
        notifier.errors = [ValueError("bad header")]
        first = await create_switch()
        second = await create_switch()

        result = await scheduler.run_once(T0 + timedelta(days=8))

        assert len(result.failed) == 1
        assert len(result.delivered) == 1
        assert sorted(result.failed + result.delivered) == sorted([first.id, second.id])
        assert len(notifier.sent) == 1

    async def test_nothing_due(self, scheduler, create_switch):
        await create_switch()
        result = await scheduler.run_once(T0 + timedelta(days=1))
        assert result.lapsed == []
        assert result.attempted == 0


class TestCleanup:
    """Tests for check-in log pruning."""

    async def test_prunes_old_check_ins(self, scheduler, store, create_switch):
        switch = await create_switch()
        await store.check_in(switch.id, now=T0 + timedelta(days=1))
        await store.check_in(switch.id, now=T0 + timedelta(days=95))

        removed = await scheduler.run_cleanup(T0 + timedelta(days=100))

        assert removed == 1


class TestNextCronTime:
    """Tests for cron cadence computation."""

    def test_next_fire_is_in_utc(self):
        after = T0  # 12:00 UTC
        assert next_cron_time("0 2 * * *", after) == T0.replace(hour=2) + timedelta(
            days=1
        )

    def test_respects_timezone(self):
        # 02:00 in New York is 07:00 UTC in January
        fire = next_cron_time("0 2 * * *", T0, timezone="America/New_York")
        assert fire.hour == 7

    def test_invalid_timezone_falls_back_to_utc(self):
        fire = next_cron_time("0 2 * * *", T0, timezone="Not/AZone")
        assert fire.hour == 2


class TestPollLoop:
    """Tests for the background loop."""

    async def test_loop_delivers_overdue_switch(self, store, notifier, scheduler_config):
        await store.create(
            make_spec(timeout=timedelta(days=7)),
            tier="premium",
            now=utc_now() - timedelta(days=8),
        )
        scheduler = DeadlineScheduler(store, notifier, config=scheduler_config)

        await scheduler.start()
        try:
            for _ in range(200):
                if notifier.sent:
                    break
                await asyncio.sleep(0.01)
        finally:
            await scheduler.stop()

        assert len(notifier.sent) == 1
        assert not scheduler.is_running

    async def test_loop_survives_persistence_outage(
        self, tmp_path, cipher, notifier, scheduler_config, caplog
    ):
        # A directory is not a database file
        broken = Database(database_path=tmp_path)
        await broken.connect()
        scheduler = DeadlineScheduler(
            SwitchStore(broken, cipher), notifier, config=scheduler_config
        )

        with caplog.at_level(logging.ERROR, logger="deadman.switches.scheduler"):
            await scheduler.start()
            await asyncio.sleep(0.05)
            assert scheduler.is_running
            await scheduler.stop()
        await broken.disconnect()

        assert "scheduler_tick_error" in [r.message for r in caplog.records]

    async def test_start_is_idempotent(self, scheduler):
        await scheduler.start()
        await scheduler.start()
        await scheduler.stop()
        await scheduler.stop()
        assert not scheduler.is_running
