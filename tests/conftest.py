"""Shared test fixtures and factories."""

from collections.abc import AsyncGenerator, Awaitable, Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
from typer.testing import CliRunner

from deadman.config.models import RetryConfig, SchedulerConfig
from deadman.db.engine import Database
from deadman.db.models import Base
from deadman.notifications.base import Notifier
from deadman.security import FieldCipher
from deadman.switches import (
    DeadlineScheduler,
    OutboundMessage,
    RecipientSpec,
    RetryPolicy,
    SwitchRecord,
    SwitchSpec,
    SwitchStore,
)

T0 = datetime(2026, 1, 5, 12, 0, tzinfo=UTC)
ENCRYPTION_SECRET = "test-encryption-secret"


# =============================================================================
# Clock
# =============================================================================


class FrozenClock:
    """Clock that only moves when told to."""

    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta) -> datetime:
        self.now = self.now + delta
        return self.now


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


# =============================================================================
# Database Fixtures
# =============================================================================


@pytest.fixture
async def database(tmp_path: Path) -> AsyncGenerator[Database, None]:
    """Create a temporary test database."""
    db_path = tmp_path / "test.db"
    db = Database(database_path=db_path)
    await db.connect()

    # Create all tables
    async with db.engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield db

    await db.disconnect()


@pytest.fixture
def cipher() -> FieldCipher:
    return FieldCipher(ENCRYPTION_SECRET)


@pytest.fixture
async def store(database: Database, cipher: FieldCipher) -> SwitchStore:
    return SwitchStore(database, cipher)


# =============================================================================
# Notifier Mocks
# =============================================================================


class FakeNotifier(Notifier):
    """Records deliveries and raises scripted errors.

    `errors` is consumed one entry per deliver() call; a None entry means
    that call succeeds. `on_deliver` runs before each send, which lets
    tests act while a delivery is in flight.
    """

    def __init__(self, errors: list[Exception | None] | None = None):
        self.errors = list(errors or [])
        self.sent: list[OutboundMessage] = []
        self.calls = 0
        self.on_deliver: Callable[[OutboundMessage], Awaitable[None]] | None = None

    @property
    def name(self) -> str:
        return "fake"

    async def deliver(self, message: OutboundMessage) -> None:
        self.calls += 1
        if self.on_deliver is not None:
            await self.on_deliver(message)
        if self.errors:
            error = self.errors.pop(0)
            if error is not None:
                raise error
        self.sent.append(message)


@pytest.fixture
def notifier() -> FakeNotifier:
    return FakeNotifier()


# =============================================================================
# Scheduler Fixtures
# =============================================================================


@pytest.fixture
def scheduler_config() -> SchedulerConfig:
    return SchedulerConfig(
        poll_interval=0.01,
        batch_size=2,
        claim_timeout_seconds=600,
        cleanup_cron=None,
        retry=RetryConfig(
            max_retries=3, base_delay_seconds=300, max_delay_seconds=3600
        ),
    )


@pytest.fixture
def scheduler(
    store: SwitchStore,
    notifier: FakeNotifier,
    scheduler_config: SchedulerConfig,
    clock: FrozenClock,
) -> DeadlineScheduler:
    return DeadlineScheduler(
        store,
        notifier,
        policy=RetryPolicy.from_config(scheduler_config.retry),
        config=scheduler_config,
        clock=clock,
    )


def make_spec(
    owner_id: str = "alice",
    timeout: timedelta | None = timedelta(days=7),
    scheduled_for: datetime | None = None,
    recipients: list[RecipientSpec] | None = None,
    **overrides,
) -> SwitchSpec:
    """Build a switch spec with sensible defaults."""
    if scheduled_for is not None:
        timeout = None
    fields = {
        "owner_id": owner_id,
        "title": "Letter to Bob",
        "subject": "If you are reading this",
        "body": "The spare key is under the third flower pot.",
        "recipients": recipients or [RecipientSpec("bob@example.com", "Bob")],
        "timeout": timeout,
        "scheduled_for": scheduled_for,
        "sender_name": "Alice",
    }
    fields.update(overrides)
    return SwitchSpec(**fields)


@pytest.fixture
def create_switch(
    store: SwitchStore, clock: FrozenClock
) -> Callable[..., Awaitable[SwitchRecord]]:
    """Factory creating a switch checked in at the clock's current time."""

    async def _create(**kwargs) -> SwitchRecord:
        tier = kwargs.pop("tier", "premium")
        return await store.create(make_spec(**kwargs), tier=tier, now=clock())

    return _create


# =============================================================================
# CLI Fixtures
# =============================================================================


@pytest.fixture
def cli_runner() -> CliRunner:
    return CliRunner()


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    """Config file pointing at a temporary database with a known key."""
    config_path = tmp_path / "config.toml"
    config_path.write_text(
        f"""
[database]
path = "{tmp_path / "cli.db"}"

[security]
encryption_key = "{ENCRYPTION_SECRET}"

[email]
backend = "log"
"""
    )
    return config_path
