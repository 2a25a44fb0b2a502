"""Shared setup for commands that touch the switch database."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path

import typer

from deadman.cli.console import error
from deadman.config import ConfigError, DeadmanConfig, load_config
from deadman.db import Database
from deadman.notifications import create_notifier
from deadman.security import FieldCipher
from deadman.switches import DeadlineScheduler, SwitchStore


@dataclass
class Runtime:
    config: DeadmanConfig
    database: Database
    store: SwitchStore
    scheduler: DeadlineScheduler


def get_config(config_path: Path | None) -> DeadmanConfig:
    """Load configuration, exiting with a message on failure."""
    try:
        return load_config(config_path)
    except FileNotFoundError as e:
        error(str(e))
        raise typer.Exit(1) from None
    except ValueError as e:
        error(f"Invalid configuration: {e}")
        raise typer.Exit(1) from None


@asynccontextmanager
async def open_runtime(config: DeadmanConfig) -> AsyncGenerator[Runtime, None]:
    """Connect the database and wire store, notifier and scheduler together."""
    try:
        key = config.resolve_encryption_key()
    except ConfigError as e:
        error(str(e))
        raise typer.Exit(1) from None

    database = Database.from_config(config.database)
    await database.connect()
    try:
        store = SwitchStore(database, FieldCipher(key))
        scheduler = DeadlineScheduler(
            store, create_notifier(config.email), config=config.scheduler
        )
        yield Runtime(
            config=config, database=database, store=store, scheduler=scheduler
        )
    finally:
        await database.disconnect()
