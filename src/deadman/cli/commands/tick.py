"""Run a single scheduler pass."""

import asyncio
from datetime import UTC, datetime
from pathlib import Path
from typing import Annotated

import typer
from rich.table import Column

from deadman.cli.console import console, create_table, dim, error
from deadman.switches import TickResult


def register(app: typer.Typer) -> None:
    """Register the tick command."""

    @app.command()
    def tick(
        at: Annotated[
            str | None,
            typer.Option(
                "--at",
                help="Evaluate deadlines as of this ISO-8601 time instead of now",
            ),
        ] = None,
        cleanup: Annotated[
            bool,
            typer.Option(
                "--cleanup",
                help="Also prune old check-in log entries",
            ),
        ] = False,
        config: Annotated[
            Path | None,
            typer.Option(
                "--config",
                "-c",
                help="Path to configuration file",
            ),
        ] = None,
    ) -> None:
        """Lapse overdue switches and deliver everything due, once.

        Examples:
            deadman tick
            deadman tick --at 2026-01-01T00:00:00Z
        """
        now = None
        if at is not None:
            try:
                now = datetime.fromisoformat(at)
            except ValueError:
                error(f"Invalid timestamp: {at}")
                raise typer.Exit(1) from None
            if now.tzinfo is None:
                now = now.replace(tzinfo=UTC)

        result, removed = asyncio.run(_tick(config, now, cleanup))
        _print_result(result)
        if removed is not None:
            dim(f"Pruned {removed} check-in log entries")


async def _tick(
    config_path: Path | None, now: datetime | None, cleanup: bool
) -> tuple[TickResult, int | None]:
    from deadman.cli.context import get_config, open_runtime

    config = get_config(config_path)
    async with open_runtime(config) as runtime:
        result = await runtime.scheduler.run_once(now)
        removed = await runtime.scheduler.run_cleanup(now) if cleanup else None
    return result, removed


def _print_result(result: TickResult) -> None:
    table = create_table(
        "Scheduler Pass",
        Column("Outcome", style="cyan"),
        Column("Count", justify="right"),
        Column("Switches", style="dim"),
    )
    rows = [
        ("lapsed", result.lapsed),
        ("delivered", result.delivered),
        ("retrying", result.retrying),
        ("failed", result.failed),
        ("conflicts", result.conflicts),
    ]
    for name, ids in rows:
        table.add_row(name, str(len(ids)), ", ".join(i[:8] for i in ids))
    console.print(table)
