"""Switch inspection and operator actions."""

import asyncio
from pathlib import Path
from typing import Annotated

import typer
from rich.table import Column

from deadman.cli.console import (
    console,
    create_table,
    dim,
    error,
    format_countdown,
    status_markup,
    success,
    warning,
)
from deadman.errors import ConcurrencyConflict, SwitchNotFound
from deadman.switches import SwitchRecord, SwitchStatus


def register(app: typer.Typer) -> None:
    """Register the switches command."""

    @app.command()
    def switches(
        action: Annotated[
            str,
            typer.Argument(help="Action: list, check-in, cancel"),
        ] = "list",
        switch_id: Annotated[
            str | None,
            typer.Option(
                "--id",
                "-i",
                help="Switch ID for check-in/cancel",
            ),
        ] = None,
        owner: Annotated[
            str | None,
            typer.Option(
                "--owner",
                "-o",
                help="Filter by owner, or check in every switch of an owner",
            ),
        ] = None,
        status: Annotated[
            str | None,
            typer.Option(
                "--status",
                "-s",
                help="Filter by status (active, lapsed-pending-delivery, ...)",
            ),
        ] = None,
        config: Annotated[
            Path | None,
            typer.Option(
                "--config",
                "-c",
                help="Path to configuration file",
            ),
        ] = None,
    ) -> None:
        """List switches or act on one.

        Examples:
            deadman switches                          # List all switches
            deadman switches --status delivery-failed # Needs follow-up
            deadman switches check-in --id <id>       # Reset one deadline
            deadman switches check-in --owner alice   # Reset all of alice's
            deadman switches cancel --id <id>         # Cancel a switch
        """
        if action == "list":
            status_filter = None
            if status is not None:
                try:
                    status_filter = SwitchStatus(status)
                except ValueError:
                    error(f"Unknown status: {status}")
                    console.print(
                        "Valid statuses: " + ", ".join(s.value for s in SwitchStatus)
                    )
                    raise typer.Exit(1) from None
            asyncio.run(_list(config, owner, status_filter))

        elif action == "check-in":
            if switch_id is None and owner is None:
                error("--id or --owner is required for check-in")
                raise typer.Exit(1)
            asyncio.run(_check_in(config, switch_id, owner))

        elif action == "cancel":
            if switch_id is None:
                error("--id is required for cancel")
                raise typer.Exit(1)
            asyncio.run(_cancel(config, switch_id))

        else:
            error(f"Unknown action: {action}")
            console.print("Valid actions: list, check-in, cancel")
            raise typer.Exit(1)


async def _list(
    config_path: Path | None, owner: str | None, status: SwitchStatus | None
) -> None:
    from deadman.cli.context import get_config, open_runtime

    config = get_config(config_path)
    async with open_runtime(config) as runtime:
        records = await runtime.store.list(owner_id=owner, status=status)

    if not records:
        warning("No switches found")
        return

    table = create_table(
        "Switches",
        Column("ID", style="cyan", max_width=8),
        "Owner",
        Column("Title", max_width=40),
        "Status",
        Column("Deadline", style="dim"),
        Column("Retries", justify="right"),
        Column("Recipients", justify="right"),
    )
    for record in records:
        table.add_row(*_row(record))
    console.print(table)
    dim(f"{len(records)} switch(es)")


def _row(record: SwitchRecord) -> list[str]:
    if record.status == SwitchStatus.ACTIVE:
        deadline = format_countdown(record.deadline_at)
    elif record.status == SwitchStatus.LAPSED and record.next_attempt_at:
        deadline = f"retry {format_countdown(record.next_attempt_at)}"
    else:
        deadline = record.deadline_at.strftime("%Y-%m-%d %H:%M")
    return [
        record.id[:8],
        record.owner_id,
        record.title,
        status_markup(record.status),
        deadline,
        str(record.retry_count),
        str(record.recipient_count),
    ]


async def _check_in(
    config_path: Path | None, switch_id: str | None, owner: str | None
) -> None:
    from deadman.cli.context import get_config, open_runtime

    config = get_config(config_path)
    async with open_runtime(config) as runtime:
        if switch_id is None:
            assert owner is not None
            rearmed = await runtime.store.check_in_owner(owner, source="cli")
            success(f"Checked in {len(rearmed)} switch(es) for {owner}")
            return

        try:
            rearmed_one = await runtime.store.check_in(switch_id, source="cli")
        except SwitchNotFound as e:
            error(str(e))
            raise typer.Exit(1) from None
        except ConcurrencyConflict:
            error("Delivery in progress; check-in not applied")
            raise typer.Exit(1) from None

    if rearmed_one:
        success(f"Checked in switch {switch_id}")
    else:
        warning(f"Switch {switch_id} is already closed; nothing to do")


async def _cancel(config_path: Path | None, switch_id: str) -> None:
    from deadman.cli.context import get_config, open_runtime

    config = get_config(config_path)
    async with open_runtime(config) as runtime:
        try:
            cancelled = await runtime.store.cancel(switch_id)
        except SwitchNotFound as e:
            error(str(e))
            raise typer.Exit(1) from None
        except ConcurrencyConflict:
            error("Delivery in progress; cancel not applied")
            raise typer.Exit(1) from None

    if cancelled:
        success(f"Cancelled switch {switch_id}")
    else:
        warning(f"Switch {switch_id} is already closed; nothing to do")
