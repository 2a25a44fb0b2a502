"""Schema migration commands, thin wrappers around alembic."""

import subprocess
import sys
from pathlib import Path
from typing import Annotated

import typer

from deadman.cli.console import console, error, success

ConfigOption = Annotated[
    Path | None,
    typer.Option("--config", "-c", help="Path to configuration file"),
]


def _alembic(config_path: Path | None, *args: str) -> bool:
    command = [sys.executable, "-m", "alembic"]
    if config_path is not None:
        # migrations/env.py resolves the database from the same config file
        command += ["-x", f"config={config_path}"]
    return subprocess.run([*command, *args]).returncode == 0


def _finish(label: str, ok: bool) -> None:
    if not ok:
        error(f"{label} failed")
        raise typer.Exit(1)
    success(f"{label} completed")


def register(app: typer.Typer) -> None:
    """Register the db command group."""
    db_app = typer.Typer(help="Manage the switch database schema")

    @db_app.command("migrate")
    def db_migrate(
        revision: Annotated[
            str, typer.Option("--revision", "-r", help="Revision to upgrade to")
        ] = "head",
        config: ConfigOption = None,
    ) -> None:
        """Upgrade the schema. Run before the first `deadman run`."""
        console.print(f"[bold]Upgrading schema to {revision}...[/bold]")
        _finish("Migration", _alembic(config, "upgrade", revision))

    @db_app.command("rollback")
    def db_rollback(
        revision: Annotated[
            str, typer.Option("--revision", "-r", help="Revision to downgrade to")
        ] = "-1",
        config: ConfigOption = None,
    ) -> None:
        """Downgrade the schema, one revision by default."""
        console.print(f"[bold]Downgrading schema to {revision}...[/bold]")
        _finish("Rollback", _alembic(config, "downgrade", revision))

    @db_app.command("status")
    def db_status(config: ConfigOption = None) -> None:
        """Show the current revision and the revision history."""
        console.print("[bold]Current revision:[/bold]")
        _alembic(config, "current")
        console.print("\n[bold]History:[/bold]")
        _alembic(config, "history", "--indicate-current")

    app.add_typer(db_app, name="db")
