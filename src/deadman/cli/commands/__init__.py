"""CLI command modules."""

from deadman.cli.commands import database, run, switches, tick

__all__ = [
    "database",
    "run",
    "switches",
    "tick",
]
