"""Main CLI application."""

import typer

from deadman.cli.commands import database, run, switches, tick

app = typer.Typer(
    name="deadman",
    help="Dead Man's Switch - check-in deadline scheduler",
    no_args_is_help=True,
)

for command in (run, tick, switches, database):
    command.register(app)


if __name__ == "__main__":
    app()
