"""Run the scheduler loop in the foreground."""

import asyncio
import logging
import signal
from pathlib import Path
from typing import Annotated

import typer

from deadman.cli.console import console, dim, error


def register(app: typer.Typer) -> None:
    """Register the run command."""

    @app.command()
    def run(
        config: Annotated[
            Path | None,
            typer.Option(
                "--config",
                "-c",
                help="Path to configuration file",
            ),
        ] = None,
    ) -> None:
        """Start the deadline scheduler until SIGINT/SIGTERM."""
        try:
            asyncio.run(_run(config))
        except KeyboardInterrupt:
            pass
        console.print("\n[bold yellow]Scheduler stopped[/bold yellow]")


async def _run(config_path: Path | None) -> None:
    from deadman.cli.context import get_config, open_runtime
    from deadman.cli.pid import PidFile, SchedulerAlreadyRunning
    from deadman.config.paths import get_pid_path
    from deadman.logging import configure_logging

    configure_logging(use_rich=True, log_to_file=True)
    logger = logging.getLogger("deadman.cli.run")

    console.print("[bold]Loading configuration...[/bold]")
    config = get_config(config_path)

    pid_file = PidFile(get_pid_path())
    try:
        pid_file.acquire()
    except SchedulerAlreadyRunning as e:
        error(str(e))
        raise typer.Exit(1) from None

    if config.sentry:
        from deadman.observability import init_sentry

        if init_sentry(config.sentry):
            dim("Sentry initialized")

    try:
        async with open_runtime(config) as runtime:
            shutdown = asyncio.Event()
            loop = asyncio.get_running_loop()
            for sig in (signal.SIGTERM, signal.SIGINT):
                loop.add_signal_handler(sig, shutdown.set)

            cadence = (
                f"cron '{config.scheduler.cron}'"
                if config.scheduler.cron
                else f"every {config.scheduler.poll_interval:g}s"
            )
            console.print(f"[bold]Scheduler running[/bold] ({cadence})")
            await runtime.scheduler.start()
            try:
                await shutdown.wait()
            finally:
                logger.info("shutdown_requested")
                await runtime.scheduler.stop()
    finally:
        pid_file.release()
