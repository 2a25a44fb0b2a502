"""Console output shared by the CLI commands."""

from datetime import UTC, datetime

from rich.console import Console
from rich.table import Column, Table

from deadman.switches import SwitchStatus

console = Console()

STATUS_STYLES = {
    SwitchStatus.ACTIVE: "green",
    SwitchStatus.LAPSED: "yellow",
    SwitchStatus.DELIVERED: "blue",
    SwitchStatus.CANCELLED: "dim",
    SwitchStatus.DELIVERY_FAILED: "red",
}


def _say(style: str, msg: str) -> None:
    console.print(f"[{style}]{msg}[/{style}]")


def error(msg: str) -> None:
    _say("red", msg)


def warning(msg: str) -> None:
    _say("yellow", msg)


def success(msg: str) -> None:
    _say("green", msg)


def dim(msg: str) -> None:
    _say("dim", msg)


def create_table(title: str, *columns: Column | str) -> Table:
    """A titled table; plain strings become unstyled columns."""
    return Table(*columns, title=title)


def status_markup(status: SwitchStatus) -> str:
    style = STATUS_STYLES[status]
    return f"[{style}]{status.value}[/{style}]"


def format_countdown(deadline: datetime, now: datetime | None = None) -> str:
    """Time left until `deadline` as "in 3d 4h", or "overdue"."""
    remaining = int((deadline - (now or datetime.now(UTC))).total_seconds())
    if remaining <= 0:
        return "[red]overdue[/red]"

    days, rest = divmod(remaining, 86400)
    hours, rest = divmod(rest, 3600)
    minutes, seconds = divmod(rest, 60)
    if days:
        return f"in {days}d {hours}h" if hours else f"in {days}d"
    if hours:
        return f"in {hours}h {minutes}m" if minutes else f"in {hours}h"
    if minutes:
        return f"in {minutes}m"
    return f"in {seconds}s"
