"""Single-instance guard for `deadman run`."""

import os
from dataclasses import dataclass
from pathlib import Path


class SchedulerAlreadyRunning(Exception):
    def __init__(self, pid: int) -> None:
        self.pid = pid
        super().__init__(f"Scheduler already running (pid {pid})")


def pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True  # Exists, owned by someone else
    return True


@dataclass
class PidFile:
    """Records the pid of the running scheduler.

    Stale files left by a crashed process are replaced on acquire.
    """

    path: Path

    def read(self) -> int | None:
        try:
            return int(self.path.read_text().strip())
        except (FileNotFoundError, ValueError):
            return None

    def acquire(self) -> None:
        """Claim the file for this process.

        Raises:
            SchedulerAlreadyRunning: If a live process holds it.
        """
        holder = self.read()
        if holder is not None and holder != os.getpid() and pid_alive(holder):
            raise SchedulerAlreadyRunning(holder)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(f"{os.getpid()}\n")

    def release(self) -> None:
        if self.read() == os.getpid():
            self.path.unlink(missing_ok=True)
