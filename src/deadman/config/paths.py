"""Centralized path management for Dead Man's Switch.

All state (config, database, logs) is stored under a single base directory.
The base directory can be overridden with the DEADMAN_HOME environment variable.

Default locations:
- Linux/macOS: ~/.deadman
- Windows: %USERPROFILE%\\.deadman
"""

import os
from functools import lru_cache
from pathlib import Path

ENV_VAR = "DEADMAN_HOME"


@lru_cache(maxsize=1)
def get_deadman_home() -> Path:
    """Get the base directory for all service data.

    Resolution order:
    1. DEADMAN_HOME environment variable (if set)
    2. Platform default (~/.deadman)
    """
    if env_home := os.environ.get(ENV_VAR):
        return Path(env_home).expanduser().resolve()

    return Path.home() / ".deadman"


def get_config_path() -> Path:
    """Get the default config file path."""
    return get_deadman_home() / "config.toml"


def get_database_path() -> Path:
    """Get the default SQLite database path."""
    return get_deadman_home() / "data" / "deadman.db"


def get_logs_path() -> Path:
    """Get the default logs directory path."""
    return get_deadman_home() / "logs"


def get_run_path() -> Path:
    """Get the runtime directory path (PID files)."""
    return get_deadman_home() / "run"


def get_pid_path() -> Path:
    """Get the PID file path for the scheduler process."""
    return get_run_path() / "scheduler.pid"
