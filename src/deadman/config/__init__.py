"""Configuration module."""

from deadman.config.loader import get_default_config, load_config
from deadman.config.models import (
    ConfigError,
    DatabaseConfig,
    DeadmanConfig,
    EmailConfig,
    RetryConfig,
    SchedulerConfig,
    SecurityConfig,
    SentryConfig,
)
from deadman.config.paths import (
    get_config_path,
    get_database_path,
    get_deadman_home,
    get_logs_path,
)

__all__ = [
    "ConfigError",
    "DatabaseConfig",
    "DeadmanConfig",
    "EmailConfig",
    "RetryConfig",
    "SchedulerConfig",
    "SecurityConfig",
    "SentryConfig",
    "get_config_path",
    "get_database_path",
    "get_deadman_home",
    "get_default_config",
    "get_logs_path",
    "load_config",
]
