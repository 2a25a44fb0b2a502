"""Configuration loading from TOML files and environment variables."""

import os
import tomllib
from pathlib import Path
from typing import Any

from pydantic import SecretStr

from deadman.config.models import DeadmanConfig
from deadman.config.paths import get_config_path

# (section, key, environment variable) for secrets that may live outside the file
ENV_SECRETS = [
    ("email", "password", "SMTP_PASSWORD"),
    ("security", "encryption_key", "DEADMAN_ENCRYPTION_KEY"),
]


def config_search_path() -> list[Path]:
    """Locations tried, in order, when no config path is given."""
    return [
        Path("config.toml"),
        get_config_path(),
        Path("/etc/deadman/config.toml"),
    ]


def find_config_file(path: Path | None = None) -> Path | None:
    """Resolve the config file to read.

    Raises:
        FileNotFoundError: If an explicit `path` does not exist.
    """
    if path is not None:
        explicit = Path(path).expanduser()
        if not explicit.exists():
            raise FileNotFoundError(f"Config file not found: {explicit}")
        return explicit
    return next((p for p in config_search_path() if p.expanduser().exists()), None)


def _env_secret(env_var: str) -> SecretStr | None:
    value = os.environ.get(env_var)
    return SecretStr(value) if value else None


def _resolve_env_secrets(config: dict[str, Any]) -> dict[str, Any]:
    """Fill secrets from the environment; values in the file win."""
    for section_name, key, env_var in ENV_SECRETS:
        section = config.setdefault(section_name, {})
        if section.get(key) is None and (secret := _env_secret(env_var)):
            section[key] = secret

    # Sentry stays off unless a DSN shows up somewhere
    dsn = _env_secret("SENTRY_DSN")
    if "sentry" in config:
        if config["sentry"].get("dsn") is None and dsn:
            config["sentry"]["dsn"] = dsn
    elif dsn:
        config["sentry"] = {"dsn": dsn}

    if url := os.environ.get("DATABASE_URL"):
        config.setdefault("database", {}).setdefault("url", url)

    return config


def load_config(path: Path | None = None) -> DeadmanConfig:
    """Load and validate configuration.

    Args:
        path: Explicit config file. When None, the search path is tried and,
            failing that, defaults plus environment secrets are used.

    Raises:
        FileNotFoundError: If an explicit path does not exist.
        ValueError: If the file is not valid TOML or fails validation.
    """
    raw: dict[str, Any] = {}
    if (config_file := find_config_file(path)) is not None:
        raw = tomllib.loads(config_file.expanduser().read_text(encoding="utf-8"))
    return DeadmanConfig.model_validate(_resolve_env_secrets(raw))


def get_default_config() -> DeadmanConfig:
    """Defaults only, ignoring files and environment."""
    return DeadmanConfig()
