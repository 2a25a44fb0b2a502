"""Configuration models using Pydantic."""

import logging
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, SecretStr, model_validator

from deadman.config.paths import get_database_path
from deadman.errors import DeadmanError

logger = logging.getLogger(__name__)


class DatabaseConfig(BaseModel):
    """Configuration for the switch store.

    `url` takes precedence over `path` when both are set.
    """

    url: str | None = None
    path: Path = Field(default_factory=get_database_path)


class RetryConfig(BaseModel):
    """Backoff policy for failed deliveries."""

    max_retries: int = Field(default=3, ge=0)
    base_delay_seconds: float = Field(default=300.0, gt=0)  # 5 minutes
    max_delay_seconds: float = Field(default=21600.0, gt=0)  # 6 hours

    @model_validator(mode="after")
    def _check_bounds(self) -> "RetryConfig":
        if self.max_delay_seconds < self.base_delay_seconds:
            raise ValueError("max_delay_seconds must be >= base_delay_seconds")
        return self


class SchedulerConfig(BaseModel):
    """Configuration for the deadline scheduler loop.

    When `cron` is set, ticks follow the cron expression and
    `poll_interval` is ignored.
    """

    poll_interval: float = Field(default=60.0, gt=0)
    cron: str | None = None
    timezone: str = "UTC"
    batch_size: int = Field(default=100, gt=0)
    claim_timeout_seconds: float = Field(default=600.0, gt=0)
    cleanup_cron: str | None = "0 2 * * *"
    check_in_retention_days: int = Field(default=90, gt=0)
    retry: RetryConfig = Field(default_factory=RetryConfig)


class EmailConfig(BaseModel):
    """Configuration for outbound email.

    With `backend = "log"` messages are written to the log instead of sent,
    which is the behaviour when no mail server is configured.
    """

    backend: Literal["smtp", "log"] = "log"
    host: str | None = None
    port: int = 587
    username: str | None = None
    password: SecretStr | None = None
    use_tls: bool = True
    timeout: float = 30.0
    from_address: str = "noreply@deadmansswitch.com"

    @model_validator(mode="after")
    def _require_host_for_smtp(self) -> "EmailConfig":
        if self.backend == "smtp" and not self.host:
            raise ValueError("email.host is required when backend is 'smtp'")
        return self


class SecurityConfig(BaseModel):
    """Configuration for payload encryption at rest."""

    encryption_key: SecretStr | None = None


class SentryConfig(BaseModel):
    """Configuration for Sentry error reporting."""

    dsn: SecretStr | None = None
    environment: str = "production"
    release: str | None = None
    traces_sample_rate: float = 0.0
    send_default_pii: bool = False
    debug: bool = False


class ConfigError(DeadmanError):
    """Configuration error."""


class DeadmanConfig(BaseModel):
    """Root configuration model."""

    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    email: EmailConfig = Field(default_factory=EmailConfig)
    security: SecurityConfig = Field(default_factory=SecurityConfig)
    sentry: SentryConfig | None = None

    def resolve_encryption_key(self) -> str:
        """Return the payload encryption key.

        Raises:
            ConfigError: If no key is configured.
        """
        key = self.security.encryption_key
        if key is None or not key.get_secret_value():
            raise ConfigError(
                "No encryption key configured. Set security.encryption_key "
                "in the config file or DEADMAN_ENCRYPTION_KEY"
            )
        return key.get_secret_value()
