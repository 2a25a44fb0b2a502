"""Notification senders.

Public API:
- Notifier: Abstract delivery interface consumed by the scheduler
- SmtpNotifier: Email over SMTP
- LogNotifier: Logs instead of sending, for unconfigured mail
- create_notifier: Build the notifier selected by EmailConfig
"""

import logging

from deadman.config.models import EmailConfig
from deadman.notifications.base import Notifier
from deadman.notifications.email import SmtpNotifier, classify_smtp_error, compose_message
from deadman.notifications.log import LogNotifier

logger = logging.getLogger(__name__)


def create_notifier(config: EmailConfig) -> Notifier:
    """Create the notifier for the configured email backend."""
    if config.backend == "smtp":
        return SmtpNotifier(config)
    logger.warning("email_not_configured", extra={"email.backend": config.backend})
    return LogNotifier()


__all__ = [
    "LogNotifier",
    "Notifier",
    "SmtpNotifier",
    "classify_smtp_error",
    "compose_message",
    "create_notifier",
]
