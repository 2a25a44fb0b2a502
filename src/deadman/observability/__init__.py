"""Sentry error reporting for the scheduler.

Permanent delivery failures and persistence outages are logged at ERROR, so
each becomes a Sentry event; everything at INFO and above is kept as a
breadcrumb. Event messages pass through the log redactor so recipient
addresses and SMTP credentials never leave the host.
"""

import logging
from typing import TYPE_CHECKING, Any

from deadman.logging import SecretRedactor

if TYPE_CHECKING:
    from deadman.config import SentryConfig

logger = logging.getLogger(__name__)

_redactor = SecretRedactor()


def scrub_event(event: dict[str, Any], hint: dict[str, Any]) -> dict[str, Any]:
    """Sentry before_send hook: redact messages, log entries and exception values."""
    if isinstance(event.get("message"), str):
        event["message"] = _redactor.redact(event["message"])

    logentry = event.get("logentry")
    if isinstance(logentry, dict) and isinstance(logentry.get("message"), str):
        logentry["message"] = _redactor.redact(logentry["message"])

    for exception in event.get("exception", {}).get("values", []):
        if isinstance(exception.get("value"), str):
            exception["value"] = _redactor.redact(exception["value"])
    return event


def init_sentry(config: "SentryConfig") -> bool:
    """Initialize Sentry if a DSN is configured and the SDK is installed.

    Returns:
        True if Sentry was initialized, False otherwise.
    """
    if not config.dsn:
        logger.debug("sentry_disabled", extra={"sentry.reason": "no dsn"})
        return False

    try:
        import sentry_sdk
        from sentry_sdk.integrations.asyncio import AsyncioIntegration
        from sentry_sdk.integrations.logging import LoggingIntegration
    except ImportError:
        logger.warning(
            "sentry_disabled",
            extra={"sentry.reason": "sentry-sdk not installed (pip install deadman-switch[sentry])"},
        )
        return False

    sentry_sdk.init(
        dsn=config.dsn.get_secret_value(),
        environment=config.environment,
        release=config.release,
        traces_sample_rate=config.traces_sample_rate,
        send_default_pii=config.send_default_pii,
        debug=config.debug,
        before_send=scrub_event,
        integrations=[
            AsyncioIntegration(),
            LoggingIntegration(level=logging.INFO, event_level=logging.ERROR),
        ],
    )
    sentry_sdk.set_tag("service", "deadman-scheduler")

    logger.info("sentry_initialized", extra={"sentry.environment": config.environment})
    return True
