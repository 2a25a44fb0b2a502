"""Notifier that logs messages instead of sending them."""

import logging

from deadman.notifications.base import Notifier
from deadman.switches.types import OutboundMessage

logger = logging.getLogger(__name__)


class LogNotifier(Notifier):
    """Used when no mail server is configured.

    Only ids are logged; the payload is encrypted at rest and stays out of
    log files.
    """

    @property
    def name(self) -> str:
        return "log"

    async def deliver(self, message: OutboundMessage) -> None:
        logger.info(
            "email_simulated",
            extra={
                "switch.id": message.switch_id,
                "recipient.id": message.recipient_id,
            },
        )
