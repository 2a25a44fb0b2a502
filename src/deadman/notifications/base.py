"""Abstract notifier interface for delivering switch messages."""

from abc import ABC, abstractmethod

from deadman.switches.types import OutboundMessage


class Notifier(ABC):
    """Delivers one message to one recipient.

    `deliver` returns on success. Failures raise TransientDeliveryError when
    a retry may succeed, or PermanentDeliveryError when it will not; any
    other exception is a bug and propagates.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Backend name used in logs."""
        ...

    @abstractmethod
    async def deliver(self, message: OutboundMessage) -> None:
        """Deliver a message."""
        ...
