"""Error taxonomy for the switch core.

Delivery errors are raised by notifiers; the scheduler turns them into
switch state (retry with backoff, or frozen in delivery-failed). Store
errors are raised by SwitchStore.
"""


class DeadmanError(Exception):
    """Base class for all service errors."""


class DeliveryError(DeadmanError):
    """A notifier could not deliver a message."""


class TransientDeliveryError(DeliveryError):
    """Delivery failed for a reason that may clear up (network, SMTP 4xx).

    The switch stays lapsed and is retried after a backoff delay.
    """


class PermanentDeliveryError(DeliveryError):
    """Delivery failed for a reason retrying will not fix.

    Bad recipient, rejected sender, authentication failure. The switch is
    frozen in delivery-failed and surfaced to the operator.
    """


class ConcurrencyConflict(DeadmanError):
    """A conditional update matched no row: another actor changed the switch first.

    Safe to drop. The other actor's view of the switch wins.
    """

    def __init__(self, switch_id: str, operation: str, detail: str = "") -> None:
        self.switch_id = switch_id
        self.operation = operation
        message = f"{operation} lost race on switch {switch_id}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class PersistenceUnavailable(DeadmanError):
    """The database could not be reached or rejected the operation.

    The current scan pass is aborted and retried on the next tick.
    """


class SwitchNotFound(DeadmanError):
    """No switch exists with the given id."""

    def __init__(self, switch_id: str) -> None:
        self.switch_id = switch_id
        super().__init__(f"Switch not found: {switch_id}")


class TierLimitExceeded(DeadmanError):
    """Creating the switch would exceed the owner's tier limits."""

    def __init__(self, tier: str, limit: str, allowed: int, requested: int) -> None:
        self.tier = tier
        self.limit = limit
        self.allowed = allowed
        self.requested = requested
        super().__init__(
            f"{limit} exceeds {tier} tier limit ({requested} > {allowed})"
        )
