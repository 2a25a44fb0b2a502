"""Switch subsystem: deadlines, lapse detection and delivery.

Public API:
- SwitchStore: SQLAlchemy-backed persistence with conditional updates
- DeadlineScheduler: Tick loop that lapses switches and delivers them
- RetryPolicy: Exponential backoff with a retry budget

Types:
- SwitchSpec / RecipientSpec: Input for creating a switch
- SwitchRecord: Read-only snapshot of a switch
- Delivered / Failed: attempt_delivery outcomes
- TickResult: Summary of one scheduler pass
"""

from deadman.switches.retry import RetryPolicy
from deadman.switches.scheduler import DeadlineScheduler, next_cron_time
from deadman.switches.store import SwitchStore
from deadman.switches.tiers import (
    TIER_LIMITS,
    TierLimits,
    check_tier_limits,
    get_tier_limits,
)
from deadman.switches.types import (
    Delivered,
    DeliveryClaim,
    DeliveryOutcome,
    Failed,
    OutboundMessage,
    RecipientSpec,
    SwitchRecord,
    SwitchSpec,
    SwitchStatus,
    TickResult,
)

__all__ = [
    "TIER_LIMITS",
    "DeadlineScheduler",
    "Delivered",
    "DeliveryClaim",
    "DeliveryOutcome",
    "Failed",
    "OutboundMessage",
    "RecipientSpec",
    "RetryPolicy",
    "SwitchRecord",
    "SwitchSpec",
    "SwitchStatus",
    "SwitchStore",
    "TickResult",
    "TierLimits",
    "check_tier_limits",
    "get_tier_limits",
    "next_cron_time",
]
