"""Per-tier limits applied when a switch is created."""

from dataclasses import dataclass
from typing import Literal

from deadman.errors import TierLimitExceeded
from deadman.switches.types import SwitchSpec

Tier = Literal["free", "premium", "lifetime"]


@dataclass(frozen=True)
class TierLimits:
    max_switches: int
    max_recipients: int
    max_subject_length: int
    max_body_length: int


TIER_LIMITS: dict[str, TierLimits] = {
    "free": TierLimits(
        max_switches=2,
        max_recipients=2,
        max_subject_length=125,
        max_body_length=2000,
    ),
    "premium": TierLimits(
        max_switches=100,
        max_recipients=10,
        max_subject_length=300,
        max_body_length=10000,
    ),
    "lifetime": TierLimits(
        max_switches=100,
        max_recipients=10,
        max_subject_length=300,
        max_body_length=10000,
    ),
}


def get_tier_limits(tier: str) -> TierLimits:
    try:
        return TIER_LIMITS[tier]
    except KeyError:
        raise ValueError(f"Unknown tier: {tier}") from None


def check_tier_limits(tier: str, spec: SwitchSpec, existing_switches: int) -> None:
    """Raise TierLimitExceeded if `spec` does not fit the owner's tier.

    Args:
        tier: Owner's tier name.
        spec: The switch about to be created.
        existing_switches: Count of the owner's non-terminal switches.
    """
    limits = get_tier_limits(tier)
    checks = [
        ("switch count", limits.max_switches, existing_switches + 1),
        ("recipient count", limits.max_recipients, len(spec.recipients)),
        ("subject length", limits.max_subject_length, len(spec.subject)),
        ("body length", limits.max_body_length, len(spec.body)),
    ]
    for name, allowed, requested in checks:
        if requested > allowed:
            raise TierLimitExceeded(tier, name, allowed, requested)
