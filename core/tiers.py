"""Shared tier and subscription constants used across the monetization services."""

from __future__ import annotations

from enum import Enum
from typing import Optional, Sequence


class UserTier(str, Enum):
    FREE = "free"
    PREMIUM = "premium"
    PRO = "pro"
    ENTERPRISE = "enterprise"

    def __str__(self) -> str:  # pragma: no cover - convenience
        return self.value

    @property
    def rank(self) -> int:
        return _TIER_RANKS[self]

    @property
    def is_paid(self) -> bool:
        return self is not UserTier.FREE

    def at_least(self, other: "UserTier") -> bool:
        """Return ``True`` when this tier sits at or above ``other`` in upgrade order."""
        return self.rank >= other.rank


_TIER_RANKS = {
    UserTier.FREE: 0,
    UserTier.PREMIUM: 1,
    UserTier.PRO: 2,
    UserTier.ENTERPRISE: 3,
}


class SubscriptionType(str, Enum):
    NONE = "none"
    TRIAL = "trial"
    MONTHLY = "monthly"
    ANNUAL = "annual"
    LIFETIME = "lifetime"

    def __str__(self) -> str:  # pragma: no cover - convenience
        return self.value

    @property
    def is_recurring(self) -> bool:
        return self in (SubscriptionType.MONTHLY, SubscriptionType.ANNUAL)


SUPPORTED_TIERS: Sequence[UserTier] = tuple(sorted(UserTier, key=lambda tier: tier.rank))
PAID_TIERS: Sequence[UserTier] = tuple(tier for tier in SUPPORTED_TIERS if tier.is_paid)


def normalize_tier(value: Optional[str | UserTier], *, default: UserTier = UserTier.FREE) -> UserTier:
    if isinstance(value, UserTier):
        return value
    if not value:
        return default
    lowered = str(value).strip().lower()
    try:
        return UserTier(lowered)
    except ValueError:
        return default


def normalize_subscription_type(
    value: Optional[str | SubscriptionType],
    *,
    default: SubscriptionType = SubscriptionType.NONE,
) -> SubscriptionType:
    if isinstance(value, SubscriptionType):
        return value
    if not value:
        return default
    try:
        return SubscriptionType(str(value).strip().lower())
    except ValueError:
        return default


__all__ = [
    "PAID_TIERS",
    "SUPPORTED_TIERS",
    "SubscriptionType",
    "UserTier",
    "normalize_subscription_type",
    "normalize_tier",
]
