"""User entitlement record and its time-based validity queries.

Nothing here is stored as "is premium": validity is always derived from the
subscription/trial timestamps at the moment of the query, so expiry needs no
background timer.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Mapping, Optional

from core.tiers import SubscriptionType, UserTier

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def month_start(moment: datetime) -> datetime:
    return moment.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Strict ISO-8601 parser: ``None`` passes through, garbage raises ``ValueError``."""
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValueError(f"timestamp must be a string, got {type(value).__name__}")
    return ensure_aware(datetime.fromisoformat(value))


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass(frozen=True, slots=True)
class UsageCounter:
    """Per-calendar-month counter that resets lazily when read in a later month."""

    count: int
    period_start: datetime

    @classmethod
    def fresh(cls, now: datetime) -> "UsageCounter":
        return cls(count=0, period_start=month_start(now))

    def is_stale(self, now: datetime) -> bool:
        start = self.period_start.astimezone(now.tzinfo) if now.tzinfo else self.period_start
        return (start.year, start.month) < (now.year, now.month)

    def value_at(self, now: datetime) -> int:
        return 0 if self.is_stale(now) else self.count

    def rolled(self, now: datetime) -> "UsageCounter":
        return UsageCounter.fresh(now) if self.is_stale(now) else self

    def incremented(self, now: datetime) -> "UsageCounter":
        current = self.rolled(now)
        return UsageCounter(count=current.count + 1, period_start=current.period_start)

    def to_dict(self) -> Dict[str, Any]:
        return {"count": self.count, "periodStart": self.period_start.isoformat()}

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "UsageCounter":
        count = payload["count"]
        if isinstance(count, bool) or not isinstance(count, int) or count < 0:
            raise ValueError(f"invalid usage count: {count!r}")
        period_start = parse_timestamp(payload["periodStart"])
        if period_start is None:
            raise ValueError("usage counter is missing periodStart")
        return cls(count=count, period_start=period_start)


@dataclass(frozen=True, slots=True)
class UserEntitlements:
    tier: UserTier = UserTier.FREE
    subscription_type: SubscriptionType = SubscriptionType.NONE
    subscription_id: Optional[str] = None
    original_purchase_id: Optional[str] = None
    product_id: Optional[str] = None
    subscription_start_date: Optional[datetime] = None
    subscription_end_date: Optional[datetime] = None
    trial_start: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    is_trial_used: bool = False
    cancelled_at: Optional[datetime] = None
    voice_notes: UsageCounter = field(default_factory=lambda: UsageCounter.fresh(utcnow()))
    exports: UsageCounter = field(default_factory=lambda: UsageCounter.fresh(utcnow()))

    @classmethod
    def free(cls, now: datetime) -> "UserEntitlements":
        return cls(voice_notes=UsageCounter.fresh(now), exports=UsageCounter.fresh(now))

    # ------------------------------------------------------------------
    # Validity
    # ------------------------------------------------------------------

    def is_premium_at(self, now: datetime) -> bool:
        kind = self.subscription_type
        if kind is SubscriptionType.LIFETIME:
            return True
        if kind.is_recurring:
            return self.subscription_end_date is not None and now < self.subscription_end_date
        if kind is SubscriptionType.TRIAL:
            return self.trial_end is not None and now < self.trial_end
        return False

    def has_active_subscription_at(self, now: datetime) -> bool:
        if self.subscription_type is SubscriptionType.TRIAL:
            return False
        return self.is_premium_at(now)

    def is_in_trial_at(self, now: datetime) -> bool:
        return self.subscription_type is SubscriptionType.TRIAL and self.is_premium_at(now)

    def is_trial_expired_at(self, now: datetime) -> bool:
        return self.subscription_type is SubscriptionType.TRIAL and not self.is_premium_at(now)

    def is_subscription_expired_at(self, now: datetime) -> bool:
        if self.subscription_type.is_recurring:
            return self.subscription_end_date is None or now >= self.subscription_end_date
        return False

    @property
    def can_start_trial(self) -> bool:
        return not self.is_trial_used and self.subscription_type is SubscriptionType.NONE

    def trial_days_remaining_at(self, now: datetime) -> int:
        if not self.is_in_trial_at(now) or self.trial_end is None:
            return 0
        return max((self.trial_end - now).days, 0)

    def effective_tier_at(self, now: datetime) -> UserTier:
        return self.tier if self.is_premium_at(now) else UserTier.FREE

    # ------------------------------------------------------------------
    # Usage
    # ------------------------------------------------------------------

    def voice_notes_at(self, now: datetime) -> int:
        return self.voice_notes.value_at(now)

    def exports_at(self, now: datetime) -> int:
        return self.exports.value_at(now)

    def with_rolled_usage(self, now: datetime) -> "UserEntitlements":
        return replace(self, voice_notes=self.voice_notes.rolled(now), exports=self.exports.rolled(now))

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tier": self.tier.value,
            "subscriptionType": self.subscription_type.value,
            "subscriptionId": self.subscription_id,
            "originalPurchaseId": self.original_purchase_id,
            "productId": self.product_id,
            "subscriptionStartDate": format_timestamp(self.subscription_start_date),
            "subscriptionEndDate": format_timestamp(self.subscription_end_date),
            "trialStart": format_timestamp(self.trial_start),
            "trialEnd": format_timestamp(self.trial_end),
            "isTrialUsed": self.is_trial_used,
            "cancelledAt": format_timestamp(self.cancelled_at),
            "usage": {
                "voiceNotes": self.voice_notes.to_dict(),
                "exports": self.exports.to_dict(),
            },
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "UserEntitlements":
        """Decode a persisted record; any malformed field raises ``ValueError``/``KeyError``/``TypeError``."""
        if not isinstance(payload, Mapping):
            raise TypeError("entitlements payload must be an object")
        usage = payload["usage"]
        if not isinstance(usage, Mapping):
            raise TypeError("usage must be an object")
        record = cls(
            tier=UserTier(payload["tier"]),
            subscription_type=SubscriptionType(payload["subscriptionType"]),
            subscription_id=_optional_text(payload.get("subscriptionId")),
            original_purchase_id=_optional_text(payload.get("originalPurchaseId")),
            product_id=_optional_text(payload.get("productId")),
            subscription_start_date=parse_timestamp(payload.get("subscriptionStartDate")),
            subscription_end_date=parse_timestamp(payload.get("subscriptionEndDate")),
            trial_start=parse_timestamp(payload.get("trialStart")),
            trial_end=parse_timestamp(payload.get("trialEnd")),
            is_trial_used=bool(payload.get("isTrialUsed", False)),
            cancelled_at=parse_timestamp(payload.get("cancelledAt")),
            voice_notes=UsageCounter.from_dict(usage["voiceNotes"]),
            exports=UsageCounter.from_dict(usage["exports"]),
        )
        if record.subscription_type is SubscriptionType.LIFETIME and record.subscription_end_date is not None:
            raise ValueError("lifetime entitlements cannot carry an end date")
        return record


def _optional_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


class EntitlementStore:
    """Holds the current record and answers validity questions against the clock."""

    def __init__(self, *, clock: Optional[Clock] = None, record: Optional[UserEntitlements] = None) -> None:
        self._clock = clock or utcnow
        self._record = record or UserEntitlements.free(self.now())

    def now(self) -> datetime:
        return ensure_aware(self._clock())

    @property
    def current(self) -> UserEntitlements:
        return self._record

    def replace(self, record: UserEntitlements) -> None:
        self._record = record

    def reset(self) -> UserEntitlements:
        self._record = UserEntitlements.free(self.now())
        return self._record

    def is_premium_now(self) -> bool:
        return self._record.is_premium_at(self.now())

    def is_trial_active_now(self) -> bool:
        return self._record.is_in_trial_at(self.now())

    def effective_tier_now(self) -> UserTier:
        return self._record.effective_tier_at(self.now())


__all__ = [
    "Clock",
    "EntitlementStore",
    "UsageCounter",
    "UserEntitlements",
    "ensure_aware",
    "format_timestamp",
    "month_start",
    "parse_timestamp",
    "utcnow",
]
