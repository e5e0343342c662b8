"""Trial lifecycle: eligibility, start, extension, conversion, cancellation and lazy expiry.

The active trial and the append-only history are persisted under
``trial_info``/``trial_history``. The paid/trial entitlement itself stays with
:class:`PricingTierService`; this service drives it through the trial hooks so
``is_premium_now`` and the trial record never disagree.
"""

from __future__ import annotations

import re
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence

from core.env import env_int
from core.logging import get_logger
from core.tiers import SubscriptionType, UserTier, normalize_subscription_type, normalize_tier
from services.analytics import AnalyticsDispatcher, MonetizationEvents
from services.entitlement_store import format_timestamp, parse_timestamp
from services.observable import ChangeNotifier
from services.pricing_tier_service import PricingTierService
from services.state_store import (
    CONVERSION_ATTEMPTS_KEY,
    TRIAL_HISTORY_KEY,
    TRIAL_INFO_KEY,
    KeyValueStore,
    load_json_record,
    remove_record,
    save_json_record,
)

logger = get_logger(__name__)

TRIAL_STANDARD_PREMIUM_DAYS = env_int("TRIAL_STANDARD_PREMIUM_DAYS", 7, minimum=1)
TRIAL_STANDARD_PRO_DAYS = env_int("TRIAL_STANDARD_PRO_DAYS", 14, minimum=1)
TRIAL_PROMO_ATTEMPT_THRESHOLD = env_int("TRIAL_PROMO_ATTEMPT_THRESHOLD", 2, minimum=0)

PROMOTIONAL_TRIAL_DAYS = 14
PROMOTIONAL_OFFER_VALID_DAYS = 7
PROMOTIONAL_PROMO_CODE = "TRYEXTENDED"
WINBACK_TRIAL_DAYS = 10
WINBACK_OFFER_VALID_DAYS = 30
WINBACK_PROMO_CODE = "WELCOMEBACK"

_PROMO_CODE_PATTERN = re.compile(r"^[A-Z0-9_-]{4,24}$")
_ABOUT_TO_EXPIRE_DAYS = 2


class TrialState(str, Enum):
    ACTIVE = "active"
    EXTENDED = "extended"
    CONVERTED = "converted"
    CANCELLED = "cancelled"
    EXPIRED = "expired"

    @property
    def is_open(self) -> bool:
        return self in (TrialState.ACTIVE, TrialState.EXTENDED)


class TrialType(str, Enum):
    STANDARD = "standard"
    PROMOTIONAL = "promotional"
    WINBACK = "winback"


def normalize_promo_code(value: Optional[str]) -> Optional[str]:
    """Upper-case ``value``; raises ``ValueError`` when it is not a well-formed code."""
    if value is None:
        return None
    code = value.strip().upper()
    if not _PROMO_CODE_PATTERN.match(code):
        raise ValueError(f"malformed promo code: {value!r}")
    return code


@dataclass(frozen=True, slots=True)
class TrialConfig:
    """A trial offer the user may accept."""

    tier: UserTier
    duration_days: int
    trial_type: TrialType = TrialType.STANDARD
    promo_code: Optional[str] = None
    valid_until: Optional[datetime] = None
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def is_valid_at(self, now: datetime) -> bool:
        return self.valid_until is None or now < self.valid_until

    @property
    def display_name(self) -> str:
        if self.trial_type is TrialType.PROMOTIONAL:
            return f"Special {self.duration_days}-Day {self.tier.value.upper()} Trial"
        if self.trial_type is TrialType.WINBACK:
            return f"Welcome Back - {self.duration_days} Days Free"
        return f"{self.duration_days}-Day {self.tier.value.upper()} Trial"

    @property
    def description(self) -> str:
        if self.trial_type is TrialType.PROMOTIONAL:
            return f"Limited time offer - Extended {self.tier.value} trial"
        if self.trial_type is TrialType.WINBACK:
            return f"We miss you! Enjoy {self.tier.value} features again"
        return f"Try all {self.tier.value} features free for {self.duration_days} days"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tier": self.tier.value,
            "durationDays": self.duration_days,
            "type": self.trial_type.value,
            "promoCode": self.promo_code,
            "validUntil": format_timestamp(self.valid_until),
            "displayName": self.display_name,
            "description": self.description,
            "metadata": dict(self.metadata),
        }


@dataclass(frozen=True, slots=True)
class TrialInfo:
    tier: UserTier
    trial_type: TrialType
    started_at: datetime
    expires_at: datetime
    original_duration_days: int
    extension_days: int = 0
    state: TrialState = TrialState.ACTIVE
    promo_code: Optional[str] = None
    ended_at: Optional[datetime] = None

    @property
    def total_duration_days(self) -> int:
        return self.original_duration_days + self.extension_days

    def is_expired_at(self, now: datetime) -> bool:
        return now >= self.expires_at

    def days_remaining_at(self, now: datetime) -> int:
        if self.is_expired_at(now):
            return 0
        return (self.expires_at - now).days + 1

    def progress_percentage_at(self, now: datetime) -> float:
        total = (self.expires_at - self.started_at).total_seconds()
        if total <= 0:
            return 100.0
        elapsed = (now - self.started_at).total_seconds()
        return max(0.0, min(100.0, elapsed / total * 100))

    def is_about_to_expire_at(self, now: datetime) -> bool:
        remaining = self.days_remaining_at(now)
        return 0 < remaining <= _ABOUT_TO_EXPIRE_DAYS

    def closed(self, state: TrialState, now: datetime) -> "TrialInfo":
        return replace(self, state=state, ended_at=min(now, self.expires_at) if state is TrialState.EXPIRED else now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tier": self.tier.value,
            "type": self.trial_type.value,
            "startedAt": self.started_at.isoformat(),
            "expiresAt": self.expires_at.isoformat(),
            "originalDurationDays": self.original_duration_days,
            "extensionDays": self.extension_days,
            "state": self.state.value,
            "promoCode": self.promo_code,
            "endedAt": format_timestamp(self.ended_at),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "TrialInfo":
        if not isinstance(payload, Mapping):
            raise TypeError("trial payload must be an object")
        started_at = parse_timestamp(payload["startedAt"])
        expires_at = parse_timestamp(payload["expiresAt"])
        if started_at is None or expires_at is None:
            raise ValueError("trial record is missing its time window")
        original = payload["originalDurationDays"]
        extension = payload.get("extensionDays", 0)
        for value in (original, extension):
            if isinstance(value, bool) or not isinstance(value, int) or value < 0:
                raise ValueError(f"invalid trial duration: {value!r}")
        return cls(
            tier=UserTier(payload["tier"]),
            trial_type=TrialType(payload["type"]),
            started_at=started_at,
            expires_at=expires_at,
            original_duration_days=original,
            extension_days=extension,
            state=TrialState(payload["state"]),
            promo_code=payload.get("promoCode"),
            ended_at=parse_timestamp(payload.get("endedAt")),
        )


class TrialService(ChangeNotifier):
    def __init__(
        self,
        store: KeyValueStore,
        pricing: PricingTierService,
        *,
        analytics: Optional[AnalyticsDispatcher] = None,
    ) -> None:
        super().__init__()
        self._store = store
        self._pricing = pricing
        self._analytics = analytics or AnalyticsDispatcher()
        self._lock = threading.RLock()
        self._current: Optional[TrialInfo] = None
        self._history: List[TrialInfo] = []
        self._conversion_attempts = 0

    # ------------------------------------------------------------------
    # Lifecycle / persistence
    # ------------------------------------------------------------------

    def initialize(self) -> None:
        with self._lock:
            if self.is_initialized:
                return
            self._current = self._load_current()
            self._history = self._load_history()
            self._conversion_attempts = self._load_conversion_attempts()
            self._mark_initialized()
        self._sync()

    def _load_current(self) -> Optional[TrialInfo]:
        try:
            payload = load_json_record(self._store, TRIAL_INFO_KEY)
            if payload is None:
                return None
            trial = TrialInfo.from_dict(payload)
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("Corrupt active trial record discarded: %s", exc)
            remove_record(self._store, TRIAL_INFO_KEY)
            return None
        if not trial.state.is_open:
            logger.warning("Active trial slot held a %s trial; moving it to history.", trial.state.value)
            self._history.append(trial)
            return None
        return trial

    def _load_history(self) -> List[TrialInfo]:
        history = list(self._history)
        try:
            payload = load_json_record(self._store, TRIAL_HISTORY_KEY)
            if payload is None:
                return history
            if not isinstance(payload, list):
                raise TypeError("trial history must be a list")
            return [TrialInfo.from_dict(item) for item in payload] + history
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("Corrupt trial history reset: %s", exc)
            save_json_record(self._store, TRIAL_HISTORY_KEY, [item.to_dict() for item in history])
            return history

    def _load_conversion_attempts(self) -> int:
        try:
            payload = load_json_record(self._store, CONVERSION_ATTEMPTS_KEY)
        except ValueError as exc:
            logger.warning("Corrupt conversion attempt counter reset: %s", exc)
            payload = 0
            save_json_record(self._store, CONVERSION_ATTEMPTS_KEY, 0)
        if payload is None:
            return 0
        if isinstance(payload, bool) or not isinstance(payload, int) or payload < 0:
            logger.warning("Invalid conversion attempt counter reset: %r", payload)
            save_json_record(self._store, CONVERSION_ATTEMPTS_KEY, 0)
            return 0
        return payload

    def _persist_current(self) -> None:
        if self._current is None:
            remove_record(self._store, TRIAL_INFO_KEY)
        else:
            save_json_record(self._store, TRIAL_INFO_KEY, self._current.to_dict())

    def _persist_history(self) -> None:
        save_json_record(self._store, TRIAL_HISTORY_KEY, [item.to_dict() for item in self._history])

    def _close_current(self, trial: TrialInfo, state: TrialState, now: datetime) -> TrialInfo:
        closed = trial.closed(state, now)
        self._history.append(closed)
        self._current = None
        self._persist_current()
        self._persist_history()
        return closed

    def _expire_if_due(self) -> bool:
        trial = self._current
        now = self._pricing.now()
        if trial is None or not trial.is_expired_at(now):
            return False
        expired = self._close_current(trial, TrialState.EXPIRED, now)
        logger.info("trial.expired", extra={"tier": expired.tier.value, "trial_type": expired.trial_type.value})
        self._analytics.emit(
            MonetizationEvents.TRIAL_EXPIRED,
            {
                "tier": expired.tier.value,
                "trial_type": expired.trial_type.value,
                "duration_days": expired.total_duration_days,
            },
        )
        return True

    def _sync(self) -> None:
        """Apply lazy expiry; every public entry point goes through here."""
        self._require_initialized()
        with self._lock:
            expired = self._expire_if_due()
        if expired:
            self._notify_listeners()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def current_trial(self) -> Optional[TrialInfo]:
        self._sync()
        return self._current

    @property
    def trial_history(self) -> Sequence[TrialInfo]:
        self._sync()
        return tuple(self._history)

    @property
    def conversion_attempts(self) -> int:
        self._require_initialized()
        return self._conversion_attempts

    def has_active_trial(self) -> bool:
        return self.current_trial is not None

    def is_trial_about_to_expire(self) -> bool:
        trial = self.current_trial
        return trial is not None and trial.is_about_to_expire_at(self._pricing.now())

    def _consumed(self, tier: UserTier, trial_type: TrialType) -> bool:
        trials = list(self._history) + ([self._current] if self._current else [])
        if trial_type is TrialType.WINBACK:
            return any(item.trial_type is TrialType.WINBACK for item in trials)
        return any(item.tier is tier and item.trial_type is trial_type for item in trials)

    def _has_unconverted_expiry(self) -> bool:
        return any(item.state is TrialState.EXPIRED for item in self._history)

    def _eligibility_error(self, tier: UserTier, trial_type: TrialType) -> Optional[str]:
        if self._current is not None:
            return "trial_already_active"
        if not tier.is_paid:
            return "invalid_tier"
        if self._consumed(tier, trial_type):
            return "trial_already_used"
        if trial_type is TrialType.PROMOTIONAL and self._conversion_attempts < TRIAL_PROMO_ATTEMPT_THRESHOLD:
            return "not_enough_conversion_attempts"
        if trial_type is TrialType.WINBACK and not self._has_unconverted_expiry():
            return "no_expired_trial"
        return None

    def get_available_trials(self) -> List[TrialConfig]:
        self._sync()
        with self._lock:
            if self._current is not None:
                return []
            now = self._pricing.now()
            current_tier = self._pricing.current_tier
            offers: List[TrialConfig] = []
            for tier, days in ((UserTier.PREMIUM, TRIAL_STANDARD_PREMIUM_DAYS), (UserTier.PRO, TRIAL_STANDARD_PRO_DAYS)):
                if tier.rank > current_tier.rank and self._eligibility_error(tier, TrialType.STANDARD) is None:
                    offers.append(TrialConfig(tier=tier, duration_days=days))
            if (
                UserTier.PREMIUM.rank > current_tier.rank
                and self._eligibility_error(UserTier.PREMIUM, TrialType.PROMOTIONAL) is None
            ):
                offers.append(
                    TrialConfig(
                        tier=UserTier.PREMIUM,
                        duration_days=PROMOTIONAL_TRIAL_DAYS,
                        trial_type=TrialType.PROMOTIONAL,
                        promo_code=PROMOTIONAL_PROMO_CODE,
                        valid_until=now + timedelta(days=PROMOTIONAL_OFFER_VALID_DAYS),
                        metadata={"campaign": "conversion_boost"},
                    )
                )
            if (
                UserTier.PREMIUM.rank > current_tier.rank
                and self._eligibility_error(UserTier.PREMIUM, TrialType.WINBACK) is None
            ):
                offers.append(
                    TrialConfig(
                        tier=UserTier.PREMIUM,
                        duration_days=WINBACK_TRIAL_DAYS,
                        trial_type=TrialType.WINBACK,
                        promo_code=WINBACK_PROMO_CODE,
                        valid_until=now + timedelta(days=WINBACK_OFFER_VALID_DAYS),
                        metadata={"campaign": "winback"},
                    )
                )
            return offers

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def start_trial(
        self,
        tier: UserTier | str,
        duration_days: int,
        trial_type: TrialType | str = TrialType.STANDARD,
        promo_code: Optional[str] = None,
    ) -> bool:
        self._sync()
        target_tier = normalize_tier(tier)
        try:
            kind = TrialType(trial_type)
            code = normalize_promo_code(promo_code)
        except ValueError as exc:
            logger.info("trial.rejected", extra={"reason": "invalid_input", "detail": str(exc)})
            return False
        if isinstance(duration_days, bool) or not isinstance(duration_days, int) or duration_days <= 0:
            logger.info("trial.rejected", extra={"reason": "invalid_duration", "duration_days": duration_days})
            return False

        with self._lock:
            reason = self._eligibility_error(target_tier, kind)
            if reason is not None:
                logger.info("trial.rejected", extra={"reason": reason, "tier": target_tier.value, "trial_type": kind.value})
                return False
            now = self._pricing.now()
            expires_at = now + timedelta(days=duration_days)
            if not self._pricing.start_trial_entitlement(target_tier, now, expires_at):
                logger.info("trial.rejected", extra={"reason": "entitlement_refused", "tier": target_tier.value})
                return False
            self._current = TrialInfo(
                tier=target_tier,
                trial_type=kind,
                started_at=now,
                expires_at=expires_at,
                original_duration_days=duration_days,
                promo_code=code,
            )
            self._persist_current()
            self._analytics.emit(
                MonetizationEvents.TRIAL_STARTED,
                {
                    "tier": target_tier.value,
                    "trial_type": kind.value,
                    "duration_days": duration_days,
                    "promo_code": code,
                    "expires_at": expires_at.isoformat(),
                },
            )
        logger.info("trial.started", extra={"tier": target_tier.value, "trial_type": kind.value})
        self._notify_listeners()
        return True

    def start_trial_from_offer(self, config: TrialConfig) -> bool:
        if not config.is_valid_at(self._pricing.now()):
            logger.info("trial.rejected", extra={"reason": "offer_expired", "trial_type": config.trial_type.value})
            return False
        return self.start_trial(config.tier, config.duration_days, config.trial_type, config.promo_code)

    def extend_trial(self, days: int, reason: Optional[str] = None) -> bool:
        """Extend an ``active`` trial once; an already extended trial cannot be extended again."""
        self._sync()
        if isinstance(days, bool) or not isinstance(days, int) or days <= 0:
            return False
        with self._lock:
            trial = self._current
            if trial is None or trial.state is not TrialState.ACTIVE:
                return False
            new_expiry = trial.expires_at + timedelta(days=days)
            if not self._pricing.extend_trial_entitlement(new_expiry):
                return False
            self._current = replace(
                trial,
                expires_at=new_expiry,
                extension_days=trial.extension_days + days,
                state=TrialState.EXTENDED,
            )
            self._persist_current()
            self._analytics.emit(
                MonetizationEvents.TRIAL_EXTENDED,
                {
                    "tier": trial.tier.value,
                    "additional_days": days,
                    "reason": reason or "manual_extension",
                    "expires_at": new_expiry.isoformat(),
                },
            )
        self._notify_listeners()
        return True

    def convert_trial(
        self,
        target_tier: UserTier | str,
        *,
        subscription_type: SubscriptionType | str = SubscriptionType.MONTHLY,
        product_id: Optional[str] = None,
        subscription_id: Optional[str] = None,
        end_date: Optional[datetime] = None,
    ) -> bool:
        self._sync()
        tier = normalize_tier(target_tier)
        with self._lock:
            trial = self._current
            if trial is None or not trial.state.is_open:
                return False
            kind = normalize_subscription_type(subscription_type)
            product = product_id or f"{tier.value}_{kind.value}"
            if not self._pricing.activate_subscription(kind, product, subscription_id, end_date, tier=tier):
                return False
            now = self._pricing.now()
            converted = self._close_current(trial, TrialState.CONVERTED, now)
            self._analytics.emit(
                MonetizationEvents.TRIAL_CONVERTED,
                {
                    "trial_tier": converted.tier.value,
                    "subscribed_tier": tier.value,
                    "trial_duration_days": converted.total_duration_days,
                    "conversion_day": (now - converted.started_at).days,
                },
            )
        logger.info("trial.converted", extra={"trial_tier": converted.tier.value, "subscribed_tier": tier.value})
        self._notify_listeners()
        return True

    def cancel_trial(self, reason: Optional[str] = None) -> bool:
        self._sync()
        with self._lock:
            trial = self._current
            if trial is None or not trial.state.is_open:
                return False
            if not self._pricing.revoke_trial_entitlement():
                logger.debug("No trial entitlement to revoke while cancelling %s trial", trial.tier.value)
            now = self._pricing.now()
            cancelled = self._close_current(trial, TrialState.CANCELLED, now)
            self._analytics.emit(
                MonetizationEvents.TRIAL_CANCELLED,
                {
                    "tier": cancelled.tier.value,
                    "reason": reason or "user_cancelled",
                    "days_used": (now - cancelled.started_at).days,
                },
            )
        self._notify_listeners()
        return True

    def record_conversion_attempt(self, context: Optional[str] = None) -> int:
        """Count a pricing view that did not convert."""
        self._sync()
        with self._lock:
            self._conversion_attempts += 1
            attempts = self._conversion_attempts
            save_json_record(self._store, CONVERSION_ATTEMPTS_KEY, attempts)
            self._analytics.emit(
                MonetizationEvents.CONVERSION_ATTEMPTED,
                {
                    "context": context or "unknown",
                    "attempt_number": attempts,
                    "has_active_trial": self._current is not None,
                },
            )
        self._notify_listeners()
        return attempts

    def clear_data(self) -> None:
        self._require_initialized()
        with self._lock:
            self._current = None
            self._history = []
            self._conversion_attempts = 0
            for key in (TRIAL_INFO_KEY, TRIAL_HISTORY_KEY, CONVERSION_ATTEMPTS_KEY):
                remove_record(self._store, key)
        self._notify_listeners()

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def get_conversion_recommendations(self) -> List[str]:
        trial = self.current_trial
        if trial is None:
            return []
        now = self._pricing.now()
        recommendations: List[str] = []
        if trial.is_about_to_expire_at(now):
            recommendations.append(f"Your trial expires in {trial.days_remaining_at(now)} day(s)")
            recommendations.append(f"Upgrade now to keep all your {trial.tier.value} features")
        progress = trial.progress_percentage_at(now)
        if progress > 50:
            recommendations.append(
                f"You've been using {trial.tier.value} features for {round(progress)}% of your trial"
            )
        if self._conversion_attempts >= TRIAL_PROMO_ATTEMPT_THRESHOLD:
            recommendations.append("Special offer: Get 20% off your first month")
        return recommendations

    def get_analytics_data(self) -> Dict[str, Any]:
        trial = self.current_trial
        now = self._pricing.now()
        with self._lock:
            total = len(self._history) + (1 if trial else 0)
            conversions = sum(1 for item in self._history if item.state is TrialState.CONVERTED)
            rate = conversions / total * 100 if total else 0.0
            return {
                "has_active_trial": trial is not None,
                "current_trial_tier": trial.tier.value if trial else None,
                "current_trial_days_remaining": trial.days_remaining_at(now) if trial else None,
                "trial_about_to_expire": bool(trial and trial.is_about_to_expire_at(now)),
                "total_trials_started": total,
                "total_conversions": conversions,
                "conversion_rate": round(rate, 1),
                "conversion_attempts": self._conversion_attempts,
            }


__all__ = [
    "TrialConfig",
    "TrialInfo",
    "TrialService",
    "TrialState",
    "TrialType",
    "normalize_promo_code",
]
