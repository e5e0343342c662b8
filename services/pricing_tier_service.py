"""Pricing tier service: owns the user's entitlement record and its transitions.

The service is the single writer of the ``user_entitlements`` record. Every
read-modify-write runs under one lock and the in-memory record is replaced
before the write is attempted, so callers always observe the latest value even
when persistence fails.
"""

from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from core.env import env_int
from core.logging import get_logger
from core.tiers import SubscriptionType, UserTier, normalize_subscription_type, normalize_tier
from services import engine_metrics
from services.analytics import AnalyticsDispatcher, MonetizationEvents
from services.entitlement_store import (
    Clock,
    EntitlementStore,
    UserEntitlements,
    ensure_aware,
    format_timestamp,
)
from services.observable import ChangeNotifier
from services.state_store import (
    USER_ENTITLEMENTS_KEY,
    KeyValueStore,
    load_json_record,
    save_json_record,
)
from services.tier_limits import TierLimits, limits_for_tier
from services.upgrade_messaging import upgrade_messaging

logger = get_logger(__name__)

SUBSCRIPTION_MONTHLY_DAYS = env_int("SUBSCRIPTION_MONTHLY_DAYS", 30, minimum=1)
SUBSCRIPTION_ANNUAL_DAYS = env_int("SUBSCRIPTION_ANNUAL_DAYS", 365, minimum=1)

_TRIAL_EXPIRING_SOON_DAYS = 1


class PricingTierService(ChangeNotifier):
    def __init__(
        self,
        store: KeyValueStore,
        *,
        analytics: Optional[AnalyticsDispatcher] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        super().__init__()
        self._store = store
        self._analytics = analytics or AnalyticsDispatcher(clock=clock)
        self._entitlements = EntitlementStore(clock=clock)
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def initialize(self) -> None:
        with self._lock:
            if self.is_initialized:
                return
            self._load()
            now = self.now()
            rolled = self._entitlements.current.with_rolled_usage(now)
            if rolled != self._entitlements.current:
                self._entitlements.replace(rolled)
                self._persist()
            self._mark_initialized()
        logger.info(
            "entitlements.initialized",
            extra={
                "tier": self._entitlements.current.tier.value,
                "subscription_type": self._entitlements.current.subscription_type.value,
            },
        )

    def _load(self) -> None:
        try:
            payload = load_json_record(self._store, USER_ENTITLEMENTS_KEY)
            if payload is None:
                self._entitlements.reset()
                return
            self._entitlements.replace(UserEntitlements.from_dict(payload))
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("Corrupt entitlements record; resetting to free tier: %s", exc)
            self._entitlements.reset()
            self._persist()

    def _persist(self) -> bool:
        return save_json_record(self._store, USER_ENTITLEMENTS_KEY, self._entitlements.current.to_dict())

    def _commit(self, record: UserEntitlements) -> None:
        self._entitlements.replace(record)
        self._persist()

    def now(self) -> datetime:
        return self._entitlements.now()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def current_entitlements(self) -> UserEntitlements:
        self._require_initialized()
        return self._entitlements.current

    @property
    def current_tier(self) -> UserTier:
        """Tier the user is entitled to right now (``free`` once access lapsed)."""
        self._require_initialized()
        return self._entitlements.effective_tier_now()

    @property
    def current_limits(self) -> TierLimits:
        return limits_for_tier(self.current_tier)

    def is_premium_now(self) -> bool:
        self._require_initialized()
        return self._entitlements.is_premium_now()

    def is_trial_active_now(self) -> bool:
        self._require_initialized()
        return self._entitlements.is_trial_active_now()

    def needs_renewal(self) -> bool:
        self._require_initialized()
        return self._entitlements.current.is_subscription_expired_at(self.now())

    def is_trial_expiring_soon(self) -> bool:
        self._require_initialized()
        now = self.now()
        record = self._entitlements.current
        return record.is_in_trial_at(now) and record.trial_days_remaining_at(now) <= _TRIAL_EXPIRING_SOON_DAYS

    def voice_notes_used(self) -> int:
        self._require_initialized()
        return self._entitlements.current.voice_notes_at(self.now())

    def exports_used(self) -> int:
        self._require_initialized()
        return self._entitlements.current.exports_at(self.now())

    def has_reached_voice_note_limit(self) -> bool:
        limit = self.current_limits.max_voice_notes_per_month
        return not TierLimits.is_unlimited(limit) and self.voice_notes_used() >= limit

    def has_reached_export_limit(self) -> bool:
        limit = self.current_limits.max_exports_per_month
        return not TierLimits.is_unlimited(limit) and self.exports_used() >= limit

    def get_remaining_voice_notes(self) -> int:
        limit = self.current_limits.max_voice_notes_per_month
        if TierLimits.is_unlimited(limit):
            return -1
        return max(limit - self.voice_notes_used(), 0)

    def get_remaining_exports(self) -> int:
        limit = self.current_limits.max_exports_per_month
        if TierLimits.is_unlimited(limit):
            return -1
        return max(limit - self.exports_used(), 0)

    def get_upgrade_messaging(self, context: str) -> Dict[str, str]:
        return upgrade_messaging(context, self.current_limits).to_dict()

    # ------------------------------------------------------------------
    # Purchase transitions
    # ------------------------------------------------------------------

    def activate_subscription(
        self,
        subscription_type: SubscriptionType | str,
        product_id: str,
        subscription_id: Optional[str] = None,
        end_date: Optional[datetime] = None,
        *,
        tier: UserTier | str = UserTier.PREMIUM,
        original_purchase_id: Optional[str] = None,
    ) -> bool:
        """Apply an already-verified purchase.

        Returns ``False`` without touching state for: an unknown/none/trial
        type, a lifetime purchase carrying an end date, a non-paid tier, a
        blank product id, or an end date that is not in the future.
        """
        self._require_initialized()
        kind = normalize_subscription_type(subscription_type)
        target_tier = normalize_tier(tier)
        product = (product_id or "").strip()
        with self._lock:
            now = self.now()
            reason = self._activation_error(kind, target_tier, product, end_date, now)
            if reason is not None:
                logger.info("subscription.rejected", extra={"reason": reason, "product_id": product})
                self._track(MonetizationEvents.UPGRADE_FAILED, product_id=product, reason=reason)
                return False

            resolved_end: Optional[datetime] = ensure_aware(end_date) if end_date is not None else None
            if resolved_end is None and kind is SubscriptionType.MONTHLY:
                resolved_end = now + timedelta(days=SUBSCRIPTION_MONTHLY_DAYS)
            elif resolved_end is None and kind is SubscriptionType.ANNUAL:
                resolved_end = now + timedelta(days=SUBSCRIPTION_ANNUAL_DAYS)

            record = replace(
                self._entitlements.current.with_rolled_usage(now),
                tier=target_tier,
                subscription_type=kind,
                subscription_id=subscription_id,
                original_purchase_id=original_purchase_id,
                product_id=product,
                subscription_start_date=now,
                subscription_end_date=resolved_end,
                cancelled_at=None,
            )
            self._commit(record)
            self._track(
                MonetizationEvents.UPGRADE_COMPLETED,
                product_id=product,
                subscription_id=subscription_id,
                end_date=resolved_end.isoformat() if resolved_end else None,
            )
        logger.info(
            "subscription.activated",
            extra={"tier": target_tier.value, "subscription_type": kind.value, "product_id": product},
        )
        self._notify_listeners()
        return True

    @staticmethod
    def _activation_error(
        kind: SubscriptionType,
        tier: UserTier,
        product_id: str,
        end_date: Optional[datetime],
        now: datetime,
    ) -> Optional[str]:
        if kind in (SubscriptionType.NONE, SubscriptionType.TRIAL):
            return "invalid_subscription_type"
        if not tier.is_paid:
            return "invalid_tier"
        if not product_id:
            return "missing_product_id"
        if kind is SubscriptionType.LIFETIME and end_date is not None:
            return "lifetime_with_end_date"
        if end_date is not None and ensure_aware(end_date) <= now:
            return "end_date_not_in_future"
        return None

    def cancel_subscription(self, reason: Optional[str] = None) -> bool:
        """Mark a recurring subscription cancelled; access runs until its end date."""
        self._require_initialized()
        with self._lock:
            now = self.now()
            record = self._entitlements.current
            if not record.subscription_type.is_recurring or record.cancelled_at is not None:
                return False
            if not record.is_premium_at(now):
                return False
            self._commit(replace(record, cancelled_at=now))
            self._track(
                MonetizationEvents.SUBSCRIPTION_CANCELLED,
                reason=reason,
                access_until=format_timestamp(record.subscription_end_date),
            )
        self._notify_listeners()
        return True

    def reset_lapsed_subscription(self) -> bool:
        """Downgrade to free once a recurring subscription has run out."""
        self._require_initialized()
        with self._lock:
            now = self.now()
            record = self._entitlements.current
            if not record.is_subscription_expired_at(now):
                return False
            lapsed_type = record.subscription_type
            self._commit(
                replace(
                    record.with_rolled_usage(now),
                    tier=UserTier.FREE,
                    subscription_type=SubscriptionType.NONE,
                    subscription_end_date=None,
                    cancelled_at=None,
                )
            )
            self._track(MonetizationEvents.SUBSCRIPTION_EXPIRED, lapsed_subscription_type=lapsed_type.value)
        logger.info("subscription.lapsed", extra={"subscription_type": lapsed_type.value})
        self._notify_listeners()
        return True

    def handle_failed_purchase(self, product_id: str, reason: str) -> None:
        self._track(MonetizationEvents.UPGRADE_FAILED, product_id=product_id, reason=reason)

    def track_upgrade_initiated(self, product_id: str, source: str) -> None:
        self._track(MonetizationEvents.UPGRADE_INITIATED, product_id=product_id, source=source)

    def track_free_limit_reached(self, feature: str, **properties: Any) -> None:
        self._track(
            MonetizationEvents.FEATURE_LIMIT_REACHED,
            feature=feature,
            limit_type=self._entitlements.effective_tier_now().value,
            **properties,
        )

    # ------------------------------------------------------------------
    # Trial entitlement hooks (driven by TrialService)
    # ------------------------------------------------------------------

    def start_trial_entitlement(self, tier: UserTier | str, starts_at: datetime, ends_at: datetime) -> bool:
        self._require_initialized()
        target_tier = normalize_tier(tier)
        starts_at, ends_at = ensure_aware(starts_at), ensure_aware(ends_at)
        with self._lock:
            now = self.now()
            record = self._entitlements.current
            if not target_tier.is_paid or ends_at <= starts_at:
                return False
            if record.has_active_subscription_at(now) or record.is_in_trial_at(now):
                return False
            self._commit(
                replace(
                    record.with_rolled_usage(now),
                    tier=target_tier,
                    subscription_type=SubscriptionType.TRIAL,
                    subscription_end_date=None,
                    trial_start=starts_at,
                    trial_end=ends_at,
                    is_trial_used=True,
                    cancelled_at=None,
                )
            )
        self._notify_listeners()
        return True

    def extend_trial_entitlement(self, ends_at: datetime) -> bool:
        self._require_initialized()
        ends_at = ensure_aware(ends_at)
        with self._lock:
            record = self._entitlements.current
            if record.subscription_type is not SubscriptionType.TRIAL or record.trial_end is None:
                return False
            if ends_at <= record.trial_end:
                return False
            self._commit(replace(record, trial_end=ends_at))
        self._notify_listeners()
        return True

    def revoke_trial_entitlement(self) -> bool:
        """Drop an unconverted trial back to free; paid entitlements are never touched."""
        self._require_initialized()
        with self._lock:
            record = self._entitlements.current
            if record.subscription_type is not SubscriptionType.TRIAL:
                return False
            now = self.now()
            self._commit(
                replace(
                    record.with_rolled_usage(now),
                    tier=UserTier.FREE,
                    subscription_type=SubscriptionType.NONE,
                    trial_end=min(record.trial_end, now) if record.trial_end else now,
                )
            )
        self._notify_listeners()
        return True

    # ------------------------------------------------------------------
    # Usage counters
    # ------------------------------------------------------------------

    def increment_voice_note_usage(self) -> int:
        self._require_initialized()
        with self._lock:
            now = self.now()
            record = self._entitlements.current
            self._commit(replace(record, voice_notes=record.voice_notes.incremented(now)))
            used = self._entitlements.current.voice_notes.count
        engine_metrics.record_usage_remaining("voice_notes", self.get_remaining_voice_notes())
        self._notify_listeners()
        return used

    def increment_export_usage(self) -> int:
        self._require_initialized()
        with self._lock:
            now = self.now()
            record = self._entitlements.current
            self._commit(replace(record, exports=record.exports.incremented(now)))
            used = self._entitlements.current.exports.count
        engine_metrics.record_usage_remaining("exports", self.get_remaining_exports())
        self._notify_listeners()
        return used

    def clear_data(self) -> None:
        """Reset to a fresh free-tier record (logout)."""
        self._require_initialized()
        with self._lock:
            self._entitlements.reset()
            self._persist()
            self._track(MonetizationEvents.ENTITLEMENTS_RESET)
        self._notify_listeners()

    # ------------------------------------------------------------------
    # Analytics
    # ------------------------------------------------------------------

    def _track(self, event_name: str, **properties: Any) -> None:
        now = self.now()
        record = self._entitlements.current
        payload: Dict[str, Any] = {
            "tier": record.effective_tier_at(now).value,
            "subscription_type": record.subscription_type.value,
            "is_premium": record.is_premium_at(now),
        }
        payload.update(properties)
        self._analytics.emit(event_name, payload)


__all__ = [
    "PricingTierService",
    "SUBSCRIPTION_ANNUAL_DAYS",
    "SUBSCRIPTION_MONTHLY_DAYS",
]
