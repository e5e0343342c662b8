"""Per-placement ad decisions: session caps, minimum intervals and the interstitial gate.

Frequency-cap counters (shown today, last shown per format/placement) are
persisted under ``ad_frequency_caps``; session counters and ad instances live
only for the lifetime of the service.
"""

from __future__ import annotations

import random
import threading
import uuid
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Sequence

from core.logging import get_logger
from services import engine_metrics
from services.ads.ad_config import (
    FORMAT_MIN_INTERVALS,
    AdFormat,
    AdPlacement,
    InterstitialSettings,
    PlacementRegistry,
)
from services.ads.interstitial_policy import InterstitialPolicy
from services.analytics import AnalyticsDispatcher, MonetizationEvents
from services.entitlement_store import format_timestamp, parse_timestamp
from services.observable import ChangeNotifier
from services.pricing_tier_service import PricingTierService
from services.state_store import (
    AD_FREQUENCY_CAPS_KEY,
    KeyValueStore,
    load_json_record,
    remove_record,
    save_json_record,
)

logger = get_logger(__name__)


class AdState(str, Enum):
    LOADING = "loading"
    LOADED = "loaded"
    DISPLAYED = "displayed"
    CLICKED = "clicked"
    DISMISSED = "dismissed"
    FAILED = "failed"

    @property
    def is_pending(self) -> bool:
        return self in (AdState.LOADING, AdState.LOADED)


_TRANSITIONS: Mapping[AdState, frozenset] = {
    AdState.LOADING: frozenset({AdState.LOADED, AdState.FAILED}),
    AdState.LOADED: frozenset({AdState.DISPLAYED}),
    AdState.DISPLAYED: frozenset({AdState.CLICKED, AdState.DISMISSED}),
    AdState.CLICKED: frozenset(),
    AdState.DISMISSED: frozenset(),
    AdState.FAILED: frozenset(),
}

_STATE_EVENTS: Mapping[AdState, str] = {
    AdState.LOADED: MonetizationEvents.AD_LOADED,
    AdState.DISPLAYED: MonetizationEvents.AD_IMPRESSION,
    AdState.CLICKED: MonetizationEvents.AD_CLICK,
    AdState.DISMISSED: MonetizationEvents.AD_DISMISS,
    AdState.FAILED: MonetizationEvents.AD_LOAD_FAILURE,
}


@dataclass(frozen=True, slots=True)
class AdInstance:
    id: str
    placement_id: str
    format: AdFormat
    state: AdState
    requested_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "placementId": self.placement_id,
            "format": self.format.value,
            "state": self.state.value,
            "requestedAt": self.requested_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
        }


@dataclass(frozen=True, slots=True)
class AdDecision:
    allowed: bool
    placement_id: str
    format: Optional[AdFormat] = None
    reason: Optional[str] = None


@dataclass(slots=True)
class _PlacementCaps:
    shown_today: int = 0
    last_shown_at: Optional[datetime] = None


@dataclass(slots=True)
class _FrequencyCaps:
    day: Optional[date] = None
    last_shown_by_format: Dict[AdFormat, datetime] = field(default_factory=dict)
    placements: Dict[str, _PlacementCaps] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "day": self.day.isoformat() if self.day else None,
            "lastShownByFormat": {fmt.value: ts.isoformat() for fmt, ts in self.last_shown_by_format.items()},
            "placements": {
                placement_id: {"shownToday": caps.shown_today, "lastShownAt": format_timestamp(caps.last_shown_at)}
                for placement_id, caps in self.placements.items()
            },
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "_FrequencyCaps":
        if not isinstance(payload, Mapping):
            raise TypeError("frequency caps payload must be an object")
        raw_day = payload.get("day")
        last_shown_raw = payload.get("lastShownByFormat") or {}
        placements_raw = payload.get("placements") or {}
        if not isinstance(last_shown_raw, Mapping) or not isinstance(placements_raw, Mapping):
            raise TypeError("frequency caps sections must be objects")
        placements: Dict[str, _PlacementCaps] = {}
        for placement_id, entry in placements_raw.items():
            shown = entry["shownToday"]
            if isinstance(shown, bool) or not isinstance(shown, int) or shown < 0:
                raise ValueError(f"invalid shownToday for {placement_id}: {shown!r}")
            placements[str(placement_id)] = _PlacementCaps(
                shown_today=shown,
                last_shown_at=parse_timestamp(entry.get("lastShownAt")),
            )
        last_shown: Dict[AdFormat, datetime] = {}
        for fmt, raw_ts in last_shown_raw.items():
            parsed = parse_timestamp(raw_ts)
            if parsed is not None:
                last_shown[AdFormat(fmt)] = parsed
        return cls(
            day=date.fromisoformat(raw_day) if raw_day else None,
            last_shown_by_format=last_shown,
            placements=placements,
        )


@dataclass(slots=True)
class _SessionStats:
    impressions: int = 0
    clicks: int = 0
    dismissals: int = 0
    failures: int = 0


class AdsDecisionService(ChangeNotifier):
    def __init__(
        self,
        store: KeyValueStore,
        pricing: PricingTierService,
        *,
        analytics: Optional[AnalyticsDispatcher] = None,
        registry: Optional[PlacementRegistry] = None,
        rng: Optional[random.Random] = None,
        interstitial_settings: Optional[InterstitialSettings] = None,
        min_intervals: Optional[Mapping[AdFormat, timedelta]] = None,
    ) -> None:
        super().__init__()
        self._store = store
        self._pricing = pricing
        self._analytics = analytics or AnalyticsDispatcher()
        self._registry = registry or PlacementRegistry()
        self._policy = InterstitialPolicy(interstitial_settings, rng=rng)
        self._min_intervals = dict(FORMAT_MIN_INTERVALS)
        if min_intervals:
            self._min_intervals.update(min_intervals)
        self._lock = threading.RLock()
        self._caps = _FrequencyCaps()
        self._session_counts: Dict[str, int] = {}
        self._actions_since_interstitial = 0
        self._instances: Dict[str, AdInstance] = {}
        self._pending_by_placement: Dict[str, str] = {}
        self._stats: Dict[str, _SessionStats] = {}
        self._unsubscribe_pricing = None

    @property
    def registry(self) -> PlacementRegistry:
        return self._registry

    # ------------------------------------------------------------------
    # Lifecycle / persistence
    # ------------------------------------------------------------------

    def initialize(self) -> None:
        with self._lock:
            if self.is_initialized:
                return
            self._caps = self._load_caps()
            self._unsubscribe_pricing = self._pricing.on_change(self._on_entitlements_changed)
            self._mark_initialized()

    def close(self) -> None:
        if self._unsubscribe_pricing is not None:
            self._unsubscribe_pricing()
            self._unsubscribe_pricing = None

    def _load_caps(self) -> _FrequencyCaps:
        try:
            payload = load_json_record(self._store, AD_FREQUENCY_CAPS_KEY)
            if payload is None:
                return _FrequencyCaps(day=self._today())
            return _FrequencyCaps.from_dict(payload)
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("Corrupt ad frequency caps reset: %s", exc)
            caps = _FrequencyCaps(day=self._today())
            save_json_record(self._store, AD_FREQUENCY_CAPS_KEY, caps.to_dict())
            return caps

    def _persist_caps(self) -> None:
        save_json_record(self._store, AD_FREQUENCY_CAPS_KEY, self._caps.to_dict())

    def _today(self) -> date:
        return self._pricing.now().date()

    def _roll_day(self) -> None:
        today = self._today()
        if self._caps.day == today:
            return
        self._caps.day = today
        for caps in self._caps.placements.values():
            caps.shown_today = 0
        self._persist_caps()

    def _on_entitlements_changed(self) -> None:
        if not self.is_initialized or not self._pricing.is_premium_now():
            return
        with self._lock:
            dropped = [ad_id for ad_id, ad in self._instances.items() if ad.state.is_pending]
            for ad_id in dropped:
                self._instances.pop(ad_id, None)
            self._pending_by_placement.clear()
        if dropped:
            logger.info("ads.pending_dropped", extra={"count": len(dropped)})
            self._notify_listeners()

    # ------------------------------------------------------------------
    # Decisions
    # ------------------------------------------------------------------

    def _deny(self, placement_id: str, reason: str, ad_format: Optional[AdFormat] = None) -> AdDecision:
        engine_metrics.record_decision("ads", False)
        if reason in ("session_limit", "min_interval"):
            self._analytics.emit(
                MonetizationEvents.AD_FREQUENCY_CAPPED,
                {"placement_id": placement_id, "format": ad_format.value if ad_format else None, "reason": reason},
            )
        elif reason == "probability":
            self._analytics.emit(
                MonetizationEvents.AD_BLOCKED,
                {"placement_id": placement_id, "format": ad_format.value if ad_format else None, "reason": reason},
            )
        logger.debug("Ad denied for %s: %s", placement_id, reason)
        return AdDecision(allowed=False, placement_id=placement_id, format=ad_format, reason=reason)

    def _interval_elapsed(self, ad_format: AdFormat, now: datetime) -> bool:
        minimum = self._min_intervals.get(ad_format, timedelta(0))
        last_shown = self._caps.last_shown_by_format.get(ad_format)
        return last_shown is None or now - last_shown >= minimum

    def should_display(
        self,
        placement_id: str,
        *,
        important: bool = False,
        preferred_format: Optional[AdFormat] = None,
    ) -> AdDecision:
        """Decide whether ``placement_id`` may show an ad now and in which format.

        With ``preferred_format`` only that format is evaluated; the placement's
        priority order is used otherwise.
        """
        self._require_initialized()
        if self._pricing.is_premium_now():
            engine_metrics.record_decision("ads", False)
            return AdDecision(allowed=False, placement_id=placement_id, reason="premium")
        placement = self._registry.get(placement_id)
        if placement is None:
            engine_metrics.record_decision("ads", False)
            logger.debug("Unknown ad placement %s", placement_id)
            return AdDecision(allowed=False, placement_id=placement_id, reason="unknown_placement")
        if preferred_format is not None and not placement.supports(preferred_format):
            engine_metrics.record_decision("ads", False)
            logger.debug("Placement %s does not support %s", placement_id, preferred_format.value)
            return AdDecision(
                allowed=False,
                placement_id=placement_id,
                format=preferred_format,
                reason="unsupported_format",
            )

        with self._lock:
            self._roll_day()
            if self._session_counts.get(placement_id, 0) >= placement.session_limit:
                return self._deny(placement_id, "session_limit")
            formats = (preferred_format,) if preferred_format is not None else placement.format_priority
            return self._pick_format(placement, formats, important=important)

    def _pick_format(
        self,
        placement: AdPlacement,
        formats: Sequence[AdFormat],
        *,
        important: bool,
    ) -> AdDecision:
        now = self._pricing.now()
        last_reason = "min_interval"
        last_format: Optional[AdFormat] = None
        for ad_format in formats:
            if not self._interval_elapsed(ad_format, now):
                last_reason, last_format = "min_interval", ad_format
                continue
            if ad_format is AdFormat.INTERSTITIAL and not self._policy.should_show(
                placement,
                important=important,
                actions_since_last=self._actions_since_interstitial,
            ):
                last_reason, last_format = "probability", ad_format
                continue
            engine_metrics.record_decision("ads", True)
            return AdDecision(allowed=True, placement_id=placement.id, format=ad_format)
        return self._deny(placement.id, last_reason, last_format)

    def should_show_ads(self) -> bool:
        self._require_initialized()
        return not self._pricing.is_premium_now()

    # ------------------------------------------------------------------
    # Ad instance lifecycle
    # ------------------------------------------------------------------

    def request_ad(
        self,
        placement_id: str,
        *,
        important: bool = False,
        preferred_format: Optional[AdFormat] = None,
    ) -> Optional[AdInstance]:
        decision = self.should_display(placement_id, important=important, preferred_format=preferred_format)
        if not decision.allowed or decision.format is None:
            return None
        now = self._pricing.now()
        instance = AdInstance(
            id=f"ad_{uuid.uuid4().hex[:16]}",
            placement_id=placement_id,
            format=decision.format,
            state=AdState.LOADING,
            requested_at=now,
            updated_at=now,
        )
        with self._lock:
            superseded = self._pending_by_placement.get(placement_id)
            if superseded is not None:
                self._instances.pop(superseded, None)
                logger.debug("Ad %s superseded by %s", superseded, instance.id)
            self._instances[instance.id] = instance
            self._pending_by_placement[placement_id] = instance.id
        self._analytics.emit(MonetizationEvents.AD_REQUESTED, self._event_props(instance))
        return instance

    def get_pending_ad(self, placement_id: str) -> Optional[AdInstance]:
        with self._lock:
            ad_id = self._pending_by_placement.get(placement_id)
            return self._instances.get(ad_id) if ad_id else None

    def get_ad(self, ad_id: str) -> Optional[AdInstance]:
        with self._lock:
            return self._instances.get(ad_id)

    def mark_loaded(self, ad_id: str) -> bool:
        return self._transition(ad_id, AdState.LOADED)

    def mark_displayed(self, ad_id: str) -> bool:
        if self._pricing.is_premium_now():
            return False
        return self._transition(ad_id, AdState.DISPLAYED)

    def mark_clicked(self, ad_id: str) -> bool:
        return self._transition(ad_id, AdState.CLICKED)

    def mark_dismissed(self, ad_id: str) -> bool:
        return self._transition(ad_id, AdState.DISMISSED)

    def mark_failed(self, ad_id: str, error_code: Optional[str] = None) -> bool:
        return self._transition(ad_id, AdState.FAILED, error_code=error_code)

    def _transition(self, ad_id: str, target: AdState, **extra: Any) -> bool:
        self._require_initialized()
        with self._lock:
            instance = self._instances.get(ad_id)
            if instance is None or target not in _TRANSITIONS[instance.state]:
                logger.debug("Illegal ad transition %s -> %s", instance.state.value if instance else None, target.value)
                return False
            now = self._pricing.now()
            updated = replace(instance, state=target, updated_at=now)
            self._instances[ad_id] = updated
            if not target.is_pending and self._pending_by_placement.get(instance.placement_id) == ad_id:
                self._pending_by_placement.pop(instance.placement_id, None)
            stats = self._stats.setdefault(instance.placement_id, _SessionStats())
            if target is AdState.DISPLAYED:
                self._record_impression(updated, now)
                stats.impressions += 1
            elif target is AdState.CLICKED:
                stats.clicks += 1
            elif target is AdState.DISMISSED:
                stats.dismissals += 1
            elif target is AdState.FAILED:
                stats.failures += 1
        props = self._event_props(updated)
        props.update({key: value for key, value in extra.items() if value is not None})
        self._analytics.emit(_STATE_EVENTS[target], props)
        return True

    def _record_impression(self, instance: AdInstance, now: datetime) -> None:
        self._roll_day()
        self._session_counts[instance.placement_id] = self._session_counts.get(instance.placement_id, 0) + 1
        self._caps.last_shown_by_format[instance.format] = now
        caps = self._caps.placements.setdefault(instance.placement_id, _PlacementCaps())
        caps.shown_today += 1
        caps.last_shown_at = now
        if instance.format is AdFormat.INTERSTITIAL:
            self._actions_since_interstitial = 0
        self._persist_caps()

    @staticmethod
    def _event_props(instance: AdInstance) -> Dict[str, Any]:
        return {
            "instance_id": instance.id,
            "placement_id": instance.placement_id,
            "format": instance.format.value,
        }

    # ------------------------------------------------------------------
    # Counters / reporting
    # ------------------------------------------------------------------

    def record_user_action(self) -> int:
        with self._lock:
            self._actions_since_interstitial += 1
            return self._actions_since_interstitial

    @property
    def actions_since_interstitial(self) -> int:
        return self._actions_since_interstitial

    def session_count(self, placement_id: str) -> int:
        return self._session_counts.get(placement_id, 0)

    def shown_today(self, placement_id: str) -> int:
        self._require_initialized()
        with self._lock:
            self._roll_day()
            caps = self._caps.placements.get(placement_id)
            return caps.shown_today if caps else 0

    def last_shown(self, ad_format: AdFormat) -> Optional[datetime]:
        return self._caps.last_shown_by_format.get(ad_format)

    def get_ad_metrics(self) -> Dict[str, Any]:
        self._require_initialized()
        with self._lock:
            self._roll_day()
            totals = _SessionStats()
            breakdown: Dict[str, Dict[str, int]] = {}
            for placement in self._registry:
                stats = self._stats.get(placement.id, _SessionStats())
                totals.impressions += stats.impressions
                totals.clicks += stats.clicks
                totals.dismissals += stats.dismissals
                totals.failures += stats.failures
                caps = self._caps.placements.get(placement.id)
                breakdown[placement.id] = {
                    "impressions": stats.impressions,
                    "clicks": stats.clicks,
                    "dismissals": stats.dismissals,
                    "failures": stats.failures,
                    "shown_today": caps.shown_today if caps else 0,
                }
        impressions = totals.impressions
        return {
            "impressions": impressions,
            "clicks": totals.clicks,
            "dismissals": totals.dismissals,
            "failures": totals.failures,
            "click_through_rate": totals.clicks / impressions * 100 if impressions else 0.0,
            "dismissal_rate": totals.dismissals / impressions * 100 if impressions else 0.0,
            "placement_breakdown": breakdown,
        }

    def clear_data(self) -> None:
        self._require_initialized()
        with self._lock:
            self._caps = _FrequencyCaps(day=self._today())
            self._session_counts.clear()
            self._actions_since_interstitial = 0
            self._instances.clear()
            self._pending_by_placement.clear()
            self._stats.clear()
            remove_record(self._store, AD_FREQUENCY_CAPS_KEY)
        self._notify_listeners()


__all__ = ["AdDecision", "AdInstance", "AdState", "AdsDecisionService"]
