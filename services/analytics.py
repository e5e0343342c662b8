"""Analytics collaborator contract and event names.

The engine reports every decision as ``(event_name, properties)``. Delivery,
batching and the backend live outside the engine; the dispatcher only makes
sure a misbehaving sink can never break or block a decision.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Callable, Dict, Mapping, Optional

from core.logging import get_logger
from services import engine_metrics

logger = get_logger(__name__)

AnalyticsCallback = Callable[[str, Dict[str, Any]], None]


class MonetizationEvents:
    """Event names shared by every component."""

    UPGRADE_INITIATED = "upgrade_initiated"
    UPGRADE_COMPLETED = "upgrade_completed"
    UPGRADE_FAILED = "upgrade_failed"
    SUBSCRIPTION_CANCELLED = "subscription_cancelled"
    SUBSCRIPTION_EXPIRED = "subscription_expired"
    ENTITLEMENTS_RESET = "entitlements_reset"
    FEATURE_LIMIT_REACHED = "feature_limit_reached"

    TRIAL_STARTED = "trial_started"
    TRIAL_EXTENDED = "trial_extended"
    TRIAL_CONVERTED = "trial_converted"
    TRIAL_CANCELLED = "trial_cancelled"
    TRIAL_EXPIRED = "trial_expired"
    CONVERSION_ATTEMPTED = "conversion_attempted"

    AD_REQUESTED = "ad_requested"
    AD_LOADED = "ad_loaded"
    AD_IMPRESSION = "ad_impression"
    AD_CLICK = "ad_click"
    AD_DISMISS = "ad_dismiss"
    AD_LOAD_FAILURE = "ad_load_failure"
    AD_BLOCKED = "ad_blocked"
    AD_FREQUENCY_CAPPED = "ad_frequency_capped"

    AB_TEST_EXPOSURE = "ab_test_exposure"
    AB_TEST_CONVERSION = "ab_test_conversion"


def _log_only_sink(event_name: str, properties: Dict[str, Any]) -> None:
    logger.debug("analytics.event %s", event_name, extra={"analytics_properties": properties})


class AnalyticsDispatcher:
    """Synchronous fan-out to the host application's analytics callback."""

    def __init__(
        self,
        callback: Optional[AnalyticsCallback] = None,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._callback = callback or _log_only_sink
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def set_callback(self, callback: Optional[AnalyticsCallback]) -> None:
        self._callback = callback or _log_only_sink

    def emit(self, event_name: str, properties: Optional[Mapping[str, Any]] = None) -> None:
        payload: Dict[str, Any] = dict(properties or {})
        payload.setdefault("timestamp", self._clock().isoformat())
        engine_metrics.record_event(event_name)
        try:
            self._callback(event_name, payload)
        except Exception as exc:  # pragma: no cover - sink failures are never fatal
            logger.warning("Analytics callback failed for %s: %s", event_name, exc)


__all__ = ["AnalyticsCallback", "AnalyticsDispatcher", "MonetizationEvents"]
