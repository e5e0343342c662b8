"""Prometheus counters for monetization decisions and analytics events."""

from __future__ import annotations

from typing import Optional

from core.logging import get_logger
from services.prometheus_helpers import build_counter, build_gauge

logger = get_logger(__name__)

_EVENT_COUNTER = build_counter(
    "monetization_events",
    "Analytics events emitted by the monetization engine.",
    ("event",),
)
_DECISION_COUNTER = build_counter(
    "monetization_decisions",
    "Allow/deny decisions taken by monetization components.",
    ("component", "outcome"),
)
_USAGE_REMAINING_GAUGE = build_gauge(
    "monetization_usage_remaining",
    "Latest remaining monthly allowance per metered feature (-1 = unlimited).",
    ("feature",),
)


def record_event(event_name: str) -> None:
    if _EVENT_COUNTER is None:
        return
    _EVENT_COUNTER.labels(event=event_name).inc()


def record_decision(component: str, allowed: bool) -> None:
    """Increment the decision counter for ``component``."""

    if _DECISION_COUNTER is None:
        return
    outcome = "allowed" if allowed else "blocked"
    _DECISION_COUNTER.labels(component=component, outcome=outcome).inc()


def record_usage_remaining(feature: str, remaining: Optional[int]) -> None:
    if _USAGE_REMAINING_GAUGE is None or remaining is None:
        return
    try:
        _USAGE_REMAINING_GAUGE.labels(feature=feature).set(float(remaining))
    except ValueError:
        logger.debug("Failed to set remaining gauge for feature=%s value=%s", feature, remaining)


__all__ = ["record_decision", "record_event", "record_usage_remaining"]
