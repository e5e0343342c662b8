"""Deterministic experiment-variant assignment and conversion tracking.

A user is bucketed by hashing ``"<experiment_id>:<user_id>"`` with SHA-256 into
``[0, 100)`` and walking the experiment's variants in declaration order. The
first assignment is cached in ``user_group_assignments`` and always wins over
recomputation; a debug override in ``experiment_overrides`` wins over both.
"""

from __future__ import annotations

import hashlib
import threading
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from pydantic import ValidationError

from core.logging import get_logger
from schemas.experiments import ExperimentCatalog, ExperimentDefinition
from services.analytics import AnalyticsDispatcher, MonetizationEvents
from services.entitlement_store import ensure_aware, utcnow
from services.json_store import JsonStore
from services.observable import ChangeNotifier
from services.state_store import (
    EXPERIMENT_OVERRIDES_KEY,
    USER_GROUP_ASSIGNMENTS_KEY,
    KeyValueStore,
    load_json_record,
    remove_record,
    save_json_record,
)

logger = get_logger(__name__)

CONTROL_VARIANT = "control"

DEFAULT_EXPERIMENTS_PATH = Path("config") / "experiments.json"

_EXPERIMENTS_STORE = JsonStore(path_env="EXPERIMENTS_CONFIG_FILE", default_path=DEFAULT_EXPERIMENTS_PATH)


class ExperimentConfigError(ValueError):
    """Raised when an experiment registry is inconsistent."""


@dataclass(frozen=True, slots=True)
class ExperimentVariant:
    id: str
    traffic_allocation: int
    name: str = ""
    parameters: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class Experiment:
    id: str
    variants: Tuple[ExperimentVariant, ...]
    name: str = ""
    description: str = ""
    is_active: bool = True
    start_at: Optional[datetime] = None
    end_at: Optional[datetime] = None

    def is_running_at(self, now: datetime) -> bool:
        if not self.is_active:
            return False
        if self.start_at is not None and now < self.start_at:
            return False
        if self.end_at is not None and now >= self.end_at:
            return False
        return True

    def variant(self, variant_id: str) -> Optional[ExperimentVariant]:
        for variant in self.variants:
            if variant.id == variant_id:
                return variant
        return None

    @property
    def variant_ids(self) -> List[str]:
        return [variant.id for variant in self.variants]

    def validate(self) -> None:
        if not self.id:
            raise ExperimentConfigError("experiment id must not be empty")
        if not self.variants:
            raise ExperimentConfigError(f"experiment {self.id} has no variants")
        ids = self.variant_ids
        if len(set(ids)) != len(ids):
            raise ExperimentConfigError(f"experiment {self.id} repeats a variant id")
        if any(variant.traffic_allocation < 0 for variant in self.variants):
            raise ExperimentConfigError(f"experiment {self.id} has a negative allocation")
        total = sum(variant.traffic_allocation for variant in self.variants)
        if total != 100:
            raise ExperimentConfigError(f"experiment {self.id} allocations sum to {total}, expected 100")


def bucket_for(experiment_id: str, user_id: str) -> int:
    """Stable bucket in ``[0, 100)`` for ``(experiment_id, user_id)``."""
    digest = hashlib.sha256(f"{experiment_id}:{user_id}".encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "big") % 100


def assign_variant(experiment: Experiment, user_id: str) -> str:
    bucket = bucket_for(experiment.id, user_id)
    cumulative = 0
    for variant in experiment.variants:
        cumulative += variant.traffic_allocation
        if bucket < cumulative:
            return variant.id
    return experiment.variants[-1].id


class ExperimentRegistry:
    def __init__(self, experiments: Iterable[Experiment]) -> None:
        by_id: Dict[str, Experiment] = {}
        for experiment in experiments:
            experiment.validate()
            if experiment.id in by_id:
                raise ExperimentConfigError(f"duplicate experiment id: {experiment.id}")
            by_id[experiment.id] = experiment
        self._experiments = by_id

    @classmethod
    def from_definitions(cls, definitions: Iterable[ExperimentDefinition]) -> "ExperimentRegistry":
        return cls(
            Experiment(
                id=definition.id,
                name=definition.name or definition.id,
                description=definition.description or "",
                is_active=definition.isActive,
                start_at=ensure_aware(definition.startDate) if definition.startDate else None,
                end_at=ensure_aware(definition.endDate) if definition.endDate else None,
                variants=tuple(
                    ExperimentVariant(
                        id=variant.id,
                        name=variant.name or variant.id,
                        traffic_allocation=variant.trafficAllocation,
                        parameters=dict(variant.parameters),
                    )
                    for variant in definition.variants
                ),
            )
            for definition in definitions
        )

    def get(self, experiment_id: str) -> Optional[Experiment]:
        return self._experiments.get(experiment_id)

    def __iter__(self):
        return iter(self._experiments.values())

    def __len__(self) -> int:
        return len(self._experiments)


def _variant(variant_id: str, name: str, allocation: int, **parameters: Any) -> ExperimentVariant:
    return ExperimentVariant(id=variant_id, name=name, traffic_allocation=allocation, parameters=parameters)


DEFAULT_EXPERIMENTS: Tuple[Experiment, ...] = (
    Experiment(
        id="paywall_headline",
        name="Paywall Headline Test",
        description="Test different headlines for the paywall screen",
        variants=(
            _variant(
                "control",
                "Original Headline",
                50,
                headline="Upgrade to Premium",
                subtitle="Unlock all features and remove ads",
            ),
            _variant(
                "benefit_focused",
                "Benefit-Focused Headline",
                50,
                headline="Get Unlimited Notes & Voice Recording",
                subtitle="Plus advanced features and ad-free experience",
            ),
        ),
    ),
    Experiment(
        id="ad_timing",
        name="Ad Timing Optimization",
        description="Test different timing strategies for showing ads",
        variants=(
            _variant("immediate", "Immediate Display", 33, min_session_duration=0, min_actions_before_ad=1),
            _variant("delayed", "Delayed Display", 33, min_session_duration=120, min_actions_before_ad=3),
            _variant(
                "engagement_based",
                "Engagement-Based",
                34,
                min_session_duration=60,
                min_actions_before_ad=5,
                engagement_threshold=0.7,
            ),
        ),
    ),
    Experiment(
        id="trial_duration",
        name="Trial Duration Test",
        description="Test optimal trial duration for conversion",
        variants=(
            _variant("short_trial", "3-Day Trial", 25, trial_days=3, trial_type="short_experience"),
            _variant("standard_trial", "7-Day Trial", 50, trial_days=7, trial_type="standard"),
            _variant("extended_trial", "14-Day Trial", 25, trial_days=14, trial_type="extended_experience"),
        ),
    ),
    Experiment(
        id="pricing_display",
        name="Pricing Display Format",
        description="Test different ways to display pricing information",
        variants=(
            _variant(
                "monthly_focus", "Monthly Price Focus", 50, primary_display="monthly", annual_discount_emphasis="low"
            ),
            _variant(
                "annual_savings",
                "Annual Savings Focus",
                50,
                primary_display="annual",
                annual_discount_emphasis="high",
                savings_badge=True,
            ),
        ),
    ),
)


def _parse_catalog(raw: Any) -> Optional[ExperimentCatalog]:
    if raw is None:
        return None
    payload = {"experiments": raw} if isinstance(raw, list) else raw
    try:
        return ExperimentCatalog.model_validate(payload)
    except ValidationError as exc:
        raise ExperimentConfigError(f"invalid experiments config: {exc}") from exc


def load_experiment_registry(*, reload: bool = False) -> ExperimentRegistry:
    """Build the registry from ``EXPERIMENTS_CONFIG_FILE`` or fall back to the built-in set."""
    catalog = _EXPERIMENTS_STORE.load(loader=_parse_catalog, fallback=lambda: None, reload=reload)
    if catalog is None or not catalog.experiments:
        return ExperimentRegistry(DEFAULT_EXPERIMENTS)
    logger.info("experiments.loaded", extra={"count": len(catalog.experiments)})
    return ExperimentRegistry.from_definitions(catalog.experiments)


def reset_state_for_tests() -> None:
    _EXPERIMENTS_STORE.clear_cache()


@dataclass(slots=True)
class _VariantCounters:
    exposures: int = 0
    conversions: int = 0


class ExperimentAssignmentService(ChangeNotifier):
    def __init__(
        self,
        store: KeyValueStore,
        *,
        analytics: Optional[AnalyticsDispatcher] = None,
        registry: Optional[ExperimentRegistry] = None,
        clock: Optional[Callable[[], datetime]] = None,
        enabled: bool = True,
    ) -> None:
        super().__init__()
        self._store = store
        self._analytics = analytics or AnalyticsDispatcher(clock=clock)
        self._registry = registry or ExperimentRegistry(DEFAULT_EXPERIMENTS)
        self._clock = clock or utcnow
        self._enabled = enabled
        self._lock = threading.RLock()
        self._assignments: Dict[str, Dict[str, str]] = {}
        self._overrides: Dict[str, str] = {}
        self._counters: Dict[str, Dict[str, _VariantCounters]] = {}

    @property
    def registry(self) -> ExperimentRegistry:
        return self._registry

    def now(self) -> datetime:
        return ensure_aware(self._clock())

    # ------------------------------------------------------------------
    # Lifecycle / persistence
    # ------------------------------------------------------------------

    def initialize(self) -> None:
        with self._lock:
            if self.is_initialized:
                return
            self._assignments = self._load_assignments()
            self._overrides = self._load_overrides()
            self._mark_initialized()

    def _load_assignments(self) -> Dict[str, Dict[str, str]]:
        try:
            payload = load_json_record(self._store, USER_GROUP_ASSIGNMENTS_KEY)
            if payload is None:
                return {}
            if not isinstance(payload, dict):
                raise TypeError("assignments must be an object")
            assignments: Dict[str, Dict[str, str]] = {}
            for experiment_id, users in payload.items():
                if not isinstance(users, dict):
                    raise TypeError(f"assignments for {experiment_id} must be an object")
                for user_id, variant_id in users.items():
                    if not isinstance(variant_id, str):
                        raise TypeError(f"variant for {experiment_id}/{user_id} must be a string")
                assignments[str(experiment_id)] = {str(user): variant for user, variant in users.items()}
            return assignments
        except (TypeError, ValueError) as exc:
            logger.warning("Corrupt experiment assignments reset: %s", exc)
            save_json_record(self._store, USER_GROUP_ASSIGNMENTS_KEY, {})
            return {}

    def _load_overrides(self) -> Dict[str, str]:
        try:
            payload = load_json_record(self._store, EXPERIMENT_OVERRIDES_KEY)
            if payload is None:
                return {}
            if not isinstance(payload, dict) or not all(isinstance(value, str) for value in payload.values()):
                raise TypeError("overrides must map experiment ids to variant ids")
            return {str(key): value for key, value in payload.items()}
        except (TypeError, ValueError) as exc:
            logger.warning("Corrupt experiment overrides reset: %s", exc)
            save_json_record(self._store, EXPERIMENT_OVERRIDES_KEY, {})
            return {}

    def _counter(self, experiment_id: str, variant_id: str) -> _VariantCounters:
        return self._counters.setdefault(experiment_id, {}).setdefault(variant_id, _VariantCounters())

    # ------------------------------------------------------------------
    # Assignment
    # ------------------------------------------------------------------

    def _running(self, experiment_id: str) -> Optional[Experiment]:
        if not self._enabled:
            return None
        experiment = self._registry.get(experiment_id)
        if experiment is None or not experiment.is_running_at(self.now()):
            return None
        return experiment

    def get_variant(self, experiment_id: str, user_id: str) -> str:
        self._require_initialized()
        experiment = self._running(experiment_id)
        if experiment is None:
            return CONTROL_VARIANT
        with self._lock:
            forced = self._overrides.get(experiment_id)
            if forced is not None and experiment.variant(forced) is not None:
                return forced
            cached = self._assignments.get(experiment_id, {}).get(user_id)
            if cached is not None and experiment.variant(cached) is not None:
                return cached
            variant_id = assign_variant(experiment, user_id)
            self._assignments.setdefault(experiment_id, {})[user_id] = variant_id
            save_json_record(self._store, USER_GROUP_ASSIGNMENTS_KEY, self._assignments)
            self._counter(experiment_id, variant_id).exposures += 1
        self._analytics.emit(
            MonetizationEvents.AB_TEST_EXPOSURE,
            {"experiment_id": experiment_id, "variant_id": variant_id, "user_id": user_id},
        )
        return variant_id

    def get_variant_parameters(self, experiment_id: str, user_id: str) -> Dict[str, Any]:
        variant_id = self.get_variant(experiment_id, user_id)
        experiment = self._registry.get(experiment_id)
        if experiment is None:
            return {}
        variant = experiment.variant(variant_id)
        return dict(variant.parameters) if variant else {}

    def force_variant(self, experiment_id: str, variant_id: str) -> bool:
        """Debug override checked before the cache and the hash."""
        self._require_initialized()
        experiment = self._registry.get(experiment_id)
        if experiment is None or experiment.variant(variant_id) is None:
            return False
        with self._lock:
            self._overrides[experiment_id] = variant_id
            save_json_record(self._store, EXPERIMENT_OVERRIDES_KEY, self._overrides)
        logger.info("experiment.forced", extra={"experiment_id": experiment_id, "variant_id": variant_id})
        self._notify_listeners()
        return True

    def clear_override(self, experiment_id: str) -> bool:
        self._require_initialized()
        with self._lock:
            if self._overrides.pop(experiment_id, None) is None:
                return False
            save_json_record(self._store, EXPERIMENT_OVERRIDES_KEY, self._overrides)
        self._notify_listeners()
        return True

    def track_conversion(
        self,
        experiment_id: str,
        conversion_event_name: str,
        user_id: str,
        properties: Optional[Mapping[str, Any]] = None,
    ) -> bool:
        """Record a conversion against the user's own assignment; unknown or stopped experiments are skipped."""
        self._require_initialized()
        if self._running(experiment_id) is None:
            logger.debug("Conversion %s ignored for inactive experiment %s", conversion_event_name, experiment_id)
            return False
        variant_id = self.get_variant(experiment_id, user_id)
        payload: Dict[str, Any] = dict(properties or {})
        payload.update(
            {
                "experiment_id": experiment_id,
                "variant_id": variant_id,
                "conversion_type": conversion_event_name,
                "user_id": user_id,
            }
        )
        with self._lock:
            self._counter(experiment_id, variant_id).conversions += 1
        self._analytics.emit(MonetizationEvents.AB_TEST_CONVERSION, payload)
        return True

    def reset_experiments(self) -> None:
        """Clear cached assignments and overrides; definitions are untouched."""
        self._require_initialized()
        with self._lock:
            self._assignments.clear()
            self._overrides.clear()
            self._counters.clear()
            remove_record(self._store, USER_GROUP_ASSIGNMENTS_KEY)
            remove_record(self._store, EXPERIMENT_OVERRIDES_KEY)
        self._notify_listeners()

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def user_assignments(self, user_id: str) -> Dict[str, str]:
        with self._lock:
            return {
                experiment_id: users[user_id]
                for experiment_id, users in self._assignments.items()
                if user_id in users
            }

    def get_experiment_status(self) -> Dict[str, Any]:
        now = self.now()
        with self._lock:
            experiments = {
                experiment.id: {
                    "name": experiment.name,
                    "is_active": experiment.is_active,
                    "is_running": experiment.is_running_at(now),
                    "variants": experiment.variant_ids,
                    "forced_variant": self._overrides.get(experiment.id),
                    "assigned_users": len(self._assignments.get(experiment.id, {})),
                }
                for experiment in self._registry
            }
        return {
            "enabled": self._enabled,
            "active_experiments": sum(1 for item in experiments.values() if item["is_running"]),
            "experiments": experiments,
        }

    def get_conversion_summary(self) -> Dict[str, Dict[str, Dict[str, Any]]]:
        with self._lock:
            summary: Dict[str, Dict[str, Dict[str, Any]]] = {}
            for experiment_id, variants in self._counters.items():
                summary[experiment_id] = {
                    variant_id: {
                        "exposures": counters.exposures,
                        "conversions": counters.conversions,
                        "conversion_rate": (
                            counters.conversions / counters.exposures * 100 if counters.exposures else 0.0
                        ),
                    }
                    for variant_id, counters in variants.items()
                }
            return summary


__all__ = [
    "CONTROL_VARIANT",
    "DEFAULT_EXPERIMENTS",
    "Experiment",
    "ExperimentAssignmentService",
    "ExperimentConfigError",
    "ExperimentRegistry",
    "ExperimentVariant",
    "assign_variant",
    "bucket_for",
    "load_experiment_registry",
    "reset_state_for_tests",
]
