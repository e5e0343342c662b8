"""Composition root wiring the entitlement, trial, limit, ads and experiment services."""

from __future__ import annotations

import random
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

from core.env import env_path, env_str
from core.env_utils import load_dotenv_if_available
from core.logging import get_logger
from services.ads import AdsDecisionService, PlacementRegistry
from services.analytics import AnalyticsCallback, AnalyticsDispatcher
from services.entitlement_store import utcnow
from services.experiment_service import ExperimentAssignmentService, ExperimentRegistry, load_experiment_registry
from services.limit_enforcement_service import LimitEnforcementService
from services.pricing_tier_service import PricingTierService
from services.state_store import InMemoryStateStore, JsonDirectoryStateStore, KeyValueStore
from services.trial_service import TrialService

logger = get_logger(__name__)


class MonetizationEngine:
    """Owns one instance of every service; nothing here is a process-wide singleton."""

    def __init__(
        self,
        store: KeyValueStore,
        *,
        analytics: Optional[AnalyticsCallback] = None,
        clock: Optional[Callable[[], datetime]] = None,
        rng: Optional[random.Random] = None,
        user_id: Optional[str] = None,
        placements: Optional[PlacementRegistry] = None,
        experiments: Optional[ExperimentRegistry] = None,
    ) -> None:
        self.store = store
        self.clock = clock or utcnow
        self.analytics = AnalyticsDispatcher(analytics, clock=self.clock)
        self.pricing = PricingTierService(store, analytics=self.analytics, clock=self.clock)
        self.trials = TrialService(store, self.pricing, analytics=self.analytics)
        self.experiments = ExperimentAssignmentService(
            store,
            analytics=self.analytics,
            registry=experiments,
            clock=self.clock,
        )
        self.limits = LimitEnforcementService(
            self.pricing,
            trials=self.trials,
            experiments=self.experiments,
            user_id=user_id,
        )
        self.ads = AdsDecisionService(
            store,
            self.pricing,
            analytics=self.analytics,
            registry=placements,
            rng=rng,
        )
        self._user_id = user_id

    @classmethod
    def from_env(
        cls,
        *,
        analytics: Optional[AnalyticsCallback] = None,
        dotenv_path: Optional[Path] = None,
    ) -> "MonetizationEngine":
        """Build an engine from ``.env`` / process environment.

        ``MONETIZATION_STATE_DIR`` selects a file-backed store; without it
        state lives in memory for the lifetime of the process.
        """
        load_dotenv_if_available(dotenv_path)
        state_dir = env_path("MONETIZATION_STATE_DIR")
        store: KeyValueStore
        if state_dir is not None:
            store = JsonDirectoryStateStore(state_dir)
        else:
            logger.info("MONETIZATION_STATE_DIR not set; using in-memory state store.")
            store = InMemoryStateStore()
        return cls(
            store,
            analytics=analytics,
            user_id=env_str("MONETIZATION_USER_ID"),
            experiments=load_experiment_registry(),
        )

    @property
    def user_id(self) -> Optional[str]:
        return self._user_id

    def set_user_id(self, user_id: Optional[str]) -> None:
        self._user_id = user_id
        self.limits.set_user_id(user_id)

    def set_analytics_callback(self, callback: Optional[AnalyticsCallback]) -> None:
        self.analytics.set_callback(callback)

    def initialize(self) -> None:
        """Initialise each service once, in dependency order."""
        self.pricing.initialize()
        self.trials.initialize()
        self.experiments.initialize()
        self.ads.initialize()
        logger.info(
            "engine.initialized",
            extra={"tier": self.pricing.current_tier.value, "store": type(self.store).__name__},
        )

    def clear_data(self) -> None:
        """Logout: drop every persisted record and in-memory counter."""
        self.ads.clear_data()
        self.experiments.reset_experiments()
        self.trials.clear_data()
        self.pricing.clear_data()
        logger.info("engine.cleared")

    def close(self) -> None:
        self.ads.close()


__all__ = ["MonetizationEngine"]
