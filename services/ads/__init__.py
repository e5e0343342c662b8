"""Ad placement configuration and display decisions."""

from .ad_config import AdConfigError, AdFormat, AdPlacement, InterstitialSettings, PlacementRegistry
from .ads_decision_service import AdDecision, AdInstance, AdState, AdsDecisionService

__all__ = [
    "AdConfigError",
    "AdDecision",
    "AdFormat",
    "AdInstance",
    "AdPlacement",
    "AdState",
    "AdsDecisionService",
    "InterstitialSettings",
    "PlacementRegistry",
]
