"""Probability gate for interstitial ads."""

from __future__ import annotations

import random
from typing import Optional

from services.ads.ad_config import AdPlacement, InterstitialSettings


class InterstitialPolicy:
    def __init__(self, settings: Optional[InterstitialSettings] = None, *, rng: Optional[random.Random] = None) -> None:
        self._settings = settings or InterstitialSettings.from_env()
        self._rng = rng or random.Random()

    @property
    def settings(self) -> InterstitialSettings:
        return self._settings

    def probability_for(self, placement: AdPlacement, *, important: bool, actions_since_last: int) -> float:
        # Forced once more than ``action_threshold`` actions passed since the last interstitial.
        if actions_since_last > self._settings.action_threshold:
            return 1.0
        base = self._settings.important_probability if important else self._settings.base_probability
        return min(1.0, base + placement.interstitial_probability_bonus)

    def should_show(self, placement: AdPlacement, *, important: bool = False, actions_since_last: int = 0) -> bool:
        probability = self.probability_for(placement, important=important, actions_since_last=actions_since_last)
        if probability >= 1.0:
            return True
        return self._rng.random() < probability


__all__ = ["InterstitialPolicy"]
