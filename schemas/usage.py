from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field, model_validator


class UsageCounterSummary(BaseModel):
    used: int = Field(ge=0)
    limit: int = Field(ge=-1)
    remaining: int = Field(ge=-1)
    unlimited: bool

    @model_validator(mode="after")
    def _check_unlimited(self) -> "UsageCounterSummary":
        if self.unlimited != (self.limit == -1):
            raise ValueError("unlimited flag must match a -1 limit")
        return self


class FeatureFlagsSummary(BaseModel):
    cloudSync: bool
    advancedDrawing: bool
    customThemes: bool
    adFree: bool
    unlimitedBackups: bool
    ocr: bool


class TrialSummary(BaseModel):
    isInTrial: bool
    daysRemaining: int = Field(ge=0)
    canStartTrial: bool


class UsageSummary(BaseModel):
    tier: Literal["free", "premium", "pro", "enterprise"]
    isPremium: bool
    voiceNotes: UsageCounterSummary
    exports: UsageCounterSummary
    features: FeatureFlagsSummary
    trial: TrialSummary


__all__ = [
    "FeatureFlagsSummary",
    "TrialSummary",
    "UsageCounterSummary",
    "UsageSummary",
]
