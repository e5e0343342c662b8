"""Allow/deny decisions for metered and premium-only features.

Count checks take the caller's current count; monthly usage checks read the
live counters owned by :class:`PricingTierService`. A denial records a
``feature_limit_reached`` event and, when an experiment service is wired in,
carries the ``paywall_headline`` variant the UI should use for upsell copy.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from core.logging import get_logger
from services import engine_metrics
from services.pricing_tier_service import PricingTierService
from services.tier_limits import TierLimits
from services.upgrade_messaging import (
    PREMIUM_FEATURE_HIGHLIGHTS,
    limit_descriptions,
    paywall_headline,
    upgrade_messaging,
)
from schemas.usage import UsageSummary

if TYPE_CHECKING:  # pragma: no cover
    from services.experiment_service import ExperimentAssignmentService
    from services.trial_service import TrialService

logger = get_logger(__name__)

PAYWALL_EXPERIMENT_ID = "paywall_headline"


@dataclass(frozen=True, slots=True)
class LimitResult:
    allowed: bool
    limit_message: Optional[str] = None
    upgrade_message: Optional[str] = None
    feature: Optional[str] = None
    upsell_headline: Optional[str] = None
    upsell_variant: Optional[str] = None

    @classmethod
    def allow(cls, feature: Optional[str] = None) -> "LimitResult":
        return cls(allowed=True, feature=feature)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allowed": self.allowed,
            "limitMessage": self.limit_message,
            "upgradeMessage": self.upgrade_message,
            "feature": self.feature,
            "upsellHeadline": self.upsell_headline,
            "upsellVariant": self.upsell_variant,
        }


class LimitEnforcementService:
    def __init__(
        self,
        pricing: PricingTierService,
        *,
        trials: Optional["TrialService"] = None,
        experiments: Optional["ExperimentAssignmentService"] = None,
        user_id: Optional[str] = None,
    ) -> None:
        self._pricing = pricing
        self._trials = trials
        self._experiments = experiments
        self._user_id = user_id

    def set_user_id(self, user_id: Optional[str]) -> None:
        self._user_id = user_id

    @property
    def limits(self) -> TierLimits:
        return self._pricing.current_limits

    # ------------------------------------------------------------------
    # Decision helpers
    # ------------------------------------------------------------------

    def _allow(self, feature: str) -> LimitResult:
        engine_metrics.record_decision("limits", True)
        return LimitResult.allow(feature)

    def _block(self, feature: str, context: str, limit_message: str, upgrade_message: Optional[str] = None) -> LimitResult:
        variant: Optional[str] = None
        headline: Optional[str] = None
        if self._experiments is not None and self._user_id:
            variant = self._experiments.get_variant(PAYWALL_EXPERIMENT_ID, self._user_id)
            parameters = self._experiments.get_variant_parameters(PAYWALL_EXPERIMENT_ID, self._user_id)
            headline = str(parameters.get("headline") or paywall_headline(variant))
        if upgrade_message is None:
            upgrade_message = upgrade_messaging(context, self.limits).message
        self._pricing.track_free_limit_reached(feature, upsell_variant=variant)
        engine_metrics.record_decision("limits", False)
        logger.info("limit.blocked", extra={"feature": feature, "upsell_variant": variant})
        return LimitResult(
            allowed=False,
            limit_message=limit_message,
            upgrade_message=upgrade_message,
            feature=feature,
            upsell_headline=headline,
            upsell_variant=variant,
        )

    # ------------------------------------------------------------------
    # Count based
    # ------------------------------------------------------------------

    def can_create_note(self, current_count: int) -> LimitResult:
        limit = self.limits.max_notes
        if TierLimits.is_unlimited(limit) or current_count < limit:
            return self._allow("note_creation")
        return self._block(
            "note_creation",
            "note_limit",
            f"You've reached the {limit} note limit for free users.",
        )

    def can_add_attachment(self, current_count: int) -> LimitResult:
        limit = self.limits.max_attachments_per_note
        if TierLimits.is_unlimited(limit) or current_count < limit:
            return self._allow("attachments")
        return self._block(
            "attachments",
            "attachments",
            f"You can only add {limit} attachments per note on the free plan.",
        )

    def can_add_attachment_size(self, file_size_mb: float) -> LimitResult:
        limit = self.limits.max_attachment_size_mb
        if TierLimits.is_unlimited(limit) or file_size_mb <= limit:
            return self._allow("attachment_size")
        message = (
            f"File size exceeds {limit}MB limit for free users."
            if not self._pricing.is_premium_now()
            else f"File size exceeds the {limit}MB attachment limit."
        )
        return self._block("attachment_size", "attachment_size", message)

    # ------------------------------------------------------------------
    # Usage based
    # ------------------------------------------------------------------

    def can_record_voice_note(self) -> LimitResult:
        limit = self.limits.max_voice_notes_per_month
        engine_metrics.record_usage_remaining("voice_notes", self._pricing.get_remaining_voice_notes())
        if not self._pricing.has_reached_voice_note_limit():
            return self._allow("voice_note")
        return self._block(
            "voice_note",
            "voice_note_limit",
            f"You've used all {limit} voice notes this month.",
        )

    def can_export_notes(self) -> LimitResult:
        limit = self.limits.max_exports_per_month
        engine_metrics.record_usage_remaining("exports", self._pricing.get_remaining_exports())
        if not self._pricing.has_reached_export_limit():
            return self._allow("export")
        return self._block(
            "export",
            "export_limit",
            f"You've used all {limit} exports this month.",
        )

    # ------------------------------------------------------------------
    # Premium-only features
    # ------------------------------------------------------------------

    def _feature_gate(self, enabled: bool, feature: str, context: str, limit_message: str) -> LimitResult:
        if enabled and self._pricing.is_premium_now():
            return self._allow(feature)
        return self._block(feature, context, limit_message)

    def can_access_cloud_sync(self) -> LimitResult:
        return self._feature_gate(self.limits.has_cloud_sync, "cloud_sync", "cloud_sync", "Cloud sync is a Premium feature.")

    def can_access_advanced_drawing_tools(self) -> LimitResult:
        return self._feature_gate(
            self.limits.has_advanced_drawing_tools,
            "advanced_drawing",
            "advanced_drawing",
            "Advanced drawing tools are a Premium feature.",
        )

    def can_access_custom_themes(self) -> LimitResult:
        return self._feature_gate(
            self.limits.has_custom_themes,
            "custom_themes",
            "custom_themes",
            "Custom themes are a Premium feature.",
        )

    def can_access_ocr(self) -> LimitResult:
        return self._feature_gate(
            self.limits.has_ocr_text_recognition,
            "ocr",
            "ocr",
            "OCR text recognition is a Premium feature.",
        )

    def can_access_unlimited_backups(self) -> LimitResult:
        return self._feature_gate(
            self.limits.has_unlimited_backups,
            "unlimited_backups",
            "unlimited_backups",
            "Unlimited backups are a Premium feature.",
        )

    def should_show_ads(self) -> bool:
        return not self._pricing.is_premium_now()

    # ------------------------------------------------------------------
    # UI snapshots
    # ------------------------------------------------------------------

    def _can_start_trial(self) -> bool:
        if self._trials is not None:
            return bool(self._trials.get_available_trials())
        return self._pricing.current_entitlements.can_start_trial

    def get_usage_summary(self) -> Dict[str, Any]:
        """Single snapshot backing the settings/usage screen."""
        now = self._pricing.now()
        record = self._pricing.current_entitlements
        limits = self.limits
        summary = UsageSummary.model_validate(
            {
                "tier": self._pricing.current_tier.value,
                "isPremium": self._pricing.is_premium_now(),
                "voiceNotes": {
                    "used": self._pricing.voice_notes_used(),
                    "limit": limits.max_voice_notes_per_month,
                    "remaining": self._pricing.get_remaining_voice_notes(),
                    "unlimited": TierLimits.is_unlimited(limits.max_voice_notes_per_month),
                },
                "exports": {
                    "used": self._pricing.exports_used(),
                    "limit": limits.max_exports_per_month,
                    "remaining": self._pricing.get_remaining_exports(),
                    "unlimited": TierLimits.is_unlimited(limits.max_exports_per_month),
                },
                "features": {
                    "cloudSync": limits.has_cloud_sync,
                    "advancedDrawing": limits.has_advanced_drawing_tools,
                    "customThemes": limits.has_custom_themes,
                    "adFree": limits.is_ad_free,
                    "unlimitedBackups": limits.has_unlimited_backups,
                    "ocr": limits.has_ocr_text_recognition,
                },
                "trial": {
                    "isInTrial": record.is_in_trial_at(now),
                    "daysRemaining": record.trial_days_remaining_at(now),
                    "canStartTrial": self._can_start_trial(),
                },
            }
        )
        return summary.model_dump()

    def get_current_limit_descriptions(self) -> List[str]:
        return limit_descriptions(self.limits)

    def get_premium_feature_highlights(self) -> List[str]:
        return list(PREMIUM_FEATURE_HIGHLIGHTS)

    def get_upgrade_messaging(self, context: str) -> Dict[str, str]:
        return self._pricing.get_upgrade_messaging(context)


__all__ = ["LimitEnforcementService", "LimitResult", "PAYWALL_EXPERIMENT_ID"]
