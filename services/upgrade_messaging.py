"""Upsell copy shown next to a denied limit check."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional

from services.tier_limits import PREMIUM_LIMITS, TierLimits


@dataclass(frozen=True, slots=True)
class UpgradeMessage:
    title: str
    message: str
    cta: str

    def to_dict(self) -> Dict[str, str]:
        return {"title": self.title, "message": self.message, "cta": self.cta}


_DEFAULT_MESSAGE = UpgradeMessage(
    title="Upgrade to Premium",
    message="Unlock all features with QuickNote Pro Premium!",
    cta="Upgrade Now",
)

# Headlines for the ``paywall_headline`` experiment, keyed by variant id.
PAYWALL_HEADLINES: Dict[str, str] = {
    "control": "Upgrade to Premium",
    "benefit_focused": "Get Unlimited Notes & Voice Recording",
}


def upgrade_messaging(context: str, limits: TierLimits) -> UpgradeMessage:
    if context == "voice_note_limit":
        return UpgradeMessage(
            title="Voice Note Limit Reached",
            message=(
                f"You've used all {limits.max_voice_notes_per_month} voice notes this month. "
                "Upgrade to Premium for unlimited voice notes!"
            ),
            cta="Upgrade Now",
        )
    if context == "export_limit":
        return UpgradeMessage(
            title="Export Limit Reached",
            message=(
                f"You've used all {limits.max_exports_per_month} exports this month. "
                "Upgrade to Premium for unlimited exports!"
            ),
            cta="Upgrade Now",
        )
    if context == "note_limit":
        return UpgradeMessage(
            title="Note Limit Reached",
            message=f"You've reached the {limits.max_notes} note limit. Upgrade to Premium for unlimited notes!",
            cta="Upgrade Now",
        )
    if context == "cloud_sync":
        return UpgradeMessage(
            title="Cloud Sync Unavailable",
            message="Cloud sync is a Premium feature. Upgrade to sync your notes across all devices!",
            cta="Enable Sync",
        )
    if context == "custom_themes":
        return UpgradeMessage(
            title="Custom Themes",
            message="Custom themes are available with Premium. Personalize your note-taking experience!",
            cta="Unlock Themes",
        )
    if context == "advanced_drawing":
        return UpgradeMessage(
            title="Advanced Drawing Tools",
            message="Upgrade to Premium for professional drawing tools with layers and effects!",
            cta="Upgrade Now",
        )
    if context == "ocr":
        return UpgradeMessage(
            title="OCR Text Recognition",
            message="Upgrade to Premium to extract text from images automatically!",
            cta="Upgrade Now",
        )
    if context == "attachments":
        return UpgradeMessage(
            title="Attachment Limit Reached",
            message="Upgrade to Premium for unlimited attachments per note!",
            cta="Upgrade Now",
        )
    if context == "attachment_size":
        return UpgradeMessage(
            title="File Too Large",
            message=(
                "Upgrade to Premium for larger file attachments "
                f"(up to {PREMIUM_LIMITS.max_attachment_size_mb}MB)!"
            ),
            cta="Upgrade Now",
        )
    if context == "unlimited_backups":
        return UpgradeMessage(
            title="Unlimited Backups",
            message="Upgrade to Premium for unlimited cloud backups and restore points!",
            cta="Upgrade Now",
        )
    return _DEFAULT_MESSAGE


def paywall_headline(variant_id: Optional[str]) -> str:
    return PAYWALL_HEADLINES.get(variant_id or "control", PAYWALL_HEADLINES["control"])


def limit_descriptions(limits: TierLimits) -> list[str]:
    if limits.tier.is_paid:
        return [
            "Unlimited notes",
            "Unlimited voice notes",
            "Unlimited exports",
            "Unlimited attachments",
            f"Files up to {limits.max_attachment_size_mb}MB",
            "Cloud sync across devices",
            "Custom themes & advanced drawing",
            "Ad-free experience",
            "OCR text recognition",
        ]
    return [
        f"Up to {limits.max_notes} notes",
        f"{limits.max_voice_notes_per_month} voice notes per month",
        f"{limits.max_exports_per_month} exports per month",
        f"Up to {limits.max_attachments_per_note} attachments per note",
        f"Files up to {limits.max_attachment_size_mb}MB",
        "Local storage only",
        "Standard themes only",
        "Includes ads",
    ]


PREMIUM_FEATURE_HIGHLIGHTS = (
    "Unlimited everything - notes, voice recordings, exports",
    "Sync across all your devices seamlessly",
    "Advanced drawing tools with layers and effects",
    "OCR text recognition from images",
    "Custom themes and personalization",
    "Ad-free, distraction-free experience",
    "Unlimited cloud backups and restore points",
    f"Larger file attachments (up to {PREMIUM_LIMITS.max_attachment_size_mb}MB)",
)


__all__ = [
    "PAYWALL_HEADLINES",
    "PREMIUM_FEATURE_HIGHLIGHTS",
    "UpgradeMessage",
    "limit_descriptions",
    "paywall_headline",
    "upgrade_messaging",
]
