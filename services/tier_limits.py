"""Static per-tier quota table with an optional JSON override document."""

from __future__ import annotations

from dataclasses import asdict, dataclass, replace
from pathlib import Path
from typing import Any, Dict, Mapping

from core.logging import get_logger
from core.tiers import PAID_TIERS, UserTier, normalize_tier
from services.json_store import JsonStore

logger = get_logger(__name__)

UNLIMITED = -1

DEFAULT_TIER_LIMITS_PATH = Path("config") / "tier_limits.json"

_TIER_LIMITS_STORE = JsonStore(path_env="TIER_LIMITS_FILE", default_path=DEFAULT_TIER_LIMITS_PATH)


@dataclass(frozen=True, slots=True)
class TierLimits:
    tier: UserTier
    max_notes: int
    max_voice_notes_per_month: int
    max_exports_per_month: int
    max_sync_devices: int
    max_attachments_per_note: int
    max_attachment_size_mb: int
    has_cloud_sync: bool
    has_advanced_drawing_tools: bool
    has_custom_themes: bool
    has_unlimited_backups: bool
    has_ocr_text_recognition: bool
    is_ad_free: bool

    @staticmethod
    def is_unlimited(value: int) -> bool:
        return value == UNLIMITED

    @classmethod
    def display(cls, value: int) -> str:
        return "Unlimited" if cls.is_unlimited(value) else str(value)

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["tier"] = self.tier.value
        return payload


FREE_LIMITS = TierLimits(
    tier=UserTier.FREE,
    max_notes=100,
    max_voice_notes_per_month=10,
    max_exports_per_month=5,
    max_sync_devices=0,
    max_attachments_per_note=3,
    max_attachment_size_mb=5,
    has_cloud_sync=False,
    has_advanced_drawing_tools=False,
    has_custom_themes=False,
    has_unlimited_backups=False,
    has_ocr_text_recognition=False,
    is_ad_free=False,
)

PREMIUM_LIMITS = TierLimits(
    tier=UserTier.PREMIUM,
    max_notes=UNLIMITED,
    max_voice_notes_per_month=UNLIMITED,
    max_exports_per_month=UNLIMITED,
    max_sync_devices=UNLIMITED,
    max_attachments_per_note=UNLIMITED,
    max_attachment_size_mb=100,
    has_cloud_sync=True,
    has_advanced_drawing_tools=True,
    has_custom_themes=True,
    has_unlimited_backups=True,
    has_ocr_text_recognition=True,
    is_ad_free=True,
)

_DEFAULT_TABLE: Dict[UserTier, TierLimits] = {UserTier.FREE: FREE_LIMITS}
for _tier in PAID_TIERS:
    _DEFAULT_TABLE[_tier] = replace(PREMIUM_LIMITS, tier=_tier)

_INT_FIELDS = (
    "max_notes",
    "max_voice_notes_per_month",
    "max_exports_per_month",
    "max_sync_devices",
    "max_attachments_per_note",
    "max_attachment_size_mb",
)
_BOOL_FIELDS = (
    "has_cloud_sync",
    "has_advanced_drawing_tools",
    "has_custom_themes",
    "has_unlimited_backups",
    "has_ocr_text_recognition",
    "is_ad_free",
)


def _default_payload() -> Dict[str, Any]:
    return {"tiers": {}}


def _normalize_entry(base: TierLimits, entry: Mapping[str, Any]) -> TierLimits:
    updates: Dict[str, Any] = {}
    for key in _INT_FIELDS:
        if key not in entry:
            continue
        value = entry[key]
        if isinstance(value, bool) or not isinstance(value, int) or value < UNLIMITED:
            logger.warning("Invalid %s override for tier %s ignored: %r", key, base.tier.value, value)
            continue
        updates[key] = value
    for key in _BOOL_FIELDS:
        if key not in entry:
            continue
        value = entry[key]
        if not isinstance(value, bool):
            logger.warning("Invalid %s override for tier %s ignored: %r", key, base.tier.value, value)
            continue
        updates[key] = value
    return replace(base, **updates) if updates else base


def _merge_table(raw: Any) -> Dict[UserTier, TierLimits]:
    table = dict(_DEFAULT_TABLE)
    tiers_raw = raw.get("tiers") if isinstance(raw, Mapping) else None
    if not isinstance(tiers_raw, Mapping):
        return table
    for key, entry in tiers_raw.items():
        tier = normalize_tier(key, default=None)  # type: ignore[arg-type]
        if tier is None:
            logger.warning("Unknown tier %r in tier limits override ignored.", key)
            continue
        if not isinstance(entry, Mapping):
            continue
        table[tier] = _normalize_entry(table[tier], entry)
    return table


def load_tier_limits(*, reload: bool = False) -> Dict[UserTier, TierLimits]:
    """Return the per-tier table with any ``TIER_LIMITS_FILE`` overrides applied."""

    return _TIER_LIMITS_STORE.load(loader=_merge_table, fallback=_default_payload, reload=reload)


def limits_for_tier(tier: UserTier | str, *, reload: bool = False) -> TierLimits:
    resolved = normalize_tier(tier)
    return load_tier_limits(reload=reload).get(resolved, FREE_LIMITS)


def reset_state_for_tests() -> None:
    _TIER_LIMITS_STORE.clear_cache()


__all__ = [
    "FREE_LIMITS",
    "PREMIUM_LIMITS",
    "TierLimits",
    "UNLIMITED",
    "limits_for_tier",
    "load_tier_limits",
    "reset_state_for_tests",
]
