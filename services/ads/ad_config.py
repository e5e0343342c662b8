"""Static ad placement registry, per-format minimum intervals and interstitial odds."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Dict, FrozenSet, Iterable, List, Mapping, Optional, Tuple

from core.env import env_float, env_int


class AdConfigError(ValueError):
    """Raised when the placement registry is inconsistent."""


class AdFormat(str, Enum):
    BANNER = "banner"
    INTERSTITIAL = "interstitial"
    NATIVE = "native"
    REWARDED_VIDEO = "rewarded_video"

    @property
    def display_name(self) -> str:
        return {
            AdFormat.BANNER: "Banner Ad",
            AdFormat.INTERSTITIAL: "Interstitial Ad",
            AdFormat.NATIVE: "Native Ad",
            AdFormat.REWARDED_VIDEO: "Rewarded Video",
        }[self]


_DEFAULT_MIN_INTERVAL_MINUTES: Dict[AdFormat, int] = {
    AdFormat.BANNER: 0,
    AdFormat.NATIVE: 5,
    AdFormat.REWARDED_VIDEO: 15,
    AdFormat.INTERSTITIAL: 30,
}


def _load_min_intervals() -> Dict[AdFormat, timedelta]:
    intervals: Dict[AdFormat, timedelta] = {}
    for ad_format, default in _DEFAULT_MIN_INTERVAL_MINUTES.items():
        minutes = env_int(f"ADS_MIN_INTERVAL_{ad_format.name}_MINUTES", default, minimum=0)
        intervals[ad_format] = timedelta(minutes=minutes)
    return intervals


FORMAT_MIN_INTERVALS: Mapping[AdFormat, timedelta] = _load_min_intervals()


@dataclass(frozen=True, slots=True)
class InterstitialSettings:
    base_probability: float = 0.15
    important_probability: float = 0.25
    action_threshold: int = 3

    def __post_init__(self) -> None:
        for value in (self.base_probability, self.important_probability):
            if not 0.0 <= value <= 1.0:
                raise AdConfigError(f"interstitial probability out of range: {value}")
        if self.action_threshold < 0:
            raise AdConfigError("interstitial action threshold must be >= 0")

    @classmethod
    def from_env(cls) -> "InterstitialSettings":
        return cls(
            base_probability=env_float("ADS_INTERSTITIAL_BASE_PROBABILITY", 0.15, minimum=0.0, maximum=1.0),
            important_probability=env_float(
                "ADS_INTERSTITIAL_IMPORTANT_PROBABILITY", 0.25, minimum=0.0, maximum=1.0
            ),
            action_threshold=env_int("ADS_INTERSTITIAL_ACTION_THRESHOLD", 3, minimum=0),
        )


@dataclass(frozen=True, slots=True)
class AdPlacement:
    id: str
    name: str
    screen_location: str
    supported_formats: FrozenSet[AdFormat]
    format_priority: Tuple[AdFormat, ...]
    session_limit: int
    ab_test_enabled: bool = False
    interstitial_probability_bonus: float = 0.0

    def validate(self) -> None:
        if not self.id:
            raise AdConfigError("placement id must not be empty")
        if not self.format_priority:
            raise AdConfigError(f"placement {self.id} has no format priority")
        unsupported = [fmt.value for fmt in self.format_priority if fmt not in self.supported_formats]
        if unsupported:
            raise AdConfigError(f"placement {self.id} prioritises unsupported formats: {unsupported}")
        if len(set(self.format_priority)) != len(self.format_priority):
            raise AdConfigError(f"placement {self.id} lists a format twice")
        if self.session_limit < 0:
            raise AdConfigError(f"placement {self.id} has a negative session limit")
        if not 0.0 <= self.interstitial_probability_bonus <= 1.0:
            raise AdConfigError(f"placement {self.id} has an invalid interstitial bonus")

    def supports(self, ad_format: AdFormat) -> bool:
        return ad_format in self.supported_formats


def _placement(
    placement_id: str,
    name: str,
    location: str,
    priority: Iterable[AdFormat],
    session_limit: int,
    *,
    ab_test_enabled: bool = False,
    interstitial_bonus: float = 0.0,
) -> AdPlacement:
    ordered = tuple(priority)
    return AdPlacement(
        id=placement_id,
        name=name,
        screen_location=location,
        supported_formats=frozenset(ordered),
        format_priority=ordered,
        session_limit=session_limit,
        ab_test_enabled=ab_test_enabled,
        interstitial_probability_bonus=interstitial_bonus,
    )


DEFAULT_PLACEMENTS: Tuple[AdPlacement, ...] = (
    _placement(
        "home_screen", "Home Screen", "home", (AdFormat.NATIVE, AdFormat.BANNER), 10, ab_test_enabled=True
    ),
    _placement(
        "note_list",
        "Note List",
        "notes",
        (AdFormat.BANNER, AdFormat.NATIVE, AdFormat.INTERSTITIAL),
        15,
        ab_test_enabled=True,
        interstitial_bonus=0.1,
    ),
    _placement("note_details", "Note Details", "note_editor", (AdFormat.NATIVE, AdFormat.BANNER), 8),
    _placement("settings", "Settings", "settings", (AdFormat.BANNER, AdFormat.NATIVE), 5),
    _placement(
        "search_results", "Search Results", "search", (AdFormat.NATIVE, AdFormat.BANNER), 12, ab_test_enabled=True
    ),
    _placement("folder_organization", "Folder Organization", "folders", (AdFormat.NATIVE, AdFormat.BANNER), 6),
)


class PlacementRegistry:
    """Validated, read-only lookup of placements by id."""

    def __init__(self, placements: Iterable[AdPlacement] = DEFAULT_PLACEMENTS) -> None:
        by_id: Dict[str, AdPlacement] = {}
        for placement in placements:
            placement.validate()
            if placement.id in by_id:
                raise AdConfigError(f"duplicate placement id: {placement.id}")
            by_id[placement.id] = placement
        self._placements = by_id

    def get(self, placement_id: str) -> Optional[AdPlacement]:
        return self._placements.get(placement_id)

    def ids(self) -> List[str]:
        return list(self._placements)

    def __iter__(self):
        return iter(self._placements.values())

    def __len__(self) -> int:
        return len(self._placements)


__all__ = [
    "AdConfigError",
    "AdFormat",
    "AdPlacement",
    "DEFAULT_PLACEMENTS",
    "FORMAT_MIN_INTERVALS",
    "InterstitialSettings",
    "PlacementRegistry",
]
