from __future__ import annotations

import random
from datetime import timedelta

import pytest

from services.ads import AdFormat, AdPlacement, AdState, AdsDecisionService, InterstitialSettings, PlacementRegistry
from services.analytics import AnalyticsDispatcher
from services.pricing_tier_service import PricingTierService
from services.state_store import AD_FREQUENCY_CAPS_KEY, load_json_record


class FixedRandom(random.Random):
    def __init__(self, value: float) -> None:
        super().__init__()
        self.value = value

    def random(self) -> float:
        return self.value


def _single(placement_id: str, ad_format: AdFormat, session_limit: int = 5) -> AdPlacement:
    return AdPlacement(
        id=placement_id,
        name=placement_id.title(),
        screen_location=placement_id,
        supported_formats=frozenset({ad_format}),
        format_priority=(ad_format,),
        session_limit=session_limit,
    )


CUSTOM_REGISTRY = PlacementRegistry(
    [
        _single("footer", AdFormat.BANNER, session_limit=2),
        _single("feed", AdFormat.NATIVE),
        _single("transition", AdFormat.INTERSTITIAL, session_limit=50),
    ]
)


def _build(store, clock, recorder, *, registry=None, rng_value=0.99):
    analytics = AnalyticsDispatcher(recorder, clock=clock)
    pricing = PricingTierService(store, analytics=analytics, clock=clock)
    pricing.initialize()
    ads = AdsDecisionService(
        store,
        pricing,
        analytics=analytics,
        registry=registry,
        rng=FixedRandom(rng_value),
        interstitial_settings=InterstitialSettings(),
    )
    ads.initialize()
    return pricing, ads


def _show(ads, placement_id: str):
    ad = ads.request_ad(placement_id)
    assert ad is not None
    assert ads.mark_loaded(ad.id)
    assert ads.mark_displayed(ad.id)
    return ad


def _show_preferred(ads, placement_id: str, ad_format: AdFormat, *, important: bool = False):
    ad = ads.request_ad(placement_id, important=important, preferred_format=ad_format)
    assert ad is not None
    assert ads.mark_loaded(ad.id)
    assert ads.mark_displayed(ad.id)
    return ad


def test_premium_users_never_see_ads(memory_store, clock, recorder) -> None:
    pricing, ads = _build(memory_store, clock, recorder)
    assert ads.should_display("home_screen").allowed

    assert pricing.activate_subscription("lifetime", "premium_lifetime")
    for placement in ads.registry:
        decision = ads.should_display(placement.id, important=True)
        assert decision.allowed is False
        assert decision.reason == "premium"
        assert ads.request_ad(placement.id) is None
    assert ads.should_show_ads() is False


def test_unknown_placement_is_a_safe_no(memory_store, clock, recorder) -> None:
    _, ads = _build(memory_store, clock, recorder)
    decision = ads.should_display("splash")
    assert decision.allowed is False
    assert decision.reason == "unknown_placement"
    assert recorder.events == []


def test_session_limit(memory_store, clock, recorder) -> None:
    _, ads = _build(memory_store, clock, recorder, registry=CUSTOM_REGISTRY)
    _show(ads, "footer")
    _show(ads, "footer")
    assert ads.session_count("footer") == 2

    decision = ads.should_display("footer")
    assert decision.allowed is False
    assert decision.reason == "session_limit"
    assert recorder.of("ad_frequency_capped")[-1]["placement_id"] == "footer"


def test_minimum_interval_per_format(memory_store, clock, recorder) -> None:
    _, ads = _build(memory_store, clock, recorder, registry=CUSTOM_REGISTRY)
    _show(ads, "feed")

    clock.advance(minutes=4, seconds=59)
    decision = ads.should_display("feed")
    assert decision.reason == "min_interval"
    assert decision.format is AdFormat.NATIVE

    clock.advance(seconds=1)
    assert ads.should_display("feed").allowed


def test_falls_back_to_next_format_in_priority(memory_store, clock, recorder) -> None:
    _, ads = _build(memory_store, clock, recorder)
    first = _show(ads, "home_screen")
    assert first.format is AdFormat.NATIVE
    decision = ads.should_display("home_screen")
    assert decision.allowed
    assert decision.format is AdFormat.BANNER


def test_ad_state_machine_and_events(memory_store, clock, recorder) -> None:
    _, ads = _build(memory_store, clock, recorder, registry=CUSTOM_REGISTRY)
    ad = ads.request_ad("footer")
    assert ad.state is AdState.LOADING
    assert ads.get_pending_ad("footer") == ad

    assert ads.mark_displayed(ad.id) is False
    assert ads.mark_loaded(ad.id)
    assert ads.mark_loaded(ad.id) is False
    assert ads.mark_displayed(ad.id)
    assert ads.get_pending_ad("footer") is None
    assert ads.mark_clicked(ad.id)
    assert ads.mark_dismissed(ad.id) is False
    assert ads.get_ad(ad.id).state is AdState.CLICKED

    assert recorder.names() == ["ad_requested", "ad_loaded", "ad_impression", "ad_click"]
    for _, props in recorder.events:
        assert props["instance_id"] == ad.id
        assert props["placement_id"] == "footer"
        assert props["format"] == "banner"


def test_failed_is_terminal_and_distinct_from_dismissed(memory_store, clock, recorder) -> None:
    _, ads = _build(memory_store, clock, recorder, registry=CUSTOM_REGISTRY)
    ad = ads.request_ad("feed")
    assert ads.mark_failed(ad.id, "no_fill")
    assert ads.mark_loaded(ad.id) is False
    assert ads.mark_dismissed(ad.id) is False
    assert ads.get_ad(ad.id).state is AdState.FAILED
    assert recorder.of("ad_load_failure")[0]["error_code"] == "no_fill"
    assert ads.session_count("feed") == 0
    assert ads.mark_clicked("ad_missing") is False


def test_interstitial_probability_gate(memory_store, clock, recorder) -> None:
    _, ads = _build(memory_store, clock, recorder, registry=CUSTOM_REGISTRY, rng_value=0.2)

    denied = ads.should_display("transition")
    assert denied.allowed is False
    assert denied.reason == "probability"
    assert recorder.of("ad_blocked")[0]["format"] == "interstitial"

    assert ads.should_display("transition", important=True).allowed

    for _ in range(4):
        ads.record_user_action()
    assert ads.actions_since_interstitial == 4
    forced = _show(ads, "transition")
    assert forced.format is AdFormat.INTERSTITIAL
    assert ads.actions_since_interstitial == 0


def test_interstitial_starvation_is_bounded(memory_store, clock, recorder) -> None:
    _, ads = _build(memory_store, clock, recorder, registry=CUSTOM_REGISTRY, rng_value=0.999)
    for _ in range(3):
        ads.record_user_action()
        assert not ads.should_display("transition").allowed
    ads.record_user_action()
    assert ads.should_display("transition").allowed


def test_pending_ads_dropped_on_upgrade(memory_store, clock, recorder) -> None:
    pricing, ads = _build(memory_store, clock, recorder)
    ad = ads.request_ad("note_details")
    assert ads.get_pending_ad("note_details") is not None

    pricing.activate_subscription("monthly", "premium_monthly")

    assert ads.get_pending_ad("note_details") is None
    assert ads.get_ad(ad.id) is None


def test_request_supersedes_pending_ad(memory_store, clock, recorder) -> None:
    _, ads = _build(memory_store, clock, recorder, registry=CUSTOM_REGISTRY)
    first = ads.request_ad("footer")
    second = ads.request_ad("footer")
    assert ads.get_ad(first.id) is None
    assert ads.get_pending_ad("footer") == second


def test_caps_persist_and_reset_daily(file_store, clock, recorder) -> None:
    _, ads = _build(file_store, clock, recorder, registry=CUSTOM_REGISTRY)
    _show(ads, "feed")
    assert ads.shown_today("feed") == 1
    persisted = load_json_record(file_store, AD_FREQUENCY_CAPS_KEY)
    assert persisted["placements"]["feed"]["shownToday"] == 1

    _, restarted = _build(file_store, clock, recorder, registry=CUSTOM_REGISTRY)
    assert restarted.session_count("feed") == 0
    assert restarted.last_shown(AdFormat.NATIVE) == clock.now
    assert restarted.should_display("feed").reason == "min_interval"

    clock.advance(days=1)
    assert restarted.shown_today("feed") == 0
    assert restarted.should_display("feed").allowed


def test_corrupt_caps_are_reset(memory_store, clock, recorder) -> None:
    memory_store.set(AD_FREQUENCY_CAPS_KEY, '{"placements": {"feed": {"shownToday": "lots"}}}')
    _, ads = _build(memory_store, clock, recorder, registry=CUSTOM_REGISTRY)
    assert ads.shown_today("feed") == 0
    assert load_json_record(memory_store, AD_FREQUENCY_CAPS_KEY)["placements"] == {}


def test_metrics_and_clear(memory_store, clock, recorder) -> None:
    _, ads = _build(memory_store, clock, recorder, registry=CUSTOM_REGISTRY)
    clicked = _show(ads, "footer")
    ads.mark_clicked(clicked.id)
    dismissed = _show(ads, "feed")
    ads.mark_dismissed(dismissed.id)

    metrics = ads.get_ad_metrics()
    assert metrics["impressions"] == 2
    assert metrics["clicks"] == 1
    assert metrics["click_through_rate"] == pytest.approx(50.0)
    assert metrics["placement_breakdown"]["feed"]["dismissals"] == 1

    ads.clear_data()
    assert ads.get_ad_metrics()["impressions"] == 0
    assert memory_store.get(AD_FREQUENCY_CAPS_KEY) is None
    assert ads.should_display("feed").allowed


def test_close_stops_listening(memory_store, clock, recorder) -> None:
    pricing, ads = _build(memory_store, clock, recorder)
    ad = ads.request_ad("settings")
    ads.close()
    pricing.activate_subscription("monthly", "premium_monthly")
    assert ads.get_ad(ad.id) is not None
    assert ads.should_display("settings").reason == "premium"


def test_custom_intervals_override_defaults(memory_store, clock, recorder) -> None:
    analytics = AnalyticsDispatcher(recorder, clock=clock)
    pricing = PricingTierService(memory_store, analytics=analytics, clock=clock)
    pricing.initialize()
    ads = AdsDecisionService(
        memory_store,
        pricing,
        analytics=analytics,
        registry=CUSTOM_REGISTRY,
        min_intervals={AdFormat.BANNER: timedelta(minutes=1)},
    )
    ads.initialize()
    _show(ads, "footer")
    assert ads.should_display("footer").reason == "min_interval"


def test_preferred_interstitial_on_default_note_list(memory_store, clock, recorder) -> None:
    _, ads = _build(memory_store, clock, recorder, rng_value=0.3)
    assert ads.should_display("note_list").format is AdFormat.BANNER

    denied = ads.should_display("note_list", preferred_format=AdFormat.INTERSTITIAL)
    assert denied.allowed is False
    assert denied.reason == "probability"
    assert denied.format is AdFormat.INTERSTITIAL

    important = ads.should_display("note_list", important=True, preferred_format=AdFormat.INTERSTITIAL)
    assert important.allowed
    assert important.format is AdFormat.INTERSTITIAL

    ad = _show_preferred(ads, "note_list", AdFormat.INTERSTITIAL, important=True)
    assert ad.format is AdFormat.INTERSTITIAL
    assert ads.last_shown(AdFormat.INTERSTITIAL) == clock.now

    clock.advance(minutes=29)
    capped = ads.should_display("note_list", important=True, preferred_format=AdFormat.INTERSTITIAL)
    assert capped.reason == "min_interval"
    assert ads.should_display("note_list").format is AdFormat.BANNER


def test_preferred_interstitial_forced_after_actions(memory_store, clock, recorder) -> None:
    _, ads = _build(memory_store, clock, recorder, rng_value=0.999)
    assert ads.request_ad("note_list", preferred_format=AdFormat.INTERSTITIAL) is None

    for _ in range(4):
        ads.record_user_action()
    ad = _show_preferred(ads, "note_list", AdFormat.INTERSTITIAL)
    assert ad.format is AdFormat.INTERSTITIAL
    assert ads.actions_since_interstitial == 0


def test_preferred_format_must_be_supported(memory_store, clock, recorder) -> None:
    _, ads = _build(memory_store, clock, recorder)
    decision = ads.should_display("home_screen", preferred_format=AdFormat.INTERSTITIAL)
    assert decision.allowed is False
    assert decision.reason == "unsupported_format"
    assert ads.request_ad("home_screen", preferred_format=AdFormat.INTERSTITIAL) is None
    assert recorder.events == []
