from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone

import pytest

from core.tiers import SubscriptionType, UserTier
from services.analytics import AnalyticsDispatcher
from services.observable import ServiceNotInitializedError
from services.pricing_tier_service import PricingTierService
from services.state_store import USER_ENTITLEMENTS_KEY, load_json_record


def _service(store, clock, recorder) -> PricingTierService:
    service = PricingTierService(store, analytics=AnalyticsDispatcher(recorder, clock=clock), clock=clock)
    service.initialize()
    return service


def test_queries_require_initialize(memory_store, clock) -> None:
    service = PricingTierService(memory_store, clock=clock)
    with pytest.raises(ServiceNotInitializedError):
        service.is_premium_now()


def test_fresh_user_is_free(memory_store, clock, recorder) -> None:
    service = _service(memory_store, clock, recorder)
    assert service.current_tier is UserTier.FREE
    assert not service.is_premium_now()
    assert service.get_remaining_voice_notes() == 10
    assert service.get_remaining_exports() == 5


def test_voice_note_counter_resets_next_month(memory_store, clock, recorder) -> None:
    clock.set(datetime(2024, 3, 30, 9, 0, tzinfo=timezone.utc))
    service = _service(memory_store, clock, recorder)
    for expected in range(1, 8):
        assert service.increment_voice_note_usage() == expected
    assert service.voice_notes_used() == 7

    clock.set(datetime(2024, 4, 2, 9, 0, tzinfo=timezone.utc))
    assert service.voice_notes_used() == 0
    assert service.increment_voice_note_usage() == 1


def test_export_limit_and_remaining(memory_store, clock, recorder) -> None:
    service = _service(memory_store, clock, recorder)
    for _ in range(5):
        service.increment_export_usage()
    assert service.has_reached_export_limit()
    assert service.get_remaining_exports() == 0

    assert service.activate_subscription(SubscriptionType.MONTHLY, "premium_monthly")
    assert not service.has_reached_export_limit()
    assert service.get_remaining_exports() == -1


def test_activate_monthly_defaults_end_date(memory_store, clock, recorder) -> None:
    service = _service(memory_store, clock, recorder)
    changes = []
    service.on_change(lambda: changes.append(True))

    assert service.activate_subscription("monthly", "premium_monthly", "sub-1")

    record = service.current_entitlements
    assert record.tier is UserTier.PREMIUM
    assert record.subscription_end_date == clock.now + timedelta(days=30)
    assert record.subscription_start_date == clock.now
    assert service.is_premium_now()
    assert changes == [True]
    completed = recorder.of("upgrade_completed")
    assert completed and completed[0]["product_id"] == "premium_monthly"
    persisted = load_json_record(memory_store, USER_ENTITLEMENTS_KEY)
    assert persisted["subscriptionType"] == "monthly"


@pytest.mark.parametrize(
    "args,kwargs",
    [
        (("lifetime", "premium_lifetime", None), {"end_date": datetime(2030, 1, 1, tzinfo=timezone.utc)}),
        (("trial", "premium_trial"), {}),
        (("none", "premium"), {}),
        (("monthly", "   "), {}),
        (("monthly", "premium_monthly"), {"tier": "free"}),
        (("annual", "premium_annual"), {"end_date": datetime(2024, 3, 1, tzinfo=timezone.utc)}),
    ],
)
def test_invalid_activation_is_rejected_without_mutation(memory_store, clock, recorder, args, kwargs) -> None:
    service = _service(memory_store, clock, recorder)
    before = service.current_entitlements

    assert service.activate_subscription(*args, **kwargs) is False

    assert service.current_entitlements == before
    assert recorder.names() == ["upgrade_failed"]


def test_lifetime_activation(memory_store, clock, recorder) -> None:
    service = _service(memory_store, clock, recorder)
    assert service.activate_subscription(SubscriptionType.LIFETIME, "premium_lifetime", tier=UserTier.PRO)
    clock.advance(days=5000)
    assert service.is_premium_now()
    assert service.current_tier is UserTier.PRO
    assert not service.needs_renewal()
    assert service.cancel_subscription() is False


def test_cancel_keeps_access_until_end(memory_store, clock, recorder) -> None:
    service = _service(memory_store, clock, recorder)
    service.activate_subscription("annual", "premium_annual")
    assert service.cancel_subscription("too_expensive")
    assert service.cancel_subscription("again") is False
    assert service.current_entitlements.cancelled_at == clock.now
    assert service.is_premium_now()
    assert recorder.of("subscription_cancelled")[0]["reason"] == "too_expensive"

    clock.advance(days=366)
    assert service.needs_renewal()
    assert service.reset_lapsed_subscription()
    assert service.current_entitlements.subscription_type is SubscriptionType.NONE
    assert "subscription_expired" in recorder.names()
    assert service.reset_lapsed_subscription() is False


def test_trial_hooks(memory_store, clock, recorder) -> None:
    service = _service(memory_store, clock, recorder)
    ends = clock.now + timedelta(days=7)
    assert service.start_trial_entitlement(UserTier.PREMIUM, clock.now, ends)
    assert service.start_trial_entitlement(UserTier.PREMIUM, clock.now, ends) is False
    assert service.is_trial_active_now()
    assert service.extend_trial_entitlement(ends + timedelta(days=3))
    assert service.extend_trial_entitlement(ends) is False

    clock.advance(days=9, hours=12)
    assert service.is_trial_expiring_soon()
    assert service.revoke_trial_entitlement()
    assert not service.is_premium_now()
    assert service.revoke_trial_entitlement() is False


def test_trial_entitlement_refused_for_paying_user(memory_store, clock, recorder) -> None:
    service = _service(memory_store, clock, recorder)
    service.activate_subscription("monthly", "premium_monthly")
    assert service.start_trial_entitlement("pro", clock.now, clock.now + timedelta(days=14)) is False
    assert service.revoke_trial_entitlement() is False
    assert service.current_entitlements.subscription_type is SubscriptionType.MONTHLY


def test_corrupt_blob_resets_to_free_default(memory_store, clock, recorder) -> None:
    memory_store.set(USER_ENTITLEMENTS_KEY, '{"tier": "premium", "subscriptionType": ')
    service = _service(memory_store, clock, recorder)

    record = service.current_entitlements
    assert record.tier is UserTier.FREE
    assert record.subscription_type is SubscriptionType.NONE
    assert record.voice_notes.count == 0
    assert load_json_record(memory_store, USER_ENTITLEMENTS_KEY)["tier"] == "free"


def test_state_survives_reload(file_store, clock, recorder) -> None:
    service = _service(file_store, clock, recorder)
    service.activate_subscription("annual", "premium_annual", "sub-9")
    service.increment_voice_note_usage()

    reloaded = _service(file_store, clock, recorder)
    assert reloaded.current_entitlements == service.current_entitlements
    assert reloaded.voice_notes_used() == 1


def test_tracking_helpers_and_clear(memory_store, clock, recorder) -> None:
    service = _service(memory_store, clock, recorder)
    service.track_upgrade_initiated("premium_monthly", "settings")
    service.handle_failed_purchase("premium_monthly", "user_cancelled")
    service.track_free_limit_reached("export")
    service.activate_subscription("monthly", "premium_monthly")
    service.clear_data()

    assert recorder.names() == [
        "upgrade_initiated",
        "upgrade_failed",
        "feature_limit_reached",
        "upgrade_completed",
        "entitlements_reset",
    ]
    assert recorder.of("feature_limit_reached")[0]["feature"] == "export"
    assert not service.is_premium_now()
    assert all("timestamp" in props for _, props in recorder.events)


def test_messaging_reflects_current_limits(memory_store, clock, recorder) -> None:
    service = _service(memory_store, clock, recorder)
    message = service.get_upgrade_messaging("voice_note_limit")
    assert "10 voice notes" in message["message"]
    assert message["cta"] == "Upgrade Now"


def test_concurrent_increments_are_serialized(file_store, clock, recorder) -> None:
    service = _service(file_store, clock, recorder)
    start = threading.Barrier(8)

    def _worker() -> None:
        start.wait()
        for _ in range(50):
            service.increment_voice_note_usage()

    workers = [threading.Thread(target=_worker) for _ in range(8)]
    for worker in workers:
        worker.start()
    for worker in workers:
        worker.join()

    assert service.voice_notes_used() == 400
    persisted = load_json_record(file_store, USER_ENTITLEMENTS_KEY)
    assert persisted["voiceNotes"]["count"] == 400


def test_limit_events_use_tier_in_effect(memory_store, clock, recorder) -> None:
    service = _service(memory_store, clock, recorder)
    service.activate_subscription("monthly", "premium_monthly", end_date=clock.now + timedelta(days=1))
    service.track_free_limit_reached("export")

    clock.advance(days=2)
    assert service.needs_renewal()
    service.track_free_limit_reached("export")

    active, lapsed = recorder.of("feature_limit_reached")
    assert active["limit_type"] == "premium"
    assert lapsed["limit_type"] == "free"
    assert lapsed["tier"] == "free"
    assert lapsed["is_premium"] is False
