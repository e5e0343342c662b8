from __future__ import annotations

import json
from collections import Counter
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from services import experiment_service
from services.analytics import AnalyticsDispatcher
from services.experiment_service import (
    CONTROL_VARIANT,
    Experiment,
    ExperimentAssignmentService,
    ExperimentConfigError,
    ExperimentRegistry,
    ExperimentVariant,
    bucket_for,
)
from services.observable import ServiceNotInitializedError
from services.state_store import EXPERIMENT_OVERRIDES_KEY, USER_GROUP_ASSIGNMENTS_KEY, load_json_record


def _service(store, clock, recorder, registry=None) -> ExperimentAssignmentService:
    service = ExperimentAssignmentService(
        store,
        analytics=AnalyticsDispatcher(recorder, clock=clock),
        registry=registry,
        clock=clock,
    )
    service.initialize()
    return service


def _experiment(experiment_id: str = "onboarding", **kwargs) -> Experiment:
    return Experiment(
        id=experiment_id,
        variants=(
            ExperimentVariant("control", 50, parameters={"steps": 3}),
            ExperimentVariant("short", 50, parameters={"steps": 1}),
        ),
        **kwargs,
    )


def test_requires_initialize(memory_store, clock) -> None:
    service = ExperimentAssignmentService(memory_store, clock=clock)
    with pytest.raises(ServiceNotInitializedError):
        service.get_variant("paywall_headline", "u1")


def test_variant_is_stable(memory_store, clock, recorder) -> None:
    service = _service(memory_store, clock, recorder)
    first = service.get_variant("paywall_headline", "user-1")
    assert first in {"control", "benefit_focused"}
    assert all(service.get_variant("paywall_headline", "user-1") == first for _ in range(25))
    assert recorder.names() == ["ab_test_exposure"]
    assert recorder.events[0][1]["variant_id"] == first


def test_bucket_is_deterministic() -> None:
    assert bucket_for("ad_timing", "abc") == bucket_for("ad_timing", "abc")
    assert 0 <= bucket_for("ad_timing", "abc") < 100


@pytest.mark.parametrize(
    "experiment_id,expected",
    [
        ("paywall_headline", {"control": 50, "benefit_focused": 50}),
        ("ad_timing", {"immediate": 33, "delayed": 33, "engagement_based": 34}),
        ("trial_duration", {"short_trial": 25, "standard_trial": 50, "extended_trial": 25}),
    ],
)
def test_split_approximates_allocation(memory_store, clock, recorder, experiment_id, expected) -> None:
    service = _service(memory_store, clock, recorder)
    counts = Counter(service.get_variant(experiment_id, f"synthetic-{index}") for index in range(1000))
    assert set(counts) == set(expected)
    for variant_id, percent in expected.items():
        assert abs(counts[variant_id] / 10 - percent) < 6


def test_cached_assignment_wins_over_hash(memory_store, clock, recorder) -> None:
    memory_store.set(USER_GROUP_ASSIGNMENTS_KEY, json.dumps({"paywall_headline": {"user-9": "benefit_focused"}}))
    service = _service(memory_store, clock, recorder)
    assert service.get_variant("paywall_headline", "user-9") == "benefit_focused"
    assert recorder.events == []


def test_assignments_persist(file_store, clock, recorder) -> None:
    service = _service(file_store, clock, recorder)
    variant = service.get_variant("pricing_display", "user-3")
    assert load_json_record(file_store, USER_GROUP_ASSIGNMENTS_KEY) == {"pricing_display": {"user-3": variant}}

    restarted = _service(file_store, clock, recorder)
    assert restarted.user_assignments("user-3") == {"pricing_display": variant}


def test_unknown_or_inactive_experiment_returns_control(memory_store, clock, recorder) -> None:
    registry = ExperimentRegistry(
        [
            _experiment("paused", is_active=False),
            _experiment("later", start_at=clock.now + timedelta(days=1)),
            _experiment("ended", end_at=clock.now),
        ]
    )
    service = _service(memory_store, clock, recorder, registry=registry)
    for experiment_id in ("missing", "paused", "later", "ended"):
        assert service.get_variant(experiment_id, "user-1") == CONTROL_VARIANT
    assert service.get_variant_parameters("missing", "user-1") == {}
    assert service.track_conversion("paused", "purchase", "user-1") is False
    assert recorder.events == []


def test_force_variant_is_checked_first(memory_store, clock, recorder) -> None:
    service = _service(memory_store, clock, recorder)
    assert service.force_variant("trial_duration", "extended_trial")
    assert service.get_variant("trial_duration", "anyone") == "extended_trial"
    assert service.get_variant_parameters("trial_duration", "anyone") == {
        "trial_days": 14,
        "trial_type": "extended_experience",
    }
    assert load_json_record(memory_store, EXPERIMENT_OVERRIDES_KEY) == {"trial_duration": "extended_trial"}

    assert service.force_variant("trial_duration", "nope") is False
    assert service.force_variant("nope", "control") is False
    assert service.clear_override("trial_duration")
    assert service.clear_override("trial_duration") is False


def test_conversion_uses_assigned_variant(memory_store, clock, recorder) -> None:
    service = _service(memory_store, clock, recorder)
    variant = service.get_variant("paywall_headline", "user-5")

    assert service.track_conversion("paywall_headline", "purchase", "user-5", {"revenue": 4.99})

    conversion = recorder.of("ab_test_conversion")[0]
    assert conversion["variant_id"] == variant
    assert conversion["conversion_type"] == "purchase"
    assert conversion["revenue"] == 4.99
    summary = service.get_conversion_summary()["paywall_headline"][variant]
    assert summary == {"exposures": 1, "conversions": 1, "conversion_rate": 100.0}


def test_reset_clears_assignments_not_definitions(memory_store, clock, recorder) -> None:
    service = _service(memory_store, clock, recorder)
    service.get_variant("ad_timing", "user-1")
    service.force_variant("paywall_headline", "control")

    service.reset_experiments()

    assert memory_store.get(USER_GROUP_ASSIGNMENTS_KEY) is None
    assert memory_store.get(EXPERIMENT_OVERRIDES_KEY) is None
    assert service.user_assignments("user-1") == {}
    assert service.get_experiment_status()["active_experiments"] == 4


def test_corrupt_records_reset(memory_store, clock, recorder) -> None:
    memory_store.set(USER_GROUP_ASSIGNMENTS_KEY, '{"paywall_headline": ["bad"]}')
    memory_store.set(EXPERIMENT_OVERRIDES_KEY, "not json")
    service = _service(memory_store, clock, recorder)
    assert service.user_assignments("user-1") == {}
    assert load_json_record(memory_store, USER_GROUP_ASSIGNMENTS_KEY) == {}
    assert load_json_record(memory_store, EXPERIMENT_OVERRIDES_KEY) == {}


def test_status_report(memory_store, clock, recorder) -> None:
    service = _service(memory_store, clock, recorder)
    service.get_variant("paywall_headline", "user-1")
    status = service.get_experiment_status()
    assert status["enabled"] is True
    assert status["experiments"]["paywall_headline"]["assigned_users"] == 1
    assert status["experiments"]["ad_timing"]["variants"] == ["immediate", "delayed", "engagement_based"]


@pytest.mark.parametrize(
    "variants",
    [
        (ExperimentVariant("a", 60), ExperimentVariant("b", 30)),
        (ExperimentVariant("a", 50), ExperimentVariant("a", 50)),
        (ExperimentVariant("a", 110), ExperimentVariant("b", -10)),
        (),
    ],
)
def test_registry_validation(variants) -> None:
    with pytest.raises(ExperimentConfigError):
        ExperimentRegistry([Experiment(id="broken", variants=variants)])


def test_duplicate_experiment_ids_rejected() -> None:
    with pytest.raises(ExperimentConfigError):
        ExperimentRegistry([_experiment(), _experiment()])


def test_registry_loaded_from_config_file(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    path = tmp_path / "experiments.json"
    path.write_text(
        json.dumps(
            {
                "experiments": [
                    {
                        "id": "onboarding",
                        "startDate": "2024-01-01T00:00:00Z",
                        "variants": [
                            {"id": "control", "trafficAllocation": 70},
                            {"id": "tour", "trafficAllocation": 30, "parameters": {"steps": 5}},
                        ],
                    }
                ]
            }
        ),
        encoding="utf-8",
    )
    monkeypatch.setenv("EXPERIMENTS_CONFIG_FILE", str(path))
    experiment_service.reset_state_for_tests()

    registry = experiment_service.load_experiment_registry()
    onboarding = registry.get("onboarding")
    assert len(registry) == 1
    assert onboarding.start_at == datetime(2024, 1, 1, tzinfo=timezone.utc)
    assert onboarding.variant("tour").parameters == {"steps": 5}


def test_invalid_config_file_raises(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    path = tmp_path / "experiments.json"
    path.write_text(
        json.dumps({"experiments": [{"id": "x", "variants": [{"id": "a", "trafficAllocation": 90}]}]}),
        encoding="utf-8",
    )
    monkeypatch.setenv("EXPERIMENTS_CONFIG_FILE", str(path))
    experiment_service.reset_state_for_tests()
    with pytest.raises(ExperimentConfigError):
        experiment_service.load_experiment_registry()


def test_missing_config_uses_builtin_registry() -> None:
    registry = experiment_service.load_experiment_registry()
    assert {experiment.id for experiment in registry} == {
        "paywall_headline",
        "ad_timing",
        "trial_duration",
        "pricing_display",
    }
