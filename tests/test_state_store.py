from __future__ import annotations

from pathlib import Path

import pytest

from services.state_store import (
    RECORD_KEYS,
    USER_ENTITLEMENTS_KEY,
    InMemoryStateStore,
    JsonDirectoryStateStore,
    KeyValueStore,
    StateStoreError,
    load_json_record,
    remove_record,
    save_json_record,
)


class _ExplodingStore(InMemoryStateStore):
    def set(self, key: str, value: str) -> None:
        raise StateStoreError("disk full")


def test_in_memory_store_roundtrip() -> None:
    store = InMemoryStateStore()
    assert isinstance(store, KeyValueStore)
    store.set("trial_info", "{}")
    assert store.get("trial_info") == "{}"
    assert store.keys() == ["trial_info"]
    store.remove("trial_info")
    store.remove("trial_info")
    assert store.get("trial_info") is None


def test_invalid_keys_are_rejected() -> None:
    store = InMemoryStateStore()
    with pytest.raises(ValueError):
        store.set("../escape", "x")
    with pytest.raises(ValueError):
        store.get("")


def test_directory_store_writes_one_file_per_key(tmp_path: Path) -> None:
    store = JsonDirectoryStateStore(tmp_path / "state")
    assert store.keys() == []

    assert save_json_record(store, USER_ENTITLEMENTS_KEY, {"tier": "free"})
    assert (tmp_path / "state" / "user_entitlements.json").exists()
    assert load_json_record(store, USER_ENTITLEMENTS_KEY) == {"tier": "free"}
    assert store.keys() == ["user_entitlements"]

    assert remove_record(store, USER_ENTITLEMENTS_KEY)
    assert load_json_record(store, USER_ENTITLEMENTS_KEY) is None


def test_directory_store_survives_new_instance(tmp_path: Path) -> None:
    save_json_record(JsonDirectoryStateStore(tmp_path), "conversion_attempts", 3)
    assert load_json_record(JsonDirectoryStateStore(tmp_path), "conversion_attempts") == 3


def test_load_json_record_raises_for_garbage() -> None:
    store = InMemoryStateStore({"trial_info": "{not json"})
    with pytest.raises(ValueError):
        load_json_record(store, "trial_info")


def test_save_json_record_logs_and_returns_false_on_failure() -> None:
    assert save_json_record(_ExplodingStore(), "trial_info", {"a": 1}) is False


def test_every_record_key_is_storable(tmp_path: Path) -> None:
    store = JsonDirectoryStateStore(tmp_path)
    for key in RECORD_KEYS:
        store.set(key, "{}")
    assert store.keys() == sorted(RECORD_KEYS)
