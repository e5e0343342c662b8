from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Generator, List, Tuple

import pytest

from services import experiment_service, tier_limits
from services.state_store import InMemoryStateStore, JsonDirectoryStateStore

START = datetime(2024, 3, 10, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced clock injected wherever services take ``clock=``."""

    def __init__(self, start: datetime = START) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> datetime:
        self.now = self.now + timedelta(**delta)
        return self.now

    def set(self, moment: datetime) -> None:
        self.now = moment


class RecordingAnalytics:
    def __init__(self) -> None:
        self.events: List[Tuple[str, Dict[str, Any]]] = []

    def __call__(self, event_name: str, properties: Dict[str, Any]) -> None:
        self.events.append((event_name, properties))

    def names(self) -> List[str]:
        return [name for name, _ in self.events]

    def of(self, event_name: str) -> List[Dict[str, Any]]:
        return [props for name, props in self.events if name == event_name]

    def clear(self) -> None:
        self.events.clear()


@pytest.fixture(autouse=True)
def _isolated_config(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.delenv("TIER_LIMITS_FILE", raising=False)
    monkeypatch.delenv("EXPERIMENTS_CONFIG_FILE", raising=False)
    monkeypatch.delenv("MONETIZATION_STATE_DIR", raising=False)
    tier_limits.reset_state_for_tests()
    experiment_service.reset_state_for_tests()
    yield
    tier_limits.reset_state_for_tests()
    experiment_service.reset_state_for_tests()


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def recorder() -> RecordingAnalytics:
    return RecordingAnalytics()


@pytest.fixture()
def memory_store() -> InMemoryStateStore:
    return InMemoryStateStore()


@pytest.fixture()
def file_store(tmp_path: Path) -> JsonDirectoryStateStore:
    return JsonDirectoryStateStore(tmp_path / "state")
