"""Key-value persistence used by the monetization services.

Each service owns a handful of fixed record keys and stores them as opaque
JSON strings. The store only moves strings around; decoding (and recovering
from corrupt blobs) is the owning service's job.
"""

from __future__ import annotations

import json
import re
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from filelock import Timeout

from core.logging import get_logger
from services.json_store import write_text_document

logger = get_logger(__name__)

USER_ENTITLEMENTS_KEY = "user_entitlements"
TRIAL_INFO_KEY = "trial_info"
TRIAL_HISTORY_KEY = "trial_history"
CONVERSION_ATTEMPTS_KEY = "conversion_attempts"
AD_FREQUENCY_CAPS_KEY = "ad_frequency_caps"
USER_GROUP_ASSIGNMENTS_KEY = "user_group_assignments"
EXPERIMENT_OVERRIDES_KEY = "experiment_overrides"

RECORD_KEYS = (
    USER_ENTITLEMENTS_KEY,
    TRIAL_INFO_KEY,
    TRIAL_HISTORY_KEY,
    CONVERSION_ATTEMPTS_KEY,
    AD_FREQUENCY_CAPS_KEY,
    USER_GROUP_ASSIGNMENTS_KEY,
    EXPERIMENT_OVERRIDES_KEY,
)

_KEY_PATTERN = re.compile(r"^[a-z0-9_]{1,64}$")


class StateStoreError(RuntimeError):
    """Raised when the backing store cannot complete a write."""


@runtime_checkable
class KeyValueStore(Protocol):
    def get(self, key: str) -> Optional[str]:
        ...

    def set(self, key: str, value: str) -> None:
        ...

    def remove(self, key: str) -> None:
        ...

    def keys(self) -> List[str]:
        ...


def _validate_key(key: str) -> str:
    if not _KEY_PATTERN.match(key or ""):
        raise ValueError(f"invalid state key: {key!r}")
    return key


class InMemoryStateStore:
    """Process-local store; used by tests and when no state dir is configured."""

    def __init__(self, initial: Optional[Dict[str, str]] = None) -> None:
        self._items: Dict[str, str] = dict(initial or {})
        self._lock = threading.RLock()

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._items.get(_validate_key(key))

    def set(self, key: str, value: str) -> None:
        with self._lock:
            self._items[_validate_key(key)] = str(value)

    def remove(self, key: str) -> None:
        with self._lock:
            self._items.pop(_validate_key(key), None)

    def keys(self) -> List[str]:
        with self._lock:
            return sorted(self._items)


class JsonDirectoryStateStore:
    """Persist each record as ``<root>/<key>.json`` guarded by a file lock."""

    def __init__(self, root: Path) -> None:
        self._root = Path(root)
        self._lock = threading.RLock()

    @property
    def root(self) -> Path:
        return self._root

    def _path_for(self, key: str) -> Path:
        return self._root / f"{_validate_key(key)}.json"

    def get(self, key: str) -> Optional[str]:
        path = self._path_for(key)
        with self._lock:
            if not path.exists():
                return None
            try:
                return path.read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError) as exc:
                logger.warning("Failed to read state record %s: %s", path, exc)
                return None

    def set(self, key: str, value: str) -> None:
        path = self._path_for(key)
        with self._lock:
            try:
                write_text_document(path, str(value))
            except Timeout as exc:  # pragma: no cover - lock contention
                raise StateStoreError(f"state record {key} is locked; retry later") from exc
            except OSError as exc:
                raise StateStoreError(f"failed to write state record {key}: {exc}") from exc

    def remove(self, key: str) -> None:
        path = self._path_for(key)
        with self._lock:
            try:
                path.unlink()
            except FileNotFoundError:
                return
            except OSError as exc:
                raise StateStoreError(f"failed to remove state record {key}: {exc}") from exc

    def keys(self) -> List[str]:
        with self._lock:
            if not self._root.exists():
                return []
            return sorted(item.stem for item in self._root.glob("*.json"))


def load_json_record(store: KeyValueStore, key: str) -> Any:
    """Return the decoded record for ``key`` or ``None`` when it was never written.

    Raises ``ValueError`` (``json.JSONDecodeError``) for an unparseable blob so
    the owning service can substitute its default.
    """
    raw = store.get(key)
    if raw is None:
        return None
    return json.loads(raw)


def save_json_record(store: KeyValueStore, key: str, payload: Any) -> bool:
    """Serialize and persist ``payload``; failures are logged, never raised."""
    try:
        store.set(key, json.dumps(payload, ensure_ascii=False, sort_keys=True))
    except (StateStoreError, OSError, TypeError, ValueError):
        logger.exception("Failed to persist state record %s", key)
        return False
    return True


def remove_record(store: KeyValueStore, key: str) -> bool:
    try:
        store.remove(key)
    except (StateStoreError, OSError):
        logger.exception("Failed to remove state record %s", key)
        return False
    return True


__all__ = [
    "AD_FREQUENCY_CAPS_KEY",
    "CONVERSION_ATTEMPTS_KEY",
    "EXPERIMENT_OVERRIDES_KEY",
    "InMemoryStateStore",
    "JsonDirectoryStateStore",
    "KeyValueStore",
    "RECORD_KEYS",
    "StateStoreError",
    "TRIAL_HISTORY_KEY",
    "TRIAL_INFO_KEY",
    "USER_ENTITLEMENTS_KEY",
    "USER_GROUP_ASSIGNMENTS_KEY",
    "load_json_record",
    "remove_record",
    "save_json_record",
]
