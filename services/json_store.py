"""Lightweight helpers and wrapper class for JSON-backed persistence."""

from __future__ import annotations

import json
from copy import deepcopy
from pathlib import Path
from typing import Any, Callable, Optional, Union

from filelock import FileLock

from core.env import env_path
from core.logging import get_logger

logger = get_logger(__name__)

JsonDefault = Union[Any, Callable[[], Any]]

_LOCK_TIMEOUT_SECONDS = 5.0


def _resolve_default(default: JsonDefault) -> Any:
    return default() if callable(default) else default


def ensure_parent_dir(path: Path) -> None:
    """Ensure ``path`` can be read/written by creating the parent dir."""
    path.parent.mkdir(parents=True, exist_ok=True)


def file_lock_for(path: Path, *, timeout: float = _LOCK_TIMEOUT_SECONDS) -> FileLock:
    """Return the sibling ``.lock`` guarding writes to ``path``."""
    ensure_parent_dir(path)
    return FileLock(str(path.parent / f"{path.name}.lock"), timeout=timeout)


def read_json_document(path: Path, *, default: JsonDefault) -> Any:
    """Return JSON payload stored at ``path`` (or ``default`` if missing/invalid)."""
    if not path.exists():
        return _resolve_default(default)
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
        logger.warning("Failed to read JSON document %s: %s", path, exc)
        return _resolve_default(default)


def write_text_document(path: Path, text: str) -> None:
    """Replace ``path`` with ``text`` atomically while holding its file lock."""
    with file_lock_for(path):
        tmp_path = path.with_suffix(path.suffix + ".tmp")
        tmp_path.write_text(text, encoding="utf-8")
        tmp_path.replace(path)


class JsonStore:
    """Cached JSON config document with env override support."""

    def __init__(
        self,
        *,
        path_env: Optional[str],
        default_path: Optional[Path],
    ) -> None:
        self._path_env = path_env
        self._default_path = Path(default_path) if default_path is not None else None
        self._cache: Optional[Any] = None

    def resolve_path(self) -> Optional[Path]:
        if self._path_env:
            override = env_path(self._path_env)
            if override is not None:
                return override
        return self._default_path

    def clear_cache(self) -> None:
        self._cache = None

    def load(
        self,
        *,
        loader: Callable[[Any], Any],
        fallback: Callable[[], Any],
        reload: bool = False,
    ) -> Any:
        if self._cache is not None and not reload:
            return deepcopy(self._cache)

        path = self.resolve_path()
        raw_payload = read_json_document(path, default=fallback) if path is not None else fallback()
        merged = loader(raw_payload)
        self._cache = deepcopy(merged)
        return deepcopy(merged)


__all__ = [
    "JsonStore",
    "ensure_parent_dir",
    "file_lock_for",
    "read_json_document",
    "write_text_document",
]
