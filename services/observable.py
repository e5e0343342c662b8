"""Change-notification and lifecycle helpers shared by the monetization services."""

from __future__ import annotations

import threading
from typing import Callable, List

from core.logging import get_logger

logger = get_logger(__name__)

ChangeListener = Callable[[], None]


class ServiceNotInitializedError(RuntimeError):
    """Raised when a service is queried before ``initialize()`` completed."""


class ChangeNotifier:
    """Minimal observer hub; UI layers subscribe with :meth:`on_change`."""

    def __init__(self) -> None:
        self._listeners: List[ChangeListener] = []
        self._listeners_lock = threading.Lock()
        self._initialized = False

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    def _mark_initialized(self) -> None:
        self._initialized = True

    def _require_initialized(self) -> None:
        if not self._initialized:
            raise ServiceNotInitializedError(f"{type(self).__name__}.initialize() must be called first")

    def on_change(self, callback: ChangeListener) -> Callable[[], None]:
        """Register ``callback``; the returned function unsubscribes it."""
        with self._listeners_lock:
            self._listeners.append(callback)

        def _unsubscribe() -> None:
            with self._listeners_lock:
                if callback in self._listeners:
                    self._listeners.remove(callback)

        return _unsubscribe

    def _notify_listeners(self) -> None:
        with self._listeners_lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener()
            except Exception as exc:  # pragma: no cover - listener bugs must not break the engine
                logger.warning("Change listener %r failed on %s: %s", listener, type(self).__name__, exc)


__all__ = ["ChangeListener", "ChangeNotifier", "ServiceNotInitializedError"]
