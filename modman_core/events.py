"""Synchronous event signals for shells that observe the engine."""

import logging
import threading
from typing import Any, Callable

logger = logging.getLogger(__name__)

DATABASE_CHANGED = "database-changed"
INSTALL_PROGRESS = "install-progress"
INSTALL_COMPLETE = "install-complete"

# listener(event_name, payload)
Listener = Callable[[str, dict[str, Any]], None]


class EventEmitter:
    """Fan out engine events to subscribed callables, in the emitting thread."""

    def __init__(self):
        self._listeners: list[Listener] = []
        self._lock = threading.Lock()

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener. Returns a function that unsubscribes it."""
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def emit(self, event: str, **payload: Any) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event, payload)
            except Exception:
                logger.exception("Listener for %s failed", event)
