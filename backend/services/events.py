"""
Event Bus
In-process publish/subscribe between the poller and its observers.

Callbacks run synchronously on the emitting thread, in registration
order. A failing callback is logged and skipped.
"""

import threading
from typing import Any, Callable, Dict, List

from loguru import logger


STARTED = "started"
STOPPED = "stopped"
POLL = "poll"
NEW_ALERTS = "newAlerts"
RESOLVED_ALERTS = "resolvedAlerts"
CHANGES = "changes"
ERROR = "error"
ALERT_ACKNOWLEDGED = "alertAcknowledged"
ALERT_DISMISSED = "alertDismissed"

EVENT_NAMES = (
    STARTED,
    STOPPED,
    POLL,
    NEW_ALERTS,
    RESOLVED_ALERTS,
    CHANGES,
    ERROR,
    ALERT_ACKNOWLEDGED,
    ALERT_DISMISSED,
)

EventCallback = Callable[[str, Any], None]


class EventBus:
    """Named events with (event, payload) callbacks"""

    def __init__(self):
        self._listeners: Dict[str, List[EventCallback]] = {}
        self._lock = threading.Lock()

    def on(self, event: str, callback: EventCallback) -> None:
        """Subscribe to one event name, or "*" for all events"""
        with self._lock:
            self._listeners.setdefault(event, []).append(callback)

    def off(self, event: str, callback: EventCallback) -> bool:
        with self._lock:
            listeners = self._listeners.get(event, [])
            if callback in listeners:
                listeners.remove(callback)
                return True
        return False

    def emit(self, event: str, payload: Any = None) -> None:
        with self._lock:
            listeners = list(self._listeners.get(event, [])) + list(self._listeners.get("*", []))

        for callback in listeners:
            try:
                callback(event, payload)
            except Exception as e:
                logger.exception(f"Listener for {event!r} failed: {e}")

    def listener_count(self, event: str) -> int:
        with self._lock:
            return len(self._listeners.get(event, []))
