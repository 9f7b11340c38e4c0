"""
Observer registry for engine notifications.

Managers publish named events (sandbox_created, policy_applied,
security_event, ...) through an EventBus. Subscribers register per event
name or for every event. Delivery is synchronous in the emitting thread;
a subscriber that raises is logged and does not prevent delivery to the
others.

Usage:
    bus = EventBus()
    bus.subscribe('sandbox_created', lambda event: print(event.payload))
    bus.emit('sandbox_created', sandbox_id='abc')
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)

WILDCARD = '*'


@dataclass
class EngineEvent:
    """A single notification delivered to subscribers."""
    name: str
    payload: Dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=lambda: datetime.utcnow().isoformat() + 'Z')

    def get(self, key: str, default: Any = None) -> Any:
        return self.payload.get(key, default)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'payload': dict(self.payload),
            'timestamp': self.timestamp,
        }


EventCallback = Callable[[EngineEvent], None]


class EventBus:
    """Thread-safe publish/subscribe registry."""

    def __init__(self):
        self._subscribers: Dict[str, List[EventCallback]] = {}
        self._lock = threading.Lock()
        self._emitted = 0
        self._callback_errors = 0

    def subscribe(self, name: str, callback: EventCallback) -> None:
        """Register a callback for an event name ('*' for every event)."""
        with self._lock:
            self._subscribers.setdefault(name, []).append(callback)

    def subscribe_all(self, callback: EventCallback) -> None:
        self.subscribe(WILDCARD, callback)

    def unsubscribe(self, name: str, callback: EventCallback) -> bool:
        with self._lock:
            callbacks = self._subscribers.get(name, [])
            if callback in callbacks:
                callbacks.remove(callback)
                return True
            return False

    def emit(self, name: str, /, **payload: Any) -> EngineEvent:
        """Deliver an event to every matching subscriber."""
        event = EngineEvent(name=name, payload=payload)

        with self._lock:
            callbacks = list(self._subscribers.get(name, []))
            callbacks.extend(self._subscribers.get(WILDCARD, []))
            self._emitted += 1

        for callback in callbacks:
            try:
                callback(event)
            except Exception as e:
                with self._lock:
                    self._callback_errors += 1
                logger.error(f"Event callback failed for {name}: {e}", exc_info=True)

        return event

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                'events_emitted': self._emitted,
                'callback_errors': self._callback_errors,
                'subscriptions': {
                    name: len(callbacks)
                    for name, callbacks in self._subscribers.items()
                },
            }
