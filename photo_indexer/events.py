"""
Observer-style event stream for scanner and watcher notifications.
"""
import enum
import logging
import threading
from collections import defaultdict
from typing import Callable, Dict, List, Any


class EventType(enum.Enum):
    FILE_ADDED = 'file-added'
    FILE_REMOVED = 'file-removed'
    FILE_CHANGED = 'file-changed'
    SCAN_PROGRESS = 'scan-progress'
    SCAN_COMPLETE = 'scan-complete'


Callback = Callable[[EventType, Dict[str, Any]], None]


class Subscription:
    def __init__(self, bus: 'EventBus', event_type: EventType, callback: Callback):
        self._bus = bus
        self.event_type = event_type
        self.callback = callback
        self.active = True

    def unsubscribe(self):
        if self.active:
            self._bus._remove(self)
            self.active = False


class EventBus:
    """
    Delivers events synchronously on the emitting thread, in emit order.
    A failing callback is logged and never reaches the emitter.
    """
    def __init__(self):
        self._subs: Dict[EventType, List[Subscription]] = defaultdict(list)
        self._lock = threading.Lock()

    def subscribe(self, event_type: EventType, callback: Callback) -> Subscription:
        sub = Subscription(self, event_type, callback)
        with self._lock:
            self._subs[event_type].append(sub)
        return sub

    def subscribe_all(self, callback: Callback) -> List[Subscription]:
        return [self.subscribe(et, callback) for et in EventType]

    def _remove(self, sub: Subscription):
        with self._lock:
            try:
                self._subs[sub.event_type].remove(sub)
            except ValueError:
                pass

    def emit(self, event_type: EventType, payload: Dict[str, Any]):
        with self._lock:
            targets = list(self._subs[event_type])
        for sub in targets:
            try:
                sub.callback(event_type, payload)
            except Exception:
                logging.exception(f"Event handler failed for {event_type.value}")
