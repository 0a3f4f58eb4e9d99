"""A list of event handlers that can be modified from one thread while events are fired from another."""

import logging
import threading

logger = logging.getLogger(__name__)


class EventSource:
    """Calls each registered handler with the fired event.

    Handlers are called on the firing thread, in registration order. An exception raised by a handler is logged
    and does not keep the remaining handlers from being called.
    """

    def __init__(self):
        self._handlers = []
        self._lock = threading.Lock()

    def __iadd__(self, handler):
        return self.add(handler)

    def __isub__(self, handler):
        return self.remove(handler)

    def add(self, handler):
        with self._lock:
            self._handlers.append(handler)
        return self

    def remove(self, handler):
        with self._lock:
            if handler in self._handlers:
                self._handlers.remove(handler)
        return self

    def handlers(self) -> tuple:
        with self._lock:
            return tuple(self._handlers)

    def fire(self, event) -> None:
        for handler in self.handlers():
            try:
                handler(event)
            except Exception:
                logger.exception("Event handler %r failed on %r", handler, event)

    def fire_all(self, events) -> None:
        for event in events:
            self.fire(event)
