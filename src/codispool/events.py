"""Publish/subscribe registry for pool events."""

import logging
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

EventHandler = Callable[[Optional[Exception], Any], Any]


class EventBus:
    """
    Maps event names to ordered handler lists.

    Handlers run synchronously, in registration order, with
    ``(error, client)``. A failing handler is logged and the remaining
    handlers still run.
    """

    def __init__(self, log: Optional[logging.Logger] = None):
        self._subscribers: Dict[str, List[EventHandler]] = {}
        self._log = log or logger

    def subscribe(self, event: str, handler: EventHandler):
        """Append a handler for an event. The same handler may be added twice."""
        if not callable(handler):
            raise TypeError(f"Handler for {event!r} must be callable")
        self._subscribers.setdefault(event, []).append(handler)

    def unsubscribe(self, event: str, handler: EventHandler) -> bool:
        """Remove the first registration of a handler. Returns True if found."""
        handlers = self._subscribers.get(event, [])
        if handler in handlers:
            handlers.remove(handler)
            return True
        return False

    def handlers(self, event: str) -> List[EventHandler]:
        """Handlers registered for an event, in call order."""
        return list(self._subscribers.get(event, []))

    def publish(self, event: str, error: Optional[Exception], payload: Any) -> int:
        """
        Deliver an event to its handlers.

        Args:
            event: Event name
            error: Error for subscribers, None on success
            payload: Selected client, or None

        Returns:
            Number of handlers invoked
        """
        handlers = self.handlers(event)
        self._log.debug(f"Publishing {event!r} to {len(handlers)} handler(s), error={error}")

        for handler in handlers:
            try:
                handler(error, payload)
            except Exception as e:
                self._log.error(f"Handler for {event!r} failed: {e}")

        return len(handlers)
