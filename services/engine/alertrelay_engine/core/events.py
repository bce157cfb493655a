"""In-process event stream for trigger events.

Handlers subscribe to one event type or to ``"*"``. Publishing is
synchronous; a failing handler is logged and never stops the others.
"""

import logging
import threading
from collections import defaultdict
from collections.abc import Callable

from alertrelay_engine.models.events import EventType, TriggerEvent

logger = logging.getLogger(__name__)

EventHandler = Callable[[TriggerEvent], None]

ALL_EVENTS = "*"


class EventBus:
    """Thread-safe pub/sub over TriggerEvents."""

    def __init__(self) -> None:
        self._handlers: dict[str, list[EventHandler]] = defaultdict(list)
        self._lock = threading.Lock()

    def subscribe(self, event_type: EventType | str, handler: EventHandler) -> Callable[[], None]:
        """
        Register a handler.

        Args:
            event_type: Event type (or its string value), or "*" for every event
            handler: Callable receiving the TriggerEvent

        Returns:
            Function that removes the subscription
        """
        topic = event_type.value if isinstance(event_type, EventType) else str(event_type)
        if topic != ALL_EVENTS:
            EventType(topic)
        with self._lock:
            self._handlers[topic].append(handler)

        def unsubscribe() -> None:
            with self._lock:
                if handler in self._handlers[topic]:
                    self._handlers[topic].remove(handler)

        return unsubscribe

    def publish(self, event: TriggerEvent) -> int:
        """Deliver ``event`` to its type's handlers, then to wildcard handlers. Returns handler count."""
        with self._lock:
            handlers = [*self._handlers[event.event_type.value], *self._handlers[ALL_EVENTS]]
        for handler in handlers:
            try:
                handler(event)
            except Exception:
                logger.exception(f"Event handler failed for {event.event_type.value}")
        return len(handlers)
