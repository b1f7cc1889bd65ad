import logging
from typing import Type, Callable, List, Dict, Any
from smallmp4.domain.events import Event

logger = logging.getLogger(__name__)


class EventBus:
    """A simple synchronous event bus for decoupled communication.

    Delivery is best-effort: a subscriber that raises is logged and skipped,
    so a broken consumer never fails the publisher.
    """

    def __init__(self):
        self._subscribers: Dict[Type[Event], List[Callable[[Any], None]]] = {}

    def subscribe(self, event_type: Type[Event], callback: Callable[[Any], None]):
        """Subscribes a callback to a specific event type."""
        if event_type not in self._subscribers:
            self._subscribers[event_type] = []
        self._subscribers[event_type].append(callback)

    def unsubscribe(self, event_type: Type[Event], callback: Callable[[Any], None]):
        callbacks = self._subscribers.get(event_type, [])
        if callback in callbacks:
            callbacks.remove(callback)

    def publish(self, event: Event):
        """Publishes an event to all interested subscribers."""
        event_type = type(event)
        for callback in list(self._subscribers.get(event_type, [])):
            try:
                callback(event)
            except Exception:
                logger.exception(f"Subscriber failed while handling {event_type.__name__}")
