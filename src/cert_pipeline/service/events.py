"""Publish/subscribe channel for broker events."""

import queue
import threading
from typing import Callable, Dict, List, Optional

from ..domain.events import BrokerEvent, BrokerEventType
from ..domain.interfaces import Logger

EventHandler = Callable[[BrokerEvent], None]


class EventBus:
    """Delivers broker events synchronously to registered subscribers.

    A subscriber that raises is logged and skipped; it never affects the
    publisher or the other subscribers.
    """

    def __init__(self, logger: Logger):
        self.logger = logger
        self._subscribers: Dict[Optional[BrokerEventType], List[EventHandler]] = {}
        self._lock = threading.Lock()

    def subscribe(self, handler: EventHandler, *event_types: BrokerEventType) -> Callable[[], None]:
        """Register a handler for the given types (all types if none given).

        Returns a callable that removes the subscription.
        """
        keys = list(event_types) or [None]
        with self._lock:
            for key in keys:
                self._subscribers.setdefault(key, []).append(handler)

        def unsubscribe() -> None:
            with self._lock:
                for key in keys:
                    handlers = self._subscribers.get(key, [])
                    if handler in handlers:
                        handlers.remove(handler)

        return unsubscribe

    def channel(self, *event_types: BrokerEventType) -> "queue.Queue[BrokerEvent]":
        """Subscribe an unbounded queue that receives matching events."""
        events: "queue.Queue[BrokerEvent]" = queue.Queue()
        self.subscribe(events.put_nowait, *event_types)
        return events

    def publish(self, event: BrokerEvent) -> None:
        with self._lock:
            handlers = list(self._subscribers.get(event.type, []))
            handlers += self._subscribers.get(None, [])

        for handler in handlers:
            try:
                handler(event)
            except Exception as e:
                self.logger.error(
                    "Broker event subscriber failed",
                    event=event.type.value,
                    job_id=event.job_id,
                    error=str(e),
                )
