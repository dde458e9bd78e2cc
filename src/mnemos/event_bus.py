"""
EventBus for in-process pub/sub of memory engine events.

The bus is owned by whoever constructs the MemoryService and passed in;
there is no process-wide instance.

Subscriptions name what they want in one of three ways:
- an event class from mnemos.events (``MemoryStoredEvent``)
- its type string (``'memory.stored'``)
- a pattern: ``'*'`` for everything, ``'memory.*'`` / ``'maintenance.*'``
  for one namespace

and may be narrowed to a single user's events.

Usage:
    bus = EventBus()
    bus.subscribe(ContradictionDetectedEvent, handle_contradiction)
    bus.subscribe('maintenance.*', log_job, user_id='alice')
    service = MemoryService(..., event_bus=bus)
"""

import logging
from dataclasses import dataclass
from threading import Lock
from typing import Any, Callable, List, Optional, Union

from .events import EVENT_TYPES

logger = logging.getLogger(__name__)

Callback = Callable[[Any], None]
EventTarget = Union[str, type]


def resolve_event_type(target: EventTarget) -> str:
    """
    Normalize a subscription target to a type string or pattern.

    Raises:
        ValueError: If the name is neither a known event type nor a pattern
            over a known namespace
    """
    if isinstance(target, type):
        event_type = getattr(target, "event_type", None)
        if event_type not in EVENT_TYPES:
            raise ValueError(f"{target.__name__} is not a memory engine event")
        return event_type
    if target == "*" or target in EVENT_TYPES:
        return target
    if target.endswith(".*") and any(t.startswith(target[:-1]) for t in EVENT_TYPES):
        return target
    raise ValueError(f"Unknown event type: {target}")


def _matches(pattern: str, event_type: str) -> bool:
    if pattern == "*" or pattern == event_type:
        return True
    return pattern.endswith(".*") and event_type.startswith(pattern[:-1])


@dataclass
class Subscription:
    pattern: str
    callback: Callback
    user_id: Optional[str] = None

    def wants(self, event: Any) -> bool:
        if not _matches(self.pattern, event.event_type):
            return False
        return self.user_id is None or getattr(event, "user_id", None) == self.user_id


class EventBus:
    """Thread-safe bus; subscriber errors are logged and never reach the publisher."""

    def __init__(self):
        self._subscriptions: List[Subscription] = []
        self._lock = Lock()

    def subscribe(self, event: EventTarget, callback: Callback, user_id: Optional[str] = None) -> None:
        """
        Register a callback.

        Args:
            event: Event class, type string, '*' or a 'namespace.*' pattern
            callback: Called with the event object
            user_id: Only deliver events carrying this user_id

        Raises:
            ValueError: For unknown event types
        """
        pattern = resolve_event_type(event)
        with self._lock:
            self._subscriptions.append(Subscription(pattern, callback, user_id))
        logger.debug(f"Subscribed to {pattern}: {getattr(callback, '__name__', 'callback')}")

    def unsubscribe(self, event: EventTarget, callback: Callback) -> bool:
        """
        Remove every subscription of callback to the given target.

        Returns:
            True if anything was removed
        """
        pattern = resolve_event_type(event)
        with self._lock:
            kept = [s for s in self._subscriptions
                    if not (s.pattern == pattern and s.callback == callback)]
            removed = len(kept) != len(self._subscriptions)
            self._subscriptions = kept
        return removed

    def publish(self, event: Any) -> int:
        """
        Deliver an event to every matching subscriber.

        Returns:
            Number of callbacks that ran without raising
        """
        event_type = getattr(event, "event_type", None)
        if event_type is None:
            logger.warning(f"Event missing 'event_type' attribute: {type(event).__name__}")
            return 0

        # Snapshot so callbacks run without the lock held
        with self._lock:
            targets = [s for s in self._subscriptions if s.wants(event)]

        delivered = 0
        for subscription in targets:
            try:
                subscription.callback(event)
                delivered += 1
            except Exception as e:
                logger.error(f"Subscriber for {subscription.pattern} failed on {event_type}: {e}",
                             exc_info=True)
        logger.debug(f"Published {event_type} to {delivered}/{len(targets)} subscribers")
        return delivered

    def clear(self) -> None:
        with self._lock:
            self._subscriptions.clear()

    def subscriber_count(self, event: Optional[EventTarget] = None) -> int:
        """Subscriptions registered for one target, or in total."""
        with self._lock:
            if event is None:
                return len(self._subscriptions)
            pattern = resolve_event_type(event)
            return sum(1 for s in self._subscriptions if s.pattern == pattern)
