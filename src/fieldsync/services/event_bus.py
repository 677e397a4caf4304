"""
In-process publish/subscribe bus for equipment sync notifications.

One bus is created per process and passed to the components that publish
or observe; it holds no durable state. Delivery is synchronous and follows
subscription order, wildcard subscribers included. A failing handler is
logged and skipped so later handlers still receive the event.
"""

import itertools
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

logger = logging.getLogger(__name__)

WILDCARD = "*"


class EventType(str, Enum):
    """Event type discriminator.

    Each event type maps to a specific payload shape.
    """

    # Equipment state
    EQUIPMENT_CHANGED = "equipment_changed"  # Mirror adopted a new snapshot
    STATUS_CHANGED = "status_changed"  # One status transition applied

    # Allocation lifecycle
    ALLOCATION_REQUESTED = "allocation_requested"
    ALLOCATION_CONFIRMED = "allocation_confirmed"
    ALLOCATION_ROLLED_BACK = "allocation_rolled_back"

    # Conflicts
    CONFLICT_DETECTED = "conflict_detected"
    CONFLICT_RESOLVED = "conflict_resolved"

    # Sync queue
    OPERATION_QUEUED = "operation_queued"
    OPERATION_DELIVERED = "operation_delivered"
    OPERATION_BLOCKED = "operation_blocked"
    OPERATION_ABANDONED = "operation_abandoned"

    @classmethod
    def all_values(cls) -> list[str]:
        """Get all event type values as a list."""
        return [e.value for e in cls]


@dataclass(frozen=True)
class Event:
    """An event delivered to subscribers.

    Attributes:
        event_type: Type discriminator (see EventType)
        payload: Event-specific data
        event_id: Unique identifier (UUID v4)
        timestamp: Event creation time (ISO8601 format)
    """

    event_type: str
    payload: Dict[str, Any] = field(default_factory=dict)
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())


Handler = Callable[[Event], Any]


def _type_key(event_type: Union[EventType, str]) -> str:
    return event_type.value if isinstance(event_type, EventType) else event_type


class EventBus:
    """Synchronous in-process event bus."""

    def __init__(self):
        self._counter = itertools.count()
        self._subscriptions: List[Tuple[int, str, Handler]] = []

    def subscribe(self, event_type: Union[EventType, str], handler: Handler) -> Callable[[], None]:
        """
        Register ``handler`` for ``event_type`` (or ``"*"`` for every event).

        Returns:
            A callable that removes the subscription; calling it twice is harmless.
        """
        token = next(self._counter)
        self._subscriptions.append((token, _type_key(event_type), handler))

        def unsubscribe() -> None:
            self._subscriptions = [s for s in self._subscriptions if s[0] != token]

        return unsubscribe

    def publish(
        self, event_type: Union[EventType, str], payload: Optional[Dict[str, Any]] = None
    ) -> Event:
        """
        Deliver an event to every matching subscriber, in subscription order.

        Returns:
            The delivered event
        """
        key = _type_key(event_type)
        event = Event(event_type=key, payload=payload or {})

        # Snapshot so (un)subscribing inside a handler does not affect this delivery
        for _, subscribed_type, handler in list(self._subscriptions):
            if subscribed_type != key and subscribed_type != WILDCARD:
                continue
            try:
                handler(event)
            except Exception as e:
                logger.error(
                    f"EventBus: handler {getattr(handler, '__qualname__', handler)!s} "
                    f"failed for {key} - {type(e).__name__}: {e}",
                    exc_info=True,
                )

        logger.debug(f"EventBus: published {key} ({event.event_id})")
        return event

    def subscriber_count(self, event_type: Optional[Union[EventType, str]] = None) -> int:
        if event_type is None:
            return len(self._subscriptions)
        key = _type_key(event_type)
        return sum(1 for _, t, _ in self._subscriptions if t == key)

    def clear(self) -> None:
        """Drop every subscription."""
        self._subscriptions = []
