"""Lifecycle notifications for stores and engines."""

import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)


class EventType(Enum):
    """Kinds of lifecycle notification."""

    CREATED = "created"
    WILL_UPGRADE = "will-upgrade"
    DID_UPGRADE = "did-upgrade"
    WILL_MIGRATE = "will-migrate"
    DID_MIGRATE = "did-migrate"
    DID_INITIALIZE = "did-initialize"


# Notifications an engine emits on its own and a store forwards unchanged.
ENGINE_EVENTS = (
    EventType.WILL_UPGRADE,
    EventType.DID_UPGRADE,
    EventType.WILL_MIGRATE,
    EventType.DID_MIGRATE,
)


@dataclass
class Event:
    """A notification that occurred."""

    type: EventType
    timestamp: datetime
    data: dict[str, Any] = field(default_factory=dict)

    @property
    def store_name(self) -> str | None:
        """Get the store name if included in event data."""
        return self.data.get("name")


Handler = Callable[[Event], Awaitable[None] | None]


class EventBus:
    """Publish/subscribe hub accepting plain and async handlers."""

    def __init__(self, log: logging.Logger | None = None):
        self._subscribers: dict[EventType, list[Handler]] = {}
        self._history: list[Event] = []
        self._history_limit = 1000
        self.log = log or logger

    def subscribe(self, event_type: EventType, handler: Handler) -> None:
        """Subscribe to events of a specific type."""
        self._subscribers.setdefault(event_type, []).append(handler)

    def unsubscribe(self, event_type: EventType, handler: Handler) -> None:
        """Unsubscribe from events."""
        if event_type in self._subscribers:
            self._subscribers[event_type].remove(handler)

    async def publish(self, event: Event) -> None:
        """Publish an event to all subscribers.

        A failing handler is logged and does not stop the others.
        """
        self._history.append(event)
        if len(self._history) > self._history_limit:
            self._history = self._history[-self._history_limit :]

        for handler in list(self._subscribers.get(event.type, ())):
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                self.log.exception("Handler for %s failed", event.type.value)

    async def emit(self, event_type: EventType, **data: Any) -> Event:
        """Build and publish an event."""
        event = Event(type=event_type, timestamp=datetime.now(), data=data)
        await self.publish(event)
        return event

    def get_history(
        self, event_type: EventType | None = None, limit: int = 100
    ) -> list[Event]:
        """Get event history."""
        history = self._history

        if event_type:
            history = [e for e in history if e.type == event_type]

        return history[-limit:]

    def clear_history(self) -> None:
        """Clear event history."""
        self._history.clear()
