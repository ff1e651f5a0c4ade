"""
Module: events.py
Description: In-process event bus for delivery notifications.

Components publish lifecycle events (enqueued, dequeued, dropped,
flushed, connectivity changes, per-attempt outcomes) and callers
subscribe to the streams they care about. Subscribers may be plain
callables or coroutine functions; coroutine results are scheduled on
the running loop. A failing subscriber is logged and never breaks the
publisher.

Key Components:
- EventType: Names of the published streams
- DeliveryEvent: Event envelope handed to subscribers
- EventBus: subscribe / unsubscribe / emit
"""

import asyncio
import inspect
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set

from eventrelay.utils.logger import get_logger

logger = get_logger(__name__)


class EventType(str, Enum):
    """Event streams published by the delivery subsystem."""

    ENTRY_ENQUEUED = "entry-enqueued"
    ENTRY_DEQUEUED = "entry-dequeued"
    ENTRY_DROPPED = "entry-dropped"
    QUEUE_FLUSHED = "queue-flushed"
    CONNECTIVITY_CHANGED = "connectivity-changed"
    CONNECTION_RESTORED = "connection-restored"
    ATTEMPT_COMPLETED = "attempt-completed"


@dataclass(frozen=True)
class DeliveryEvent:
    """
    Event envelope.

    Attributes:
        type: Stream the event was published on
        data: Event-specific fields (entry, reason, outcome, ...)
        timestamp: Publication time (UTC)
    """

    type: EventType
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __getitem__(self, key: str) -> Any:
        return self.data[key]

    def get(self, key: str, default: Any = None) -> Any:
        return self.data.get(key, default)


Subscriber = Callable[[DeliveryEvent], Any]


class EventBus:
    """Synchronous fan-out of DeliveryEvents to subscribers."""

    def __init__(self):
        self._subscribers: Dict[EventType, List[Subscriber]] = {}
        self._pending: Set[asyncio.Task] = set()

    def subscribe(self, event_type: EventType, callback: Subscriber) -> Callable[[], None]:
        """
        Register a subscriber for one event stream.

        Args:
            event_type: Stream to subscribe to
            callback: Callable or coroutine function taking a DeliveryEvent

        Returns:
            A function that removes the subscription when called
        """
        event_type = EventType(event_type)
        self._subscribers.setdefault(event_type, []).append(callback)

        def _unsubscribe() -> None:
            self.unsubscribe(event_type, callback)

        return _unsubscribe

    def unsubscribe(self, event_type: EventType, callback: Subscriber) -> bool:
        """Remove a subscriber. Returns False if it was not registered."""
        callbacks = self._subscribers.get(EventType(event_type), [])
        if callback in callbacks:
            callbacks.remove(callback)
            return True
        return False

    def subscriber_count(self, event_type: Optional[EventType] = None) -> int:
        if event_type is not None:
            return len(self._subscribers.get(EventType(event_type), []))
        return sum(len(callbacks) for callbacks in self._subscribers.values())

    def emit(self, event_type: EventType, **data: Any) -> DeliveryEvent:
        """
        Publish an event to every subscriber of its stream.

        Args:
            event_type: Stream to publish on
            **data: Event fields

        Returns:
            The published DeliveryEvent
        """
        event = DeliveryEvent(type=EventType(event_type), data=data)

        for callback in list(self._subscribers.get(event.type, [])):
            try:
                result = callback(event)
                if inspect.isawaitable(result):
                    self._schedule(result, event)
            except Exception as e:
                # Subscriber failure shouldn't break delivery
                logger.error(
                    "Event subscriber failed",
                    event_type=event.type.value,
                    error=str(e),
                    error_type=type(e).__name__
                )

        return event

    async def drain(self) -> None:
        """Wait for coroutine subscribers scheduled so far to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def _schedule(self, awaitable: Any, event: DeliveryEvent) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning(
                "No running event loop for async subscriber",
                event_type=event.type.value
            )
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            return

        task = asyncio.ensure_future(awaitable, loop=loop)
        self._pending.add(task)
        task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(
                "Async event subscriber failed",
                error=str(error),
                error_type=type(error).__name__
            )
