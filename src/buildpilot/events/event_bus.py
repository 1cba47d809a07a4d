"""Event Bus for Publish/Subscribe Pattern.

Central event bus for decoupled communication between the job queue, the
worker pool, circuit breakers and the device cloud orchestrator. A
persistence layer or a transport layer (WebSocket/HTTP) subscribes here; the
core itself never talks to clients.

- Multiple handlers per event type
- Event filtering by type, category or source
- Sync and async handler support
- Dead letter list for failed handlers
- Bounded event history

Publishing is synchronous: handlers run in registration order at the moment
the state transition happens, so the order in which subscribers see events is
the order in which the transitions occurred. Coroutine handlers are scheduled
on the running loop in that same order.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Coroutine, Deque, Dict, List, Optional, Set, Union

from .event_types import Event, EventFilter, EventType

logger = logging.getLogger(__name__)

# Type alias for event handlers
EventHandler = Callable[[Event], Union[None, Coroutine[Any, Any, None]]]


@dataclass
class Subscription:
    """A subscription to events on the event bus.

    Attributes:
        handler: Callable to invoke when matching events occur
        filter: Criteria for which events to receive
        subscription_id: Unique identifier for this subscription
        invocation_count: Number of times this handler has been invoked
    """

    handler: EventHandler
    filter: EventFilter
    subscription_id: str
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    invocation_count: int = 0

    def matches(self, event: Event) -> bool:
        return self.filter.matches(event)


@dataclass
class DeadLetterEntry:
    """Event that a handler failed to process."""

    event: Event
    subscription_id: str
    error: BaseException
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class EventBus:
    """Central event bus for publish/subscribe communication.

    Example:
        >>> bus = EventBus()
        >>> bus.subscribe_to_type(EventType.JOB_COMPLETED, lambda e: print(e.payload))
        >>> bus.emit(EventType.JOB_COMPLETED, "job_queue", {"job_id": "job_1"})
    """

    def __init__(self, max_history: int = 1000, max_dead_letters: int = 100) -> None:
        """Initialize the event bus.

        Args:
            max_history: Maximum number of events to keep in history
            max_dead_letters: Maximum dead letter list size
        """
        self._subscriptions: Dict[str, Subscription] = {}
        self._event_history: Deque[Event] = deque(maxlen=max_history)
        self._dead_letters: Deque[DeadLetterEntry] = deque(maxlen=max_dead_letters)
        self._pending_handlers: Set[asyncio.Task] = set()
        self._subscription_counter = 0

    def subscribe(
        self,
        handler: EventHandler,
        event_filter: Optional[EventFilter] = None,
    ) -> str:
        """Subscribe a handler to receive events.

        Args:
            handler: Sync or async callable invoked with each matching event
            event_filter: Criteria for which events to receive (None = all)

        Returns:
            Subscription ID for unsubscribing later

        Raises:
            ValueError: If handler is not callable
        """
        if not callable(handler):
            raise ValueError("Handler must be callable")

        self._subscription_counter += 1
        subscription_id = f"sub_{self._subscription_counter}"
        self._subscriptions[subscription_id] = Subscription(
            handler=handler,
            filter=event_filter or EventFilter.all_events(),
            subscription_id=subscription_id,
        )
        logger.debug(
            f"[EventBus] Subscription {subscription_id} registered "
            f"(total: {len(self._subscriptions)})"
        )
        return subscription_id

    def subscribe_to_type(self, event_type: EventType, handler: EventHandler) -> str:
        """Convenience method to subscribe to a specific event type."""
        return self.subscribe(handler, EventFilter.for_type(event_type))

    def subscribe_to_category(self, category: str, handler: EventHandler) -> str:
        """Convenience method to subscribe to an event category ("job", "session", ...)."""
        return self.subscribe(handler, EventFilter.for_category(category))

    def unsubscribe(self, subscription_id: str) -> bool:
        """Unsubscribe a handler.

        Returns:
            True if subscription was found and removed, False otherwise
        """
        return self._subscriptions.pop(subscription_id, None) is not None

    def publish(self, event: Event) -> int:
        """Deliver an event to all matching subscribers.

        A failing handler is recorded in the dead letter list and never
        prevents delivery to the remaining handlers.

        Returns:
            Number of handlers invoked successfully (scheduled, for coroutines)
        """
        if not isinstance(event, Event):
            raise ValueError("publish() requires an Event instance")

        self._event_history.append(event)

        invoked = 0
        for subscription in [s for s in self._subscriptions.values() if s.matches(event)]:
            try:
                result = subscription.handler(event)
                if asyncio.iscoroutine(result):
                    self._schedule(result, event, subscription)
                subscription.invocation_count += 1
                invoked += 1
            except Exception as e:
                logger.warning(
                    f"[EventBus] Handler {subscription.subscription_id} failed "
                    f"for {event.type.value}: {e}"
                )
                self._dead_letters.append(
                    DeadLetterEntry(event=event, subscription_id=subscription.subscription_id, error=e)
                )
        return invoked

    def emit(
        self,
        event_type: EventType,
        source: str,
        payload: Optional[Dict[str, Any]] = None,
        correlation_id: Optional[str] = None,
    ) -> Event:
        """Create and publish an event in one call.

        Returns:
            The published event
        """
        event = Event.create(event_type, source, payload=payload, correlation_id=correlation_id)
        self.publish(event)
        return event

    def _schedule(self, coro: Coroutine, event: Event, subscription: Subscription) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            coro.close()
            raise RuntimeError("Async event handlers require a running event loop")

        task = loop.create_task(coro)
        self._pending_handlers.add(task)

        def _done(finished: asyncio.Task) -> None:
            self._pending_handlers.discard(finished)
            if finished.cancelled():
                return
            error = finished.exception()
            if error is not None:
                logger.warning(
                    f"[EventBus] Async handler {subscription.subscription_id} failed "
                    f"for {event.type.value}: {error}"
                )
                self._dead_letters.append(
                    DeadLetterEntry(event=event, subscription_id=subscription.subscription_id, error=error)
                )

        task.add_done_callback(_done)

    async def wait_for_handlers(self) -> None:
        """Wait until every scheduled coroutine handler has finished."""
        while self._pending_handlers:
            await asyncio.gather(*list(self._pending_handlers), return_exceptions=True)

    def get_event_history(
        self,
        event_type: Optional[EventType] = None,
        source: Optional[str] = None,
        correlation_id: Optional[str] = None,
        limit: int = 100,
    ) -> List[Event]:
        """Get historical events with optional filtering, oldest first."""
        events = list(self._event_history)

        if event_type is not None:
            events = [e for e in events if e.type == event_type]
        if source is not None:
            events = [e for e in events if e.source == source]
        if correlation_id is not None:
            events = [e for e in events if e.correlation_id == correlation_id]

        return events[-limit:]

    def get_dead_letters(self) -> List[DeadLetterEntry]:
        return list(self._dead_letters)

    def clear_history(self) -> None:
        self._event_history.clear()

    def get_summary(self) -> Dict[str, Any]:
        return {
            "total_subscriptions": len(self._subscriptions),
            "history_size": len(self._event_history),
            "dead_letters": len(self._dead_letters),
            "pending_handlers": len(self._pending_handlers),
        }
