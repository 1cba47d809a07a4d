"""Publish/subscribe events for job, circuit breaker and test session lifecycles.

Quick Start:
    >>> from buildpilot.events import EventBus, EventType
    >>> bus = EventBus()
    >>> bus.subscribe_to_type(EventType.JOB_COMPLETED, lambda event: print(event.payload))
"""

from .event_bus import DeadLetterEntry, EventBus, EventHandler, Subscription
from .event_types import Event, EventFilter, EventType

__all__ = [
    "Event",
    "EventType",
    "EventFilter",
    "EventBus",
    "EventHandler",
    "Subscription",
    "DeadLetterEntry",
]
