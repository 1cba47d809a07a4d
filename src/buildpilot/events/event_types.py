"""Event types emitted by the job queue, worker pool and device cloud orchestrator."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, Optional


class EventType(Enum):
    """Lifecycle events. Values are ``<category>.<action>``."""

    JOB_ADDED = "job.added"
    JOB_STARTED = "job.started"
    JOB_PROGRESS = "job.progress"
    JOB_RETRYING = "job.retrying"
    JOB_COMPLETED = "job.completed"
    JOB_FAILED = "job.failed"

    CIRCUIT_STATE_CHANGED = "circuit.state_changed"

    SESSION_CREATED = "session.created"
    SESSION_PROGRESS = "session.progress"
    SESSION_COMPLETED = "session.completed"
    SESSION_FAILED = "session.failed"

    @property
    def category(self) -> str:
        """Category prefix (e.g. "job" for JOB_STARTED)."""
        return self.value.split(".", 1)[0]

    @classmethod
    def from_string(cls, value: str) -> "EventType":
        """Look up an EventType by its dotted value.

        Raises:
            ValueError: If the value is not a known event type
        """
        for member in cls:
            if member.value == value:
                return member
        raise ValueError(f"Unknown event type: {value}")


@dataclass
class Event:
    """A single published event.

    Attributes:
        event_id: Unique identifier
        type: Event type
        source: Component that emitted the event (e.g. "job_queue")
        payload: Event data
        timestamp: When the event was created (UTC)
        correlation_id: Job or session ID the event belongs to
    """

    event_id: str
    type: EventType
    source: str
    payload: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    correlation_id: Optional[str] = None

    @classmethod
    def create(
        cls,
        event_type: EventType,
        source: str,
        payload: Optional[Dict[str, Any]] = None,
        correlation_id: Optional[str] = None,
    ) -> "Event":
        return cls(
            event_id=uuid.uuid4().hex,
            type=event_type,
            source=source,
            payload=dict(payload or {}),
            correlation_id=correlation_id,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "type": self.type.value,
            "source": self.source,
            "payload": self.payload,
            "timestamp": self.timestamp.isoformat(),
            "correlation_id": self.correlation_id,
        }


@dataclass(frozen=True)
class EventFilter:
    """Criteria for which events a subscription receives.

    A criterion left as None matches everything.
    """

    event_types: Optional[FrozenSet[EventType]] = None
    categories: Optional[FrozenSet[str]] = None
    sources: Optional[FrozenSet[str]] = None

    def matches(self, event: Event) -> bool:
        if self.event_types is not None and event.type not in self.event_types:
            return False
        if self.categories is not None and event.type.category not in self.categories:
            return False
        if self.sources is not None and event.source not in self.sources:
            return False
        return True

    @classmethod
    def all_events(cls) -> "EventFilter":
        return cls()

    @classmethod
    def for_type(cls, *event_types: EventType) -> "EventFilter":
        return cls(event_types=frozenset(event_types))

    @classmethod
    def for_category(cls, *categories: str) -> "EventFilter":
        return cls(categories=frozenset(categories))

    @classmethod
    def for_source(cls, sources: Iterable[str]) -> "EventFilter":
        return cls(sources=frozenset(sources))
