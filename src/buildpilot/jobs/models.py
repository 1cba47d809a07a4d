"""Job records tracked by the priority job queue."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


class JobStatus(str, Enum):
    """Lifecycle states of a job."""

    WAITING = "waiting"
    DELAYED = "delayed"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


class JobPriority(str, Enum):
    """Priority classes; higher classes are always dequeued first."""

    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {JobPriority.LOW: 0, JobPriority.NORMAL: 1, JobPriority.HIGH: 2}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Job:
    """A unit of scheduled pipeline work.

    Only the queue mutates a job. ``attempts`` never exceeds ``max_attempts``;
    a completed job has a result and no error; a failed job has an error and
    either used every attempt or was cancelled.
    """

    id: str
    payload: Dict[str, Any]
    priority: JobPriority = JobPriority.NORMAL
    status: JobStatus = JobStatus.WAITING
    progress: int = 0
    created_at: datetime = field(default_factory=_utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    attempts: int = 0
    max_attempts: int = 3
    timeout: Optional[float] = None
    result: Any = None
    error: Optional[str] = None
    partial_result: Optional[Dict[str, Any]] = None
    cancelled: bool = False

    @property
    def project_id(self) -> Optional[str]:
        return self.payload.get("project_id")

    @property
    def user_id(self) -> Optional[str]:
        return self.payload.get("user_id")

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "user_id": self.user_id,
            "priority": self.priority.value,
            "status": self.status.value,
            "progress": self.progress,
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "error": self.error,
            "cancelled": self.cancelled,
        }


@dataclass
class QueueStats:
    """Snapshot of queue occupancy."""

    waiting: int = 0
    delayed: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    total: int = 0
    concurrency: int = 0
    paused: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "waiting": self.waiting,
            "delayed": self.delayed,
            "active": self.active,
            "completed": self.completed,
            "failed": self.failed,
            "total": self.total,
            "concurrency": self.concurrency,
            "paused": self.paused,
        }
