"""Priority job queue.

Quick Start:
    >>> from buildpilot.jobs import PriorityJobQueue
    >>> queue = PriorityJobQueue(concurrency=2)
    >>> job = await queue.enqueue({"project_id": "p1"}, priority="high")
"""

from .job_queue import JobProcessor, PriorityJobQueue
from .models import Job, JobPriority, JobStatus, QueueStats

__all__ = [
    "PriorityJobQueue",
    "JobProcessor",
    "Job",
    "JobPriority",
    "JobStatus",
    "QueueStats",
]
