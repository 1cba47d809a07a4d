"""In-process priority job queue with a central concurrency cap.

Key principles:
- Strict priority classes (high, then normal, then low), FIFO within a class
- At most ``concurrency`` jobs are active at any instant; the cap lives here,
  not in the processor
- A failed attempt goes back to the end of the pending list until the job's
  attempt budget is used up
- Each active attempt races its processor against the job timeout

The event loop is the single owner of the job map and the pending list: every
mutation runs without an ``await`` in between, so concurrent enqueues and
dispatches cannot interleave inside one. Call the queue from the loop thread.

Cancelling an active job is not supported here: in-flight work only stops if
the processor honours a cancellation token (see ``worker.WorkerPool.stop``).
The queue keeps no durable state; a persistence layer subscribes to the
``job.*`` events on the event bus instead.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, List, Optional, Union

from ..events import EventBus, EventType
from ..exceptions import ErrorKind, JobTimeoutError, ValidationError, classify_error
from ..logging_config import correlation_id_var
from .models import Job, JobPriority, JobStatus, QueueStats

if TYPE_CHECKING:
    from ..config import Settings

logger = logging.getLogger(__name__)

JobProcessor = Callable[[Job], Awaitable[Any]]

CANCELLED_MESSAGE = "Cancelled"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _default_job_id() -> str:
    return f"job_{uuid.uuid4().hex}"


class PriorityJobQueue:
    """Priority job queue with bounded concurrency.

    Example:
        queue = PriorityJobQueue(concurrency=2, event_bus=bus)
        job = await queue.enqueue({"project_id": "p1", "prompt": "..."}, priority="high")
        queue.set_processor(process)
        await queue.join()
    """

    def __init__(
        self,
        concurrency: int = 2,
        default_max_attempts: int = 3,
        job_timeout: float = 600.0,
        retention: float = 86400.0,
        event_bus: Optional[EventBus] = None,
        id_factory: Callable[[], str] = _default_job_id,
        name: str = "job_queue",
    ):
        """Initialize the queue.

        Args:
            concurrency: Maximum number of simultaneously active jobs
            default_max_attempts: Attempt budget for jobs that do not set one
            job_timeout: Seconds an attempt may run before it counts as failed
            retention: Default age in seconds after which ``cleanup`` evicts terminal jobs
            event_bus: Bus receiving ``job.*`` lifecycle events
            id_factory: Generator for job IDs
            name: Source name used on emitted events
        """
        if concurrency < 1:
            raise ValidationError("concurrency must be at least 1")
        if default_max_attempts < 1:
            raise ValidationError("default_max_attempts must be at least 1")

        self.concurrency = concurrency
        self.default_max_attempts = default_max_attempts
        self.job_timeout = job_timeout
        self.retention = retention
        self.name = name
        self._event_bus = event_bus or EventBus()
        self._id_factory = id_factory

        self._jobs: Dict[str, Job] = {}
        self._pending: List[str] = []
        self._active: Dict[str, asyncio.Task] = {}
        self._delayed: Dict[str, asyncio.TimerHandle] = {}
        self._processor: Optional[JobProcessor] = None
        self._paused = False
        self._closed = False
        self._dispatch_scheduled = False
        self._idle = asyncio.Event()
        self._idle.set()

        logger.info(
            f"[JobQueue] Initialized with concurrency={concurrency}, "
            f"default_max_attempts={default_max_attempts}, job_timeout={job_timeout}s"
        )

    @classmethod
    def from_settings(cls, settings: "Settings", event_bus: Optional[EventBus] = None) -> "PriorityJobQueue":
        return cls(
            concurrency=settings.queue_concurrency,
            default_max_attempts=settings.queue_default_max_attempts,
            job_timeout=settings.queue_job_timeout_seconds,
            retention=settings.queue_retention_seconds,
            event_bus=event_bus,
        )

    @property
    def event_bus(self) -> EventBus:
        return self._event_bus

    # ------------------------------------------------------------------
    # Producer API
    # ------------------------------------------------------------------

    async def enqueue(
        self,
        payload: Dict[str, Any],
        priority: Union[JobPriority, str] = JobPriority.NORMAL,
        delay: float = 0.0,
        max_attempts: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> Job:
        """Add a job to the queue.

        Args:
            payload: Opaque job data (``project_id``/``user_id`` keys are indexed)
            priority: "low", "normal" or "high"
            delay: Seconds to hold the job in ``delayed`` before it can run
            max_attempts: Attempt budget (defaults to the queue default)
            timeout: Per-attempt timeout override in seconds

        Returns:
            The created job

        Raises:
            ValidationError: If an option is invalid
            RuntimeError: If the queue has been shut down
        """
        self._ensure_open()
        try:
            priority = JobPriority(priority)
        except ValueError:
            raise ValidationError(f"Unknown priority: {priority}")
        if delay < 0:
            raise ValidationError("delay must not be negative")
        max_attempts = self.default_max_attempts if max_attempts is None else max_attempts
        if max_attempts < 1:
            raise ValidationError("max_attempts must be at least 1")
        if timeout is not None and timeout <= 0:
            raise ValidationError("timeout must be positive")

        job = Job(
            id=self._new_job_id(),
            payload=dict(payload),
            priority=priority,
            status=JobStatus.DELAYED if delay > 0 else JobStatus.WAITING,
            max_attempts=max_attempts,
            timeout=timeout,
        )
        self._jobs[job.id] = job

        if delay > 0:
            loop = asyncio.get_running_loop()
            self._delayed[job.id] = loop.call_later(delay, self._promote_delayed, job.id)
        else:
            self._insert_by_priority(job)

        logger.info(f"[JobQueue] Job {job.id} added (priority={priority.value}, delay={delay}s)")
        self._emit(EventType.JOB_ADDED, job)
        self._refresh_idle()
        self._schedule_dispatch()
        return job

    def set_processor(self, processor: JobProcessor) -> None:
        """Register the function that executes jobs and (re)start dispatch.

        Raises:
            RuntimeError: If the queue has been shut down
        """
        self._ensure_open()
        self._processor = processor
        self._paused = False
        self._schedule_dispatch()

    def pause(self) -> None:
        """Stop starting new jobs; active jobs keep running."""
        self._paused = True
        logger.info("[JobQueue] Paused")

    def resume(self) -> None:
        self._ensure_open()
        self._paused = False
        logger.info("[JobQueue] Resumed")
        self._schedule_dispatch()

    @property
    def is_paused(self) -> bool:
        return self._paused

    def update_progress(self, job_id: str, progress: float, attempt: Optional[int] = None) -> bool:
        """Update progress of an active job.

        Args:
            job_id: Job to update
            progress: Percentage, clamped to 0..100
            attempt: Attempt the update belongs to; stale attempts are ignored

        Returns:
            True if the update was applied
        """
        job = self._jobs.get(job_id)
        if job is None or job.status != JobStatus.ACTIVE:
            return False
        if attempt is not None and attempt != job.attempts:
            logger.debug(f"[JobQueue] Ignoring progress from stale attempt {attempt} of {job_id}")
            return False

        job.progress = int(min(100, max(0, progress)))
        self._emit(EventType.JOB_PROGRESS, job, progress=job.progress)
        return True

    def cancel(self, job_id: str) -> bool:
        """Cancel a job that has not started yet.

        Waiting and delayed jobs are removed immediately and marked failed.
        Active jobs cannot be cancelled here.

        Returns:
            True if the job was cancelled
        """
        job = self._jobs.get(job_id)
        if job is None:
            return False

        if job.status == JobStatus.WAITING:
            self._pending.remove(job_id)
        elif job.status == JobStatus.DELAYED:
            handle = self._delayed.pop(job_id, None)
            if handle is not None:
                handle.cancel()
        else:
            logger.info(f"[JobQueue] Job {job_id} is {job.status.value}, not cancellable")
            return False

        job.status = JobStatus.FAILED
        job.error = CANCELLED_MESSAGE
        job.cancelled = True
        job.completed_at = _utcnow()
        logger.info(f"[JobQueue] Job {job_id} cancelled")
        self._emit(EventType.JOB_FAILED, job, error=CANCELLED_MESSAGE, cancelled=True)
        self._refresh_idle()
        return True

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_job(self, job_id: str) -> Optional[Job]:
        return self._jobs.get(job_id)

    def get_jobs_by_project(self, project_id: str) -> List[Job]:
        return [job for job in self._jobs.values() if job.project_id == project_id]

    def get_jobs_by_user(self, user_id: str) -> List[Job]:
        return [job for job in self._jobs.values() if job.user_id == user_id]

    def pending_job_ids(self) -> List[str]:
        """Pending job IDs in dispatch order."""
        return list(self._pending)

    def active_job_ids(self) -> List[str]:
        return list(self._active)

    def get_stats(self) -> QueueStats:
        stats = QueueStats(total=len(self._jobs), concurrency=self.concurrency, paused=self._paused)
        for job in self._jobs.values():
            if job.status == JobStatus.WAITING:
                stats.waiting += 1
            elif job.status == JobStatus.DELAYED:
                stats.delayed += 1
            elif job.status == JobStatus.ACTIVE:
                stats.active += 1
            elif job.status == JobStatus.COMPLETED:
                stats.completed += 1
            elif job.status == JobStatus.FAILED:
                stats.failed += 1
        return stats

    def cleanup(self, max_age: Optional[float] = None) -> int:
        """Evict terminal jobs that finished more than ``max_age`` seconds ago.

        ``max_age`` defaults to the queue's ``retention``.

        Returns:
            Number of jobs removed
        """
        if max_age is None:
            max_age = self.retention
        cutoff = _utcnow() - timedelta(seconds=max_age)
        expired = [
            job_id
            for job_id, job in self._jobs.items()
            if job.is_terminal and job.completed_at is not None and job.completed_at < cutoff
        ]
        for job_id in expired:
            del self._jobs[job_id]

        if expired:
            logger.info(f"[JobQueue] Cleaned up {len(expired)} jobs older than {max_age}s")
        return len(expired)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def join(self) -> None:
        """Wait until no job is waiting, delayed or active."""
        await self._idle.wait()

    async def shutdown(self, drain: bool = True, timeout: Optional[float] = None) -> None:
        """Stop dispatching and deal with in-flight work.

        Jobs that have not started (waiting or delayed) are cancelled, so
        ``join()`` returns once the active ones are done.

        Args:
            drain: Wait for active jobs to finish (True) or cancel them (False)
            timeout: Maximum seconds to wait when draining; remaining jobs are cancelled
        """
        self._closed = True
        self._paused = True
        tasks = list(self._active.values())
        logger.info(
            f"[JobQueue] Shutting down (drain={drain}, active={len(tasks)}, "
            f"waiting={len(self._pending)}, delayed={len(self._delayed)})"
        )
        self._cancel_not_started()
        if not tasks:
            return

        if drain:
            _, still_running = await asyncio.wait(tasks, timeout=timeout)
        else:
            still_running = set(tasks)

        for task in still_running:
            task.cancel()
        if still_running:
            await asyncio.gather(*still_running, return_exceptions=True)
        # Attempts that failed while draining were requeued
        self._cancel_not_started()

    # ------------------------------------------------------------------
    # Scheduling internals
    # ------------------------------------------------------------------

    def _ensure_open(self) -> None:
        if self._closed:
            raise RuntimeError("Queue has been shut down")

    def _cancel_not_started(self) -> None:
        for job_id in list(self._pending) + list(self._delayed):
            self.cancel(job_id)

    def _new_job_id(self) -> str:
        job_id = self._id_factory()
        while job_id in self._jobs:
            job_id = self._id_factory()
        return job_id

    def _insert_by_priority(self, job: Job) -> None:
        """Insert ahead of the first pending job of a strictly lower priority class."""
        for index, pending_id in enumerate(self._pending):
            if self._jobs[pending_id].priority.rank < job.priority.rank:
                self._pending.insert(index, job.id)
                return
        self._pending.append(job.id)

    def _promote_delayed(self, job_id: str) -> None:
        self._delayed.pop(job_id, None)
        job = self._jobs.get(job_id)
        if job is None or job.status != JobStatus.DELAYED:
            return

        job.status = JobStatus.WAITING
        self._insert_by_priority(job)
        logger.debug(f"[JobQueue] Delayed job {job_id} is now waiting")
        self._schedule_dispatch()

    def _schedule_dispatch(self) -> None:
        if self._dispatch_scheduled:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop yet; the next enqueue on the loop schedules dispatch
            return
        self._dispatch_scheduled = True
        loop.call_soon(self._dispatch)

    def _dispatch(self) -> None:
        self._dispatch_scheduled = False
        if self._processor is None or self._paused:
            return

        while self._pending and len(self._active) < self.concurrency:
            job = self._jobs[self._pending.pop(0)]
            self._start(job, self._processor)

    def _start(self, job: Job, processor: JobProcessor) -> None:
        job.status = JobStatus.ACTIVE
        job.attempts += 1
        job.started_at = _utcnow()
        attempt = job.attempts

        task = asyncio.get_running_loop().create_task(
            self._run(job, attempt, processor), name=f"{job.id}-attempt-{attempt}"
        )
        self._active[job.id] = task

        logger.info(f"[JobQueue] Job {job.id} started (attempt {attempt}/{job.max_attempts})")
        self._emit(EventType.JOB_STARTED, job)

    async def _run(self, job: Job, attempt: int, processor: JobProcessor) -> None:
        correlation_id_var.set(job.id)
        timeout = job.timeout or self.job_timeout
        work = asyncio.ensure_future(processor(job))
        work.add_done_callback(_consume_result)

        try:
            done, _ = await asyncio.wait({work}, timeout=timeout)
            if not done:
                work.cancel()
                raise JobTimeoutError(f"Job {job.id} timed out after {timeout}s", timeout)
            result = work.result()
        except asyncio.CancelledError:
            work.cancel()
            self._on_interrupted(job, attempt)
            raise
        except Exception as e:
            self._on_failure(job, attempt, e)
        else:
            self._on_success(job, attempt, result)
        finally:
            if self._active.get(job.id) is asyncio.current_task():
                del self._active[job.id]
            self._refresh_idle()
            self._schedule_dispatch()

    def _is_current(self, job: Job, attempt: int) -> bool:
        return job.status == JobStatus.ACTIVE and job.attempts == attempt

    def _on_success(self, job: Job, attempt: int, result: Any) -> None:
        if not self._is_current(job, attempt):
            logger.warning(f"[JobQueue] Discarding late result for job {job.id} attempt {attempt}")
            return

        job.status = JobStatus.COMPLETED
        job.result = result
        job.error = None
        job.progress = 100
        job.completed_at = _utcnow()
        logger.info(f"[JobQueue] Job {job.id} completed on attempt {attempt}")
        self._emit(EventType.JOB_COMPLETED, job)

    def _on_failure(self, job: Job, attempt: int, error: BaseException) -> None:
        if not self._is_current(job, attempt):
            logger.warning(f"[JobQueue] Discarding late error for job {job.id} attempt {attempt}: {error}")
            return

        message = str(error) or type(error).__name__
        partial = getattr(error, "partial_outputs", None)
        if partial:
            job.partial_result = dict(partial)

        kind = classify_error(error)
        if kind == ErrorKind.PERMANENT:
            # Permanent errors consume the remaining budget
            job.attempts = job.max_attempts

        job.error = message
        if job.attempts < job.max_attempts:
            job.status = JobStatus.WAITING
            self._pending.append(job.id)
            logger.warning(
                f"[JobQueue] Job {job.id} attempt {attempt}/{job.max_attempts} failed "
                f"({kind.value}), requeued: {message}"
            )
            self._emit(EventType.JOB_RETRYING, job, error=message, error_kind=kind.value)
        else:
            job.status = JobStatus.FAILED
            job.completed_at = _utcnow()
            logger.error(f"[JobQueue] Job {job.id} failed after {job.attempts} attempts: {message}")
            self._emit(EventType.JOB_FAILED, job, error=message, error_kind=kind.value, cancelled=False)

    def _on_interrupted(self, job: Job, attempt: int) -> None:
        if not self._is_current(job, attempt):
            return
        job.status = JobStatus.FAILED
        job.error = "Cancelled during shutdown"
        job.cancelled = True
        job.completed_at = _utcnow()
        logger.warning(f"[JobQueue] Job {job.id} interrupted by shutdown")
        self._emit(EventType.JOB_FAILED, job, error=job.error, cancelled=True)

    def _refresh_idle(self) -> None:
        if self._pending or self._active or self._delayed:
            self._idle.clear()
        else:
            self._idle.set()

    def _emit(self, event_type: EventType, job: Job, **extra: Any) -> None:
        payload = job.to_dict()
        payload.update(extra)
        self._event_bus.emit(event_type, source=self.name, payload=payload, correlation_id=job.id)


def _consume_result(task: asyncio.Future) -> None:
    # Retrieve the outcome of abandoned attempts so asyncio does not log it as unhandled
    if not task.cancelled():
        task.exception()
