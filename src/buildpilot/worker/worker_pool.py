"""Worker pool that runs the five-phase generation pipeline for queued jobs.

The pool does not decide what a phase does; phase handlers come from the
generation pipeline. It decides how each phase call is protected:

- generate: circuit breaker around a retry loop (``standard`` policy, transient
  errors only), each attempt bounded by the breaker's request timeout
- every other phase: retry loop only (``fast`` policy)

Concurrency is capped by the queue, so the pool registers one processor and
lets the queue decide how many jobs run at once.

Stopping is cooperative: ``stop()`` pauses dispatch and sets the cancellation
token handed to every phase. Retry back-off sleeps end immediately; phase
handlers are expected to call ``ctx.raise_if_cancelled()`` at safe points.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import replace
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, Mapping, Optional, Union

from ..circuit_breaker import CircuitBreaker
from ..circuit_breaker_registry import AI_GENERATION, PRESETS, CircuitBreakerRegistry
from ..exceptions import ErrorKind, PhaseExecutionError, ValidationError, classify_error
from ..jobs import Job, PriorityJobQueue
from ..retry import RetryExecutor, RetryPolicy, RetryPredicates, RetryStrategies, SleepFunc
from .phases import PHASE_PROGRESS, PHASE_SEQUENCE, Phase, PhaseContext, PhaseHandler, PipelineResult

if TYPE_CHECKING:
    from ..config import Settings

logger = logging.getLogger(__name__)

_NOT_RETRYABLE = (ErrorKind.PERMANENT, ErrorKind.CANCELLED, ErrorKind.CIRCUIT_OPEN)


def is_generation_failure(error: BaseException) -> bool:
    """Errors that count against the generation service's breaker."""
    return classify_error(error) not in _NOT_RETRYABLE


def is_retryable_phase_error(error: BaseException) -> bool:
    """Retry predicate for the fast-fail phases; see `_NOT_RETRYABLE`."""
    return classify_error(error) not in _NOT_RETRYABLE


def generation_breaker(
    event_bus=None,
    registry: Optional[CircuitBreakerRegistry] = None,
    **overrides: Any,
) -> CircuitBreaker:
    """Build (or fetch from ``registry``) the breaker guarding the generate phase."""
    config = replace(PRESETS[AI_GENERATION], is_failure=is_generation_failure, **overrides)
    if registry is not None:
        return registry.get_or_create(AI_GENERATION, config)
    return CircuitBreaker(AI_GENERATION, config, event_bus=event_bus)


class WorkerPool:
    """Processes queued jobs through the generation pipeline.

    Example:
        pool = WorkerPool(queue, phases={
            "analyze": analyze, "design": design, "generate": generate,
            "validate": validate, "finalize": finalize,
        })
        pool.start()
        ...
        pool.stop()
    """

    def __init__(
        self,
        queue: PriorityJobQueue,
        phases: Mapping[Union[Phase, str], PhaseHandler],
        breaker: Optional[CircuitBreaker] = None,
        generate_policy: RetryPolicy = RetryStrategies.standard,
        phase_policy: RetryPolicy = RetryStrategies.fast,
        use_circuit_breaker: bool = True,
        use_retry: bool = True,
        worker_id: Optional[str] = None,
        sleep: SleepFunc = asyncio.sleep,
    ):
        """Initialize the worker pool.

        Args:
            queue: Queue to pull jobs from
            phases: One async handler per phase, called as ``handler(job, ctx)``
            breaker: Breaker for the generate phase (defaults to the ai-generation preset)
            generate_policy: Retry policy for the generate phase
            phase_policy: Retry policy for every other phase
            use_circuit_breaker: Wrap the generate phase in the breaker
            use_retry: Wrap phases in retry loops
            worker_id: Identifier used in logs and results
            sleep: Sleep function used for retry back-off

        Raises:
            ValidationError: If a phase handler is missing or unknown
        """
        self.queue = queue
        self._phases = self._resolve_phases(phases)
        self.breaker = breaker or generation_breaker(event_bus=queue.event_bus)
        self.generate_policy = generate_policy
        self.phase_policy = phase_policy
        self.use_circuit_breaker = use_circuit_breaker
        self.use_retry = use_retry
        self.worker_id = worker_id or f"worker-{uuid.uuid4().hex[:8]}"
        self._sleep = sleep
        self._running = False
        self._cancel_event = asyncio.Event()

    @classmethod
    def from_settings(
        cls,
        settings: "Settings",
        queue: PriorityJobQueue,
        phases: Mapping[Union[Phase, str], PhaseHandler],
        registry: Optional[CircuitBreakerRegistry] = None,
        **kwargs: Any,
    ) -> "WorkerPool":
        breaker = generation_breaker(
            event_bus=queue.event_bus,
            registry=registry,
            failure_threshold=settings.generation_breaker_failure_threshold,
            reset_timeout=settings.generation_breaker_reset_timeout_seconds,
            request_timeout=settings.generation_breaker_request_timeout_seconds,
        )
        kwargs.setdefault(
            "generate_policy",
            RetryStrategies.standard.with_base_delay(
                settings.retry_base_delay_seconds, settings.retry_max_delay_seconds
            ),
        )
        kwargs.setdefault(
            "phase_policy",
            RetryStrategies.fast.with_base_delay(settings.retry_base_delay_seconds),
        )
        return cls(queue, phases, breaker=breaker, **kwargs)

    @staticmethod
    def _resolve_phases(phases: Mapping[Union[Phase, str], PhaseHandler]) -> Dict[Phase, PhaseHandler]:
        resolved: Dict[Phase, PhaseHandler] = {}
        for key, handler in phases.items():
            try:
                resolved[Phase(key)] = handler
            except ValueError:
                raise ValidationError(f"Unknown pipeline phase: {key}")

        missing = [phase.value for phase in PHASE_SEQUENCE if phase not in resolved]
        if missing:
            raise ValidationError(f"Missing handlers for phases: {', '.join(missing)}")
        return resolved

    @property
    def is_running(self) -> bool:
        return self._running

    def start(self) -> None:
        """Register with the queue and start pulling jobs."""
        if self._running:
            return
        self._cancel_event = asyncio.Event()
        self.queue.set_processor(self.process_job)
        self._running = True
        logger.info(f"[WorkerPool:{self.worker_id}] Started (concurrency={self.queue.concurrency})")

    def stop(self) -> None:
        """Stop dispatching new jobs and signal cancellation to in-flight ones."""
        if not self._running:
            return
        self._running = False
        self.queue.pause()
        self._cancel_event.set()
        logger.info(f"[WorkerPool:{self.worker_id}] Stopped, cancellation signalled to active jobs")

    async def process_job(self, job: Job) -> PipelineResult:
        """Run every phase for ``job``.

        Raises:
            PhaseExecutionError: When a phase fails; carries the outputs of the
                phases that completed before it
        """
        attempt = job.attempts
        cancel_event = self._cancel_event
        outputs: Dict[str, Any] = {}
        started = time.monotonic()

        logger.info(
            f"[WorkerPool:{self.worker_id}] Processing job {job.id} "
            f"(attempt {attempt}/{job.max_attempts})"
        )

        for phase in PHASE_SEQUENCE:
            start_pct, end_pct = PHASE_PROGRESS[phase]
            self._report(job, attempt, start_pct)
            ctx = PhaseContext(
                job=job,
                phase=phase,
                worker_id=self.worker_id,
                attempt=attempt,
                outputs=dict(outputs),
                cancel_event=cancel_event,
                reporter=lambda pct, _message: self._report(job, attempt, pct),
            )
            try:
                ctx.raise_if_cancelled()
                outputs[phase.value] = await self._run_phase(phase, job, ctx)
            except Exception as e:
                logger.error(f"[WorkerPool:{self.worker_id}] Job {job.id} failed in {phase.value}: {e}")
                raise PhaseExecutionError(phase.value, e, attempt, outputs) from e
            self._report(job, attempt, end_pct)
            logger.debug(f"[WorkerPool:{self.worker_id}] Job {job.id} finished {phase.value}")

        duration = time.monotonic() - started
        logger.info(f"[WorkerPool:{self.worker_id}] Job {job.id} completed in {duration:.2f}s")
        return PipelineResult(
            job_id=job.id,
            worker_id=self.worker_id,
            attempt=attempt,
            outputs=outputs,
            duration=duration,
        )

    async def _run_phase(self, phase: Phase, job: Job, ctx: PhaseContext) -> Any:
        handler = self._phases[phase]

        if phase != Phase.GENERATE:
            call = lambda: handler(job, ctx)
            return await self._with_retry(call, self.phase_policy, is_retryable_phase_error, ctx)()

        request_timeout = self.breaker.config.request_timeout
        call = lambda: asyncio.wait_for(handler(job, ctx), timeout=request_timeout)
        protected = self._with_retry(call, self.generate_policy, RetryPredicates.transient_errors, ctx)
        if self.use_circuit_breaker:
            return await self.breaker.execute(protected)
        return await protected()

    def _with_retry(
        self,
        call: Callable[[], Awaitable[Any]],
        policy: RetryPolicy,
        is_retryable: Callable[[BaseException], bool],
        ctx: PhaseContext,
    ) -> Callable[[], Awaitable[Any]]:
        if not self.use_retry:
            return call
        executor = RetryExecutor(policy, sleep=self._sleep)
        return lambda: executor.execute(
            call,
            is_retryable=is_retryable,
            cancel_event=ctx.cancel_event,
            operation_name=f"{ctx.phase.value} phase of job {ctx.job.id}",
        )

    def _report(self, job: Job, attempt: int, percent: float) -> None:
        self.queue.update_progress(job.id, percent, attempt=attempt)

    def get_status(self) -> Dict[str, Any]:
        """Operational snapshot: breaker state and queue occupancy."""
        return {
            "worker_id": self.worker_id,
            "running": self._running,
            "circuit_breaker": {
                "name": self.breaker.name,
                "state": self.breaker.get_state().value,
                "enabled": self.use_circuit_breaker,
                "metrics": self.breaker.get_metrics().to_dict(),
            },
            "retry_enabled": self.use_retry,
            "queue": self.queue.get_stats().to_dict(),
        }
