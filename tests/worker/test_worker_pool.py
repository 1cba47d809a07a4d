"""Tests for the worker pool and the five-phase pipeline."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from buildpilot.circuit_breaker import CircuitBreaker, CircuitBreakerConfig, CircuitState
from buildpilot.circuit_breaker_registry import AI_GENERATION, CircuitBreakerRegistry
from buildpilot.events import EventType
from buildpilot.exceptions import (
    CircuitBreakerOpenError,
    NetworkError,
    OperationCancelledError,
    PhaseExecutionError,
    ValidationError,
)
from buildpilot.jobs import JobStatus, PriorityJobQueue
from buildpilot.worker import PHASE_SEQUENCE, Phase, WorkerPool, generation_breaker, is_retryable_phase_error
from buildpilot.worker.worker_pool import is_generation_failure


def _handlers(**overrides):
    """One handler per phase returning ``<phase>-output`` unless overridden."""
    handlers = {}
    for phase in PHASE_SEQUENCE:

        async def handler(job, ctx, _name=phase.value):
            return f"{_name}-output"

        handlers[phase.value] = overrides.get(phase.value, handler)
    return handlers


@pytest.fixture
def queue(event_bus):
    return PriorityJobQueue(concurrency=1, job_timeout=5.0, event_bus=event_bus)


def _pool(queue, instant_sleep, **kwargs):
    phases = kwargs.pop("phases", None) or _handlers()
    return WorkerPool(queue, phases, worker_id="worker-test", sleep=instant_sleep, **kwargs)


class TestPredicates:
    """Error classification used by the pool."""

    def test_retryable_phase_errors(self):
        assert is_retryable_phase_error(NetworkError("x")) is True
        assert is_retryable_phase_error(RuntimeError("x")) is True
        assert is_retryable_phase_error(ValidationError("x")) is False
        assert is_retryable_phase_error(OperationCancelledError()) is False
        assert is_retryable_phase_error(CircuitBreakerOpenError("ai-generation")) is False

    def test_generation_failure(self):
        assert is_generation_failure(asyncio.TimeoutError()) is True
        assert is_generation_failure(ValidationError("bad prompt")) is False

    def test_generation_breaker_defaults(self):
        breaker = generation_breaker()
        assert breaker.name == AI_GENERATION
        assert breaker.config.failure_threshold == 3
        assert breaker.config.reset_timeout == 60.0
        assert breaker.config.request_timeout == 120.0

    def test_generation_breaker_shared_through_registry(self):
        registry = CircuitBreakerRegistry()
        first = generation_breaker(registry=registry, failure_threshold=7)
        second = generation_breaker(registry=registry)
        assert first is second
        assert first.config.failure_threshold == 7


class TestConstruction:
    """Validation of phase handlers."""

    def test_missing_phase(self, queue, instant_sleep):
        phases = _handlers()
        del phases["validate"]
        with pytest.raises(ValidationError, match="validate"):
            _pool(queue, instant_sleep, phases=phases)

    def test_unknown_phase(self, queue, instant_sleep):
        phases = _handlers()
        phases["deploy"] = AsyncMock()
        with pytest.raises(ValidationError, match="deploy"):
            _pool(queue, instant_sleep, phases=phases)

    def test_phase_enum_keys(self, queue, instant_sleep):
        phases = {Phase(name): handler for name, handler in _handlers().items()}
        pool = _pool(queue, instant_sleep, phases=phases)
        assert pool.worker_id == "worker-test"


class TestPipeline:
    """Processing jobs end to end."""

    @pytest.mark.asyncio
    async def test_job_runs_every_phase_in_order(self, queue, event_bus, instant_sleep):
        seen = []

        def recorder(name):
            async def handler(job, ctx):
                seen.append((name, sorted(ctx.outputs)))
                return f"{name}-output"

            return handler

        pool = _pool(queue, instant_sleep, phases={p.value: recorder(p.value) for p in PHASE_SEQUENCE})
        job = await queue.enqueue({"project_id": "p1"})
        pool.start()
        await asyncio.wait_for(queue.join(), timeout=2.0)

        assert job.status == JobStatus.COMPLETED
        assert [name for name, _ in seen] == [p.value for p in PHASE_SEQUENCE]
        assert seen[2] == ("generate", ["analyze", "design"])
        assert job.result.outputs == {p.value: f"{p.value}-output" for p in PHASE_SEQUENCE}
        assert job.result.worker_id == "worker-test"
        assert job.result.attempt == 1

        progress = [e.payload["progress"] for e in event_bus.get_event_history(event_type=EventType.JOB_PROGRESS)]
        assert progress == sorted(progress)
        assert progress[0] == 5
        assert progress[-1] == 100

    @pytest.mark.asyncio
    async def test_phase_progress_is_mapped_into_phase_range(self, queue, event_bus, instant_sleep):
        async def generate(job, ctx):
            ctx.update_progress(50, "half the files written")
            return "code"

        pool = _pool(queue, instant_sleep, phases=_handlers(generate=generate))
        await queue.enqueue({})
        pool.start()
        await asyncio.wait_for(queue.join(), timeout=2.0)

        progress = [e.payload["progress"] for e in event_bus.get_event_history(event_type=EventType.JOB_PROGRESS)]
        assert 52 in progress

    @pytest.mark.asyncio
    async def test_generate_retries_transient_errors(self, queue, instant_sleep):
        generate = AsyncMock(side_effect=[NetworkError("reset"), NetworkError("reset"), "code"])
        pool = _pool(queue, instant_sleep, phases=_handlers(generate=generate))

        job = await queue.enqueue({}, max_attempts=1)
        pool.start()
        await asyncio.wait_for(queue.join(), timeout=2.0)

        assert job.status == JobStatus.COMPLETED
        assert generate.await_count == 3
        assert instant_sleep.delays == [1.0, 2.0]
        assert pool.breaker.metrics.successful_calls == 1

    @pytest.mark.asyncio
    async def test_generate_does_not_retry_permanent_errors(self, queue, instant_sleep):
        generate = AsyncMock(side_effect=ValidationError("prompt rejected"))
        pool = _pool(queue, instant_sleep, phases=_handlers(generate=generate))

        job = await queue.enqueue({}, max_attempts=3)
        pool.start()
        await asyncio.wait_for(queue.join(), timeout=2.0)

        assert generate.await_count == 1
        assert job.status == JobStatus.FAILED
        assert "prompt rejected" in job.error
        assert pool.breaker.get_state() == CircuitState.CLOSED
        assert pool.breaker.metrics.failed_calls == 0

    @pytest.mark.asyncio
    async def test_other_phases_use_fast_policy(self, queue, instant_sleep):
        validate = AsyncMock(side_effect=RuntimeError("lint crashed"))
        pool = _pool(queue, instant_sleep, phases=_handlers(validate=validate))

        job = await queue.enqueue({}, max_attempts=1)
        pool.start()
        await asyncio.wait_for(queue.join(), timeout=2.0)

        assert validate.await_count == 2
        assert job.status == JobStatus.FAILED
        assert job.partial_result == {
            "analyze": "analyze-output",
            "design": "design-output",
            "generate": "generate-output",
        }

    @pytest.mark.asyncio
    async def test_process_job_wraps_phase_errors(self, queue, instant_sleep):
        design = AsyncMock(side_effect=ValidationError("no screens"))
        pool = _pool(queue, instant_sleep, phases=_handlers(design=design))
        job = await queue.enqueue({})
        job.attempts = 1

        with pytest.raises(PhaseExecutionError) as exc_info:
            await pool.process_job(job)

        assert exc_info.value.phase == "design"
        assert exc_info.value.attempt == 1
        assert isinstance(exc_info.value.error, ValidationError)
        assert exc_info.value.partial_outputs == {"analyze": "analyze-output"}

    @pytest.mark.asyncio
    async def test_retry_disabled(self, queue, instant_sleep):
        analyze = AsyncMock(side_effect=NetworkError("x"))
        pool = _pool(queue, instant_sleep, phases=_handlers(analyze=analyze), use_retry=False)

        await queue.enqueue({}, max_attempts=1)
        pool.start()
        await asyncio.wait_for(queue.join(), timeout=2.0)

        analyze.assert_awaited_once()


class TestCircuitBreakerIntegration:
    """Breaker around the generate phase."""

    @pytest.mark.asyncio
    async def test_open_breaker_rejects_generate(self, queue, instant_sleep):
        generate = AsyncMock(return_value="code")
        pool = _pool(queue, instant_sleep, phases=_handlers(generate=generate))
        pool.breaker.trip()

        job = await queue.enqueue({}, max_attempts=1)
        pool.start()
        await asyncio.wait_for(queue.join(), timeout=2.0)

        generate.assert_not_awaited()
        assert job.status == JobStatus.FAILED
        assert "is open" in job.error

    @pytest.mark.asyncio
    async def test_exhausted_generate_counts_one_breaker_failure(self, queue, instant_sleep, event_bus):
        breaker = CircuitBreaker(
            AI_GENERATION,
            CircuitBreakerConfig(failure_threshold=1, reset_timeout=60.0, is_failure=is_generation_failure),
            event_bus=event_bus,
        )
        generate = AsyncMock(side_effect=NetworkError("model overloaded"))
        pool = _pool(queue, instant_sleep, phases=_handlers(generate=generate), breaker=breaker)

        await queue.enqueue({}, max_attempts=1)
        pool.start()
        await asyncio.wait_for(queue.join(), timeout=2.0)

        assert generate.await_count == 3
        assert breaker.metrics.failed_calls == 1
        assert breaker.get_state() == CircuitState.OPEN
        changes = event_bus.get_event_history(event_type=EventType.CIRCUIT_STATE_CHANGED)
        assert changes[-1].payload["state"] == "open"

    @pytest.mark.asyncio
    async def test_slow_generate_hits_request_timeout(self, queue, instant_sleep):
        breaker = CircuitBreaker(AI_GENERATION, CircuitBreakerConfig(request_timeout=0.02))

        async def generate(job, ctx):
            await asyncio.sleep(1.0)

        pool = _pool(
            queue,
            instant_sleep,
            phases=_handlers(generate=generate),
            breaker=breaker,
            use_retry=False,
        )
        job = await queue.enqueue({}, max_attempts=1)
        pool.start()
        await asyncio.wait_for(queue.join(), timeout=2.0)

        assert job.status == JobStatus.FAILED
        assert breaker.metrics.failed_calls == 1

    @pytest.mark.asyncio
    async def test_breaker_disabled(self, queue, instant_sleep):
        pool = _pool(queue, instant_sleep, use_circuit_breaker=False)
        pool.breaker.trip()

        job = await queue.enqueue({})
        pool.start()
        await asyncio.wait_for(queue.join(), timeout=2.0)

        assert job.status == JobStatus.COMPLETED


class TestLifecycle:
    """Start, stop and status."""

    @pytest.mark.asyncio
    async def test_stop_signals_cancellation(self, queue, instant_sleep):
        entered = asyncio.Event()

        async def generate(job, ctx):
            entered.set()
            await ctx.cancel_event.wait()
            ctx.raise_if_cancelled()

        pool = _pool(queue, instant_sleep, phases=_handlers(generate=generate))
        job = await queue.enqueue({}, max_attempts=3)
        pool.start()
        await asyncio.wait_for(entered.wait(), timeout=2.0)

        pool.stop()
        for _ in range(20):
            if job.status != JobStatus.ACTIVE:
                break
            await asyncio.sleep(0.01)

        assert pool.is_running is False
        assert queue.is_paused is True
        assert job.status == JobStatus.WAITING
        assert "cancelled" in job.error
        assert pool.breaker.metrics.failed_calls == 0

    @pytest.mark.asyncio
    async def test_restart_after_stop(self, queue, instant_sleep):
        pool = _pool(queue, instant_sleep)
        pool.start()
        pool.stop()
        job = await queue.enqueue({})

        pool.start()
        await asyncio.wait_for(queue.join(), timeout=2.0)

        assert job.status == JobStatus.COMPLETED

    def test_get_status(self, queue, instant_sleep):
        pool = _pool(queue, instant_sleep)

        status = pool.get_status()

        assert status["worker_id"] == "worker-test"
        assert status["running"] is False
        assert status["circuit_breaker"]["name"] == AI_GENERATION
        assert status["circuit_breaker"]["state"] == "closed"
        assert status["circuit_breaker"]["enabled"] is True
        assert status["retry_enabled"] is True
        assert status["queue"]["concurrency"] == 1
