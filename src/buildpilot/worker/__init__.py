"""Worker pool running the analyze/design/generate/validate/finalize pipeline."""

from .phases import PHASE_PROGRESS, PHASE_SEQUENCE, Phase, PhaseContext, PhaseHandler, PipelineResult
from .worker_pool import WorkerPool, generation_breaker, is_retryable_phase_error

__all__ = [
    "WorkerPool",
    "Phase",
    "PhaseContext",
    "PhaseHandler",
    "PipelineResult",
    "PHASE_SEQUENCE",
    "PHASE_PROGRESS",
    "generation_breaker",
    "is_retryable_phase_error",
]
