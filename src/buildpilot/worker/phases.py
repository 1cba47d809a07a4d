"""Pipeline phases executed for every generation job."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from ..exceptions import OperationCancelledError
from ..jobs.models import Job


class Phase(str, Enum):
    """Pipeline phases, in execution order."""

    ANALYZE = "analyze"
    DESIGN = "design"
    GENERATE = "generate"
    VALIDATE = "validate"
    FINALIZE = "finalize"


PHASE_SEQUENCE: Tuple[Phase, ...] = (
    Phase.ANALYZE,
    Phase.DESIGN,
    Phase.GENERATE,
    Phase.VALIDATE,
    Phase.FINALIZE,
)

# Job progress (start, end) reported around each phase
PHASE_PROGRESS: Dict[Phase, Tuple[int, int]] = {
    Phase.ANALYZE: (5, 10),
    Phase.DESIGN: (15, 30),
    Phase.GENERATE: (35, 70),
    Phase.VALIDATE: (75, 90),
    Phase.FINALIZE: (95, 100),
}

ProgressReporter = Callable[[float, Optional[str]], None]


@dataclass
class PhaseContext:
    """What a phase handler gets besides the job.

    Attributes:
        job: The job being processed
        phase: Phase being executed
        worker_id: Worker pool running the job
        attempt: Queue attempt number of this run
        outputs: Outputs of the phases completed so far, keyed by phase name
        cancel_event: Set when the worker pool is stopping
    """

    job: Job
    phase: Phase
    worker_id: str
    attempt: int
    outputs: Dict[str, Any] = field(default_factory=dict)
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    reporter: Optional[ProgressReporter] = None

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def raise_if_cancelled(self) -> None:
        if self.cancel_event.is_set():
            raise OperationCancelledError(f"{self.phase.value} phase of job {self.job.id} cancelled")

    def update_progress(self, percent: float, message: Optional[str] = None) -> None:
        """Report progress within the current phase.

        ``percent`` is relative to the phase (0..100) and is mapped onto the
        phase's slice of the overall job progress.
        """
        if self.reporter is None:
            return
        start, end = PHASE_PROGRESS[self.phase]
        percent = min(100.0, max(0.0, percent))
        self.reporter(start + (end - start) * percent / 100.0, message)


PhaseHandler = Callable[[Job, PhaseContext], Awaitable[Any]]


@dataclass
class PipelineResult:
    """Result of a job that went through every phase."""

    job_id: str
    worker_id: str
    attempt: int
    outputs: Dict[str, Any]
    duration: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "worker_id": self.worker_id,
            "attempt": self.attempt,
            "outputs": dict(self.outputs),
            "duration": self.duration,
        }
