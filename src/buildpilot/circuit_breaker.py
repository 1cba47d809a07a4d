"""Circuit Breaker Pattern Implementation.

Protects a single fragile remote call site (the AI generation phase, a device
cloud API, ...). The breaker is a gate only: it never retries by itself and is
composed with ``retry.RetryExecutor`` by the caller.

States:
- CLOSED: calls pass through; consecutive failures are counted
- OPEN: calls are rejected without invoking the wrapped function
- HALF_OPEN: exactly one probe call is let through to test recovery
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

from .events import EventBus, EventType
from .exceptions import CircuitBreakerOpenError

logger = logging.getLogger(__name__)

T = TypeVar("T")

StateListener = Callable[["CircuitState", "CircuitState", "CircuitBreaker"], None]


class CircuitState(Enum):
    """Circuit breaker states."""

    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Failing, reject calls
    HALF_OPEN = "half_open"  # Testing recovery


def _always_failure(error: BaseException) -> bool:
    return True


@dataclass
class CircuitBreakerConfig:
    """Configuration for circuit breaker.

    ``request_timeout`` is advisory: the caller enforces it around the call.
    """

    failure_threshold: int = 5
    reset_timeout: float = 30.0  # seconds
    request_timeout: float = 10.0  # seconds
    is_failure: Callable[[BaseException], bool] = _always_failure


@dataclass
class CircuitBreakerMetrics:
    """Metrics for circuit breaker monitoring."""

    total_calls: int = 0
    successful_calls: int = 0
    failed_calls: int = 0
    rejected_calls: int = 0
    state_transitions: Dict[str, int] = field(default_factory=dict)
    last_failure_time: Optional[datetime] = None
    last_success_time: Optional[datetime] = None

    def record_success(self):
        self.total_calls += 1
        self.successful_calls += 1
        self.last_success_time = datetime.now(timezone.utc)

    def record_failure(self):
        self.total_calls += 1
        self.failed_calls += 1
        self.last_failure_time = datetime.now(timezone.utc)

    def record_rejection(self):
        # Rejections are ours, not the downstream service's; they do not count as failures
        self.rejected_calls += 1

    def record_state_transition(self, from_state: CircuitState, to_state: CircuitState):
        key = f"{from_state.value}_to_{to_state.value}"
        self.state_transitions[key] = self.state_transitions.get(key, 0) + 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_calls": self.total_calls,
            "successful_calls": self.successful_calls,
            "failed_calls": self.failed_calls,
            "rejected_calls": self.rejected_calls,
            "state_transitions": dict(self.state_transitions),
            "last_failure_time": self.last_failure_time.isoformat() if self.last_failure_time else None,
            "last_success_time": self.last_success_time.isoformat() if self.last_success_time else None,
        }


class CircuitBreaker:
    """Circuit breaker for fault tolerance.

    Transitions are guarded by a lock so one breaker can be shared by every
    worker (tasks or threads) calling the same service. The lock is only held
    while reading or changing state, never across the awaited call.

    Example:
        breaker = CircuitBreaker(
            name="ai-generation",
            config=CircuitBreakerConfig(failure_threshold=3, reset_timeout=60.0),
        )

        try:
            result = await breaker.execute(lambda: client.generate(prompt))
        except CircuitBreakerOpenError:
            # Fail fast; the service is known to be down
            ...
    """

    def __init__(
        self,
        name: str,
        config: Optional[CircuitBreakerConfig] = None,
        event_bus: Optional[EventBus] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize circuit breaker.

        Args:
            name: Identifier for this circuit breaker
            config: Configuration settings
            event_bus: Optional bus receiving ``circuit.state_changed`` events
            clock: Monotonic time source in seconds
        """
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self.state = CircuitState.CLOSED
        self.consecutive_failures = 0
        self.next_attempt_at: Optional[float] = None
        self.metrics = CircuitBreakerMetrics()
        self._clock = clock
        self._event_bus = event_bus
        self._listeners: List[StateListener] = []
        self._probe_in_flight = False
        self._lock = threading.RLock()

        logger.info(
            f"Circuit breaker '{name}' initialized: "
            f"failure_threshold={self.config.failure_threshold}, "
            f"reset_timeout={self.config.reset_timeout}s"
        )

    def add_listener(self, listener: StateListener) -> None:
        """Register a callback invoked as ``listener(new_state, old_state, breaker)``."""
        self._listeners.append(listener)

    async def execute(self, func: Callable[[], Awaitable[T]]) -> T:
        """Execute an async callable with circuit breaker protection.

        Args:
            func: Zero-argument callable returning an awaitable

        Returns:
            Result of the awaited call

        Raises:
            CircuitBreakerOpenError: If the circuit is open (func is not invoked)
            Exception: Any exception raised by func
        """
        is_probe = self._admit()

        try:
            result = await func()
        except Exception as e:
            with self._lock:
                if self.config.is_failure(e):
                    self._on_failure(is_probe)
                elif is_probe:
                    self._probe_in_flight = False
            raise
        except BaseException:
            # Cancelled mid-call: no verdict about the service
            if is_probe:
                with self._lock:
                    self._probe_in_flight = False
            raise

        with self._lock:
            self._on_success(is_probe)
        return result

    def _admit(self) -> bool:
        """Decide whether a call may proceed. Returns True if it is the half-open probe."""
        with self._lock:
            self._update_state()

            if self.state == CircuitState.OPEN:
                self.metrics.record_rejection()
                logger.warning(f"Circuit breaker '{self.name}' is OPEN, rejecting call")
                raise CircuitBreakerOpenError(self.name, retry_after=self._retry_after())

            if self.state == CircuitState.HALF_OPEN:
                if self._probe_in_flight:
                    self.metrics.record_rejection()
                    logger.debug(f"Circuit breaker '{self.name}' probe in flight, rejecting call")
                    raise CircuitBreakerOpenError(self.name)
                self._probe_in_flight = True
                return True

            return False

    def _retry_after(self) -> Optional[float]:
        if self.next_attempt_at is None:
            return None
        return max(0.0, self.next_attempt_at - self._clock())

    def _update_state(self):
        """Move OPEN to HALF_OPEN once the reset timeout has elapsed."""
        if self.state == CircuitState.OPEN and self.next_attempt_at is not None:
            if self._clock() >= self.next_attempt_at:
                self._transition_to(CircuitState.HALF_OPEN)

    def _on_success(self, is_probe: bool):
        self.metrics.record_success()

        if is_probe:
            self._probe_in_flight = False
            self._transition_to(CircuitState.CLOSED)
            logger.info(f"Circuit breaker '{self.name}' probe succeeded, circuit recovered")
        elif self.state == CircuitState.CLOSED:
            self.consecutive_failures = 0

    def _on_failure(self, is_probe: bool):
        self.metrics.record_failure()

        if is_probe:
            self._probe_in_flight = False
            self._transition_to(CircuitState.OPEN)
            logger.error(f"Circuit breaker '{self.name}' failed in HALF_OPEN, transitioning to OPEN")
            return

        if self.state != CircuitState.CLOSED:
            # Late failure from a call admitted before the circuit opened
            return

        self.consecutive_failures += 1
        logger.warning(
            f"Circuit breaker '{self.name}' failure: "
            f"{self.consecutive_failures}/{self.config.failure_threshold}"
        )
        if self.consecutive_failures >= self.config.failure_threshold:
            self._transition_to(CircuitState.OPEN)
            logger.error(f"Circuit breaker '{self.name}' threshold exceeded, transitioning to OPEN")

    def _transition_to(self, new_state: CircuitState):
        old_state = self.state
        if old_state == new_state:
            return

        self.state = new_state
        if new_state == CircuitState.OPEN:
            self.next_attempt_at = self._clock() + self.config.reset_timeout
        elif new_state == CircuitState.CLOSED:
            self.consecutive_failures = 0
            self.next_attempt_at = None
            self._probe_in_flight = False
        self.metrics.record_state_transition(old_state, new_state)

        logger.info(
            f"Circuit breaker '{self.name}' state transition: "
            f"{old_state.value} -> {new_state.value}"
        )

        for listener in list(self._listeners):
            try:
                listener(new_state, old_state, self)
            except Exception as e:
                logger.warning(f"Circuit breaker '{self.name}' listener failed: {e}")

        if self._event_bus is not None:
            self._event_bus.emit(
                EventType.CIRCUIT_STATE_CHANGED,
                source="circuit_breaker",
                payload={"name": self.name, "state": new_state.value, "previous_state": old_state.value},
            )

    def reset(self):
        """Manually reset circuit breaker to CLOSED state."""
        with self._lock:
            logger.info(f"Manually resetting circuit breaker '{self.name}'")
            self._transition_to(CircuitState.CLOSED)
            self.consecutive_failures = 0

    def trip(self):
        """Manually open the circuit breaker."""
        with self._lock:
            self._transition_to(CircuitState.OPEN)

    def get_state(self) -> CircuitState:
        """Get current circuit breaker state."""
        with self._lock:
            self._update_state()
            return self.state

    def get_metrics(self) -> CircuitBreakerMetrics:
        with self._lock:
            return self.metrics

    def is_available(self) -> bool:
        """Check if circuit breaker will allow a call right now."""
        with self._lock:
            self._update_state()
            if self.state == CircuitState.HALF_OPEN:
                return not self._probe_in_flight
            return self.state == CircuitState.CLOSED

    def to_dict(self) -> dict:
        """Serialize circuit breaker state for status endpoints."""
        with self._lock:
            return {
                "name": self.name,
                "state": self.state.value,
                "consecutive_failures": self.consecutive_failures,
                "retry_after": self._retry_after() if self.state == CircuitState.OPEN else None,
                "config": {
                    "failure_threshold": self.config.failure_threshold,
                    "reset_timeout": self.config.reset_timeout,
                    "request_timeout": self.config.request_timeout,
                },
                "metrics": self.metrics.to_dict(),
            }
