"""Bounded retry with backoff and a retryability predicate.

The predicate keeps permanent errors (validation failures, unknown providers)
from being retried while transient ones (timeouts, 5xx, rate limits) are.
Backoff is linear by default (``base_delay * attempt``); exponential backoff
with an optional jitter is available through ``RetryPolicy.backoff``.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable, Generic, Literal, Optional, TypeVar

from .exceptions import (
    CircuitBreakerOpenError,
    ErrorKind,
    OperationCancelledError,
    PermanentError,
    ProviderAPIError,
    TransientError,
    classify_error,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

RetryPredicate = Callable[[BaseException], bool]
RetryCallback = Callable[[BaseException, int, float], None]
SleepFunc = Callable[[float], Awaitable[None]]

_NETWORK_MARKERS = ("ECONNRESET", "ECONNREFUSED", "ETIMEDOUT", "ENOTFOUND", "connection reset")


@dataclass(frozen=True)
class RetryPolicy:
    """How many times to try and how long to wait in between.

    ``max_attempts`` counts the first call, so 1 disables retrying.
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    backoff: Literal["linear", "exponential"] = "linear"
    multiplier: float = 2.0
    jitter: float = 0.0

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    def delay_for(self, attempt: int) -> float:
        """Delay to wait after failed attempt number ``attempt`` (1-based)."""
        if self.backoff == "exponential":
            delay = self.base_delay * (self.multiplier ** (attempt - 1))
        else:
            delay = self.base_delay * attempt
        delay = min(delay, self.max_delay)
        if self.jitter:
            delay += delay * self.jitter * (random.random() * 2 - 1)
        return max(0.0, delay)

    def with_base_delay(self, base_delay: float, max_delay: Optional[float] = None) -> "RetryPolicy":
        return replace(self, base_delay=base_delay, max_delay=self.max_delay if max_delay is None else max_delay)


class RetryStrategies:
    """Pre-configured retry policies."""

    # Quick retries for fast-fail phases
    fast = RetryPolicy(max_attempts=2, base_delay=1.0, max_delay=5.0)
    # Standard retries for remote API calls
    standard = RetryPolicy(max_attempts=3, base_delay=1.0, max_delay=10.0)
    aggressive = RetryPolicy(max_attempts=5, base_delay=0.5, max_delay=30.0, backoff="exponential", jitter=0.3)
    patient = RetryPolicy(max_attempts=5, base_delay=2.0, max_delay=60.0, backoff="exponential", jitter=0.2)


def _status_code(error: BaseException) -> Optional[int]:
    status = getattr(error, "status_code", None)
    if status is None:
        status = getattr(error, "status", None)
    return status if isinstance(status, int) else None


class RetryPredicates:
    """Common retryability predicates."""

    @staticmethod
    def network_errors(error: BaseException) -> bool:
        if isinstance(error, (ConnectionError, TimeoutError, asyncio.TimeoutError)):
            return True
        message = str(error)
        return any(marker in message for marker in _NETWORK_MARKERS)

    @staticmethod
    def server_errors(error: BaseException) -> bool:
        status = _status_code(error)
        return status is not None and 500 <= status < 600

    @staticmethod
    def rate_limit_errors(error: BaseException) -> bool:
        return _status_code(error) == 429

    @staticmethod
    def transient_errors(error: BaseException) -> bool:
        """Network errors, 5xx and 429; never permanent, circuit-open or cancellation errors."""
        if isinstance(error, (PermanentError, CircuitBreakerOpenError, OperationCancelledError)):
            return False
        if isinstance(error, ProviderAPIError):
            return error.is_transient
        if isinstance(error, TransientError) or classify_error(error) == ErrorKind.TRANSIENT:
            return True
        return (
            RetryPredicates.network_errors(error)
            or RetryPredicates.server_errors(error)
            or RetryPredicates.rate_limit_errors(error)
        )

    @staticmethod
    def always(error: BaseException) -> bool:
        return True

    @staticmethod
    def never(error: BaseException) -> bool:
        return False


@dataclass
class RetryResult(Generic[T]):
    """Outcome of ``retry_with_result``."""

    success: bool
    attempts: int
    total_duration: float
    value: Optional[T] = None
    error: Optional[BaseException] = None


class RetryExecutor:
    """Runs an async callable until it succeeds or the policy gives up.

    Example:
        executor = RetryExecutor(RetryStrategies.standard)
        result = await executor.execute(
            lambda: client.fetch(),
            is_retryable=RetryPredicates.transient_errors,
        )
    """

    def __init__(self, policy: Optional[RetryPolicy] = None, sleep: SleepFunc = asyncio.sleep):
        self.policy = policy or RetryPolicy()
        self._sleep = sleep

    async def execute(
        self,
        func: Callable[[], Awaitable[T]],
        is_retryable: Optional[RetryPredicate] = None,
        on_retry: Optional[RetryCallback] = None,
        cancel_event: Optional[asyncio.Event] = None,
        operation_name: str = "operation",
    ) -> T:
        """Execute ``func`` with retries.

        Args:
            func: Zero-argument callable returning an awaitable
            is_retryable: Predicate deciding whether an error is worth retrying
                          (default: always)
            on_retry: Called as ``on_retry(error, attempt, delay)`` before sleeping
            cancel_event: Cancellation token; once set, no further attempt is made
            operation_name: Human-readable name for logging

        Returns:
            Result of the first successful attempt

        Raises:
            OperationCancelledError: If the cancellation token was set
            Exception: The last error if attempts are exhausted or it is not retryable
        """
        is_retryable = is_retryable or RetryPredicates.always
        max_attempts = self.policy.max_attempts

        for attempt in range(1, max_attempts + 1):
            self._check_cancelled(cancel_event, operation_name)
            try:
                result = await func()
                if attempt > 1:
                    logger.info(f"[Retry] {operation_name} succeeded on attempt {attempt}")
                return result
            except Exception as e:
                if attempt >= max_attempts:
                    logger.error(
                        f"[Retry] {operation_name} failed after {attempt} attempts: "
                        f"{type(e).__name__}: {e}"
                    )
                    raise
                if not is_retryable(e):
                    logger.error(
                        f"[Retry] {operation_name} failed with non-retryable "
                        f"{type(e).__name__}: {e}"
                    )
                    raise

                delay = self.policy.delay_for(attempt)
                logger.warning(
                    f"[Retry] {operation_name} failed (attempt {attempt}/{max_attempts}), "
                    f"retrying in {delay:.2f}s: {e}"
                )
                if on_retry is not None:
                    on_retry(e, attempt, delay)
                await self._wait(delay, cancel_event, operation_name)

        # Unreachable: the loop either returns or raises
        raise RuntimeError(f"{operation_name} exhausted retries without a result")

    async def execute_with_result(
        self,
        func: Callable[[], Awaitable[T]],
        is_retryable: Optional[RetryPredicate] = None,
        on_retry: Optional[RetryCallback] = None,
        cancel_event: Optional[asyncio.Event] = None,
        operation_name: str = "operation",
    ) -> RetryResult[T]:
        """Like ``execute`` but reports the outcome instead of raising."""
        attempts = 0
        start = time.monotonic()

        async def counted() -> T:
            nonlocal attempts
            attempts += 1
            return await func()

        try:
            value = await self.execute(counted, is_retryable, on_retry, cancel_event, operation_name)
        except Exception as e:
            return RetryResult(
                success=False, attempts=attempts, total_duration=time.monotonic() - start, error=e
            )
        return RetryResult(
            success=True, attempts=attempts, total_duration=time.monotonic() - start, value=value
        )

    @staticmethod
    def _check_cancelled(cancel_event: Optional[asyncio.Event], operation_name: str) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise OperationCancelledError(f"{operation_name} cancelled")

    async def _wait(self, delay: float, cancel_event: Optional[asyncio.Event], operation_name: str) -> None:
        if cancel_event is None:
            await self._sleep(delay)
            return

        sleeper = asyncio.ensure_future(self._sleep(delay))
        waiter = asyncio.ensure_future(cancel_event.wait())
        try:
            await asyncio.wait({sleeper, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for pending in (sleeper, waiter):
                if not pending.done():
                    pending.cancel()
        self._check_cancelled(cancel_event, operation_name)


async def retry(
    func: Callable[[], Awaitable[T]],
    max_attempts: int = 3,
    base_delay: float = 1.0,
    is_retryable: Optional[RetryPredicate] = None,
    on_retry: Optional[RetryCallback] = None,
    cancel_event: Optional[asyncio.Event] = None,
    **policy_kwargs: Any,
) -> T:
    """Functional shortcut for ``RetryExecutor(RetryPolicy(...)).execute(...)``."""
    policy = RetryPolicy(max_attempts=max_attempts, base_delay=base_delay, **policy_kwargs)
    return await RetryExecutor(policy).execute(
        func, is_retryable=is_retryable, on_retry=on_retry, cancel_event=cancel_event
    )


async def retry_with_result(
    func: Callable[[], Awaitable[T]],
    max_attempts: int = 3,
    base_delay: float = 1.0,
    is_retryable: Optional[RetryPredicate] = None,
    **policy_kwargs: Any,
) -> RetryResult[T]:
    policy = RetryPolicy(max_attempts=max_attempts, base_delay=base_delay, **policy_kwargs)
    return await RetryExecutor(policy).execute_with_result(func, is_retryable=is_retryable)
