"""Custom exceptions for the BuildPilot scheduler and device cloud layer.

The hierarchy mirrors how failures are handled:

- TransientError: retryable (network blips, rate limits, provider 5xx)
- PermanentError: never retried (validation, unknown provider)
- DeadlineExceededError: a job or test run ran past its deadline
- CircuitBreakerOpenError: the caller refused service, not the downstream call
- OperationCancelledError: cooperative cancellation was observed
"""

from __future__ import annotations

import asyncio
from enum import Enum
from typing import Any, Dict, Optional


class BuildPilotError(Exception):
    """Base exception for all BuildPilot errors."""

    pass


class TransientError(BuildPilotError):
    """Exception raised for failures that are expected to clear on retry."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        """
        Initialize transient error.

        Args:
            message: Error message
            status_code: Optional HTTP status code
        """
        super().__init__(message)
        self.status_code = status_code


class NetworkError(TransientError):
    """Exception raised for network-related errors."""

    pass


class RateLimitError(TransientError):
    """Exception raised when a downstream service throttles us (HTTP 429)."""

    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message, status_code=429)
        self.retry_after = retry_after


class PermanentError(BuildPilotError):
    """Exception raised for failures that retrying cannot fix."""

    pass


class ValidationError(PermanentError):
    """Exception raised for malformed input or configuration."""

    pass


class ProviderNotConfiguredError(PermanentError):
    """Exception raised when a device cloud provider is not registered."""

    def __init__(self, provider: str):
        super().__init__(f"Provider not registered: {provider}")
        self.provider = provider


class ProviderNotImplementedError(PermanentError):
    """Exception raised by adapters whose vendor integration is not built yet."""

    def __init__(self, provider: str, operation: str):
        super().__init__(f"{provider} adapter does not implement {operation} yet")
        self.provider = provider
        self.operation = operation


class ProviderAPIError(BuildPilotError):
    """Exception raised when a device cloud API returns an error response."""

    def __init__(
        self,
        message: str,
        provider: str,
        status_code: Optional[int] = None,
        response_data: Optional[Dict[str, Any]] = None,
    ):
        """
        Initialize provider API error.

        Args:
            message: Error message
            provider: Provider name (e.g. "browserstack")
            status_code: Optional HTTP status code
            response_data: Optional response body from the API
        """
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code
        self.response_data = response_data

    @property
    def is_transient(self) -> bool:
        """Rate limits and server-side errors are worth retrying."""
        if self.status_code is None:
            return True
        return self.status_code == 429 or self.status_code >= 500


class DeadlineExceededError(BuildPilotError):
    """Exception raised when work runs past its deadline."""

    def __init__(self, message: str, timeout: float):
        super().__init__(message)
        self.timeout = timeout


class JobTimeoutError(DeadlineExceededError):
    """Exception raised when an active job exceeds its timeout."""

    pass


class TestRunTimeoutError(DeadlineExceededError):
    """Exception raised when a device test run does not finish in time."""

    __test__ = False


class CircuitBreakerOpenError(BuildPilotError):
    """Raised when a circuit breaker is open and rejects calls."""

    def __init__(self, name: str, retry_after: Optional[float] = None):
        message = f"Circuit breaker '{name}' is open"
        if retry_after is not None:
            message += f" (retry in {retry_after:.1f}s)"
        super().__init__(message)
        self.breaker_name = name
        self.retry_after = retry_after


class OperationCancelledError(BuildPilotError):
    """Raised when work observes a cancellation request."""

    pass


class PhaseExecutionError(BuildPilotError):
    """Raised when a pipeline phase fails after its retries are exhausted.

    Carries the phase name, the queue attempt it happened on and the outputs
    of the phases that completed before it, so the failed job can keep them.
    """

    def __init__(
        self,
        phase: str,
        error: BaseException,
        attempt: int,
        partial_outputs: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(f"Phase '{phase}' failed on attempt {attempt}: {error}")
        self.phase = phase
        self.error = error
        self.attempt = attempt
        self.partial_outputs = dict(partial_outputs or {})


class ErrorKind(Enum):
    """How an error should be treated by the scheduler."""

    TRANSIENT = "transient"
    PERMANENT = "permanent"
    DEADLINE = "deadline"
    CIRCUIT_OPEN = "circuit_open"
    CANCELLED = "cancelled"
    UNKNOWN = "unknown"


def classify_error(error: BaseException) -> ErrorKind:
    """Classify an error into the scheduler's error taxonomy.

    Args:
        error: The exception to classify

    Returns:
        ErrorKind for the error
    """
    if isinstance(error, PhaseExecutionError):
        return classify_error(error.error)
    if isinstance(error, CircuitBreakerOpenError):
        return ErrorKind.CIRCUIT_OPEN
    if isinstance(error, (OperationCancelledError, asyncio.CancelledError)):
        return ErrorKind.CANCELLED
    if isinstance(error, PermanentError):
        return ErrorKind.PERMANENT
    if isinstance(error, DeadlineExceededError):
        return ErrorKind.DEADLINE
    if isinstance(error, ProviderAPIError):
        return ErrorKind.TRANSIENT if error.is_transient else ErrorKind.PERMANENT
    if isinstance(error, (TransientError, ConnectionError, TimeoutError, asyncio.TimeoutError)):
        return ErrorKind.TRANSIENT
    return ErrorKind.UNKNOWN
