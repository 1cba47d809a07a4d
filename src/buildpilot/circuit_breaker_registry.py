"""Circuit Breaker Registry for managing multiple circuit breakers.

One registry is constructed at startup and handed to the components that need
breakers, so every worker calling the same service shares one breaker
instance per call site.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from .circuit_breaker import CircuitBreaker, CircuitBreakerConfig, CircuitBreakerMetrics, CircuitState
from .events import EventBus

logger = logging.getLogger(__name__)

# Call sites the generation pipeline protects
AI_GENERATION = "ai-generation"
BUILD_SERVICE = "build-service"
OBJECT_STORAGE = "object-storage"
DATABASE = "database"

PRESETS: Dict[str, CircuitBreakerConfig] = {
    # AI generation can be slow
    AI_GENERATION: CircuitBreakerConfig(failure_threshold=3, reset_timeout=60.0, request_timeout=120.0),
    BUILD_SERVICE: CircuitBreakerConfig(failure_threshold=5, reset_timeout=30.0, request_timeout=30.0),
    OBJECT_STORAGE: CircuitBreakerConfig(failure_threshold=5, reset_timeout=15.0, request_timeout=10.0),
    DATABASE: CircuitBreakerConfig(failure_threshold=3, reset_timeout=10.0, request_timeout=5.0),
}


@dataclass
class CircuitBreakerStatus:
    """Status information for a circuit breaker."""

    name: str
    state: CircuitState
    metrics: CircuitBreakerMetrics
    is_available: bool
    config: CircuitBreakerConfig


class CircuitBreakerRegistry:
    """Registry for managing multiple circuit breakers.

    Example:
        registry = CircuitBreakerRegistry(event_bus=bus)

        breaker = registry.get_or_create("ai-generation")
        result = await breaker.execute(lambda: generate())

        statuses = registry.get_all_statuses()
    """

    def __init__(
        self,
        event_bus: Optional[EventBus] = None,
        presets: Optional[Dict[str, CircuitBreakerConfig]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._breakers: Dict[str, CircuitBreaker] = {}
        self._presets = dict(PRESETS if presets is None else presets)
        self._event_bus = event_bus
        self._clock = clock
        self._registry_lock = threading.RLock()

    def register(
        self,
        name: str,
        config: Optional[CircuitBreakerConfig] = None,
        force: bool = False,
    ) -> CircuitBreaker:
        """Register a new circuit breaker.

        Args:
            name: Unique identifier for the circuit breaker
            config: Configuration (defaults to the preset for ``name``, if any)
            force: If True, replace existing circuit breaker with same name

        Returns:
            The registered circuit breaker

        Raises:
            ValueError: If circuit breaker with name already exists and force=False
        """
        with self._registry_lock:
            if name in self._breakers and not force:
                raise ValueError(
                    f"Circuit breaker '{name}' already registered. Use force=True to replace."
                )

            breaker = CircuitBreaker(
                name=name,
                config=config or self._presets.get(name),
                event_bus=self._event_bus,
                clock=self._clock,
            )
            self._breakers[name] = breaker
            logger.info(f"Registered circuit breaker: {name}")
            return breaker

    def get(self, name: str) -> Optional[CircuitBreaker]:
        with self._registry_lock:
            return self._breakers.get(name)

    def get_or_create(self, name: str, config: Optional[CircuitBreakerConfig] = None) -> CircuitBreaker:
        """Get an existing circuit breaker or create it."""
        with self._registry_lock:
            breaker = self._breakers.get(name)
            if breaker is None:
                breaker = self.register(name, config)
            return breaker

    def names(self) -> List[str]:
        with self._registry_lock:
            return list(self._breakers)

    def get_all_statuses(self) -> Dict[str, CircuitBreakerStatus]:
        """Get status of every registered circuit breaker."""
        with self._registry_lock:
            return {
                name: CircuitBreakerStatus(
                    name=name,
                    state=breaker.get_state(),
                    metrics=breaker.get_metrics(),
                    is_available=breaker.is_available(),
                    config=breaker.config,
                )
                for name, breaker in self._breakers.items()
            }

    def reset_all(self) -> None:
        """Reset every circuit breaker to CLOSED."""
        with self._registry_lock:
            for breaker in self._breakers.values():
                breaker.reset()
            logger.info(f"Reset {len(self._breakers)} circuit breakers")
