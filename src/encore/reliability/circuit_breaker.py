"""Circuit breaker for per-dependency failure protection.

- One breaker per dependency name (closed, open, half-open states)
- Trips after consecutive failures reach the threshold
- Probes recovery once the reset timeout has elapsed
- Closes again after a run of successful half-open calls
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Any, TypeVar

from .errors import CircuitOpenError

if TYPE_CHECKING:
    from encore.core.metrics import ResilienceMetrics

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(StrEnum):
    """Circuit breaker states."""

    CLOSED = "CLOSED"
    """Normal operation, calls pass through."""

    OPEN = "OPEN"
    """Circuit tripped, calls fail fast."""

    HALF_OPEN = "HALF_OPEN"
    """Probing recovery, calls pass through experimentally."""


@dataclass(frozen=True)
class CircuitBreakerConfig:
    """Circuit breaker configuration."""

    failure_threshold: int = 5
    """Number of consecutive failures before opening the circuit."""

    reset_timeout_seconds: float = 60.0
    """Time to wait after the last failure before probing (OPEN -> HALF_OPEN)."""

    monitoring_period_seconds: float = 10.0
    """Failures older than this are forgotten on the next CLOSED success."""

    half_open_success_threshold: int = 3
    """Consecutive HALF_OPEN successes needed to close the circuit."""

    on_open: Callable[[int], None] | None = None
    """Called with the failure count when the circuit opens."""

    on_close: Callable[[], None] | None = None
    """Called when the circuit closes after recovery."""

    on_half_open: Callable[[], None] | None = None
    """Called when the circuit starts probing recovery."""

    def __post_init__(self) -> None:
        if self.failure_threshold < 1:
            raise ValueError(f"failure_threshold must be >= 1, got {self.failure_threshold}")
        if self.reset_timeout_seconds < 0:
            raise ValueError(
                f"reset_timeout_seconds must be >= 0, got {self.reset_timeout_seconds}"
            )
        if self.monitoring_period_seconds < 0:
            raise ValueError(
                f"monitoring_period_seconds must be >= 0, got {self.monitoring_period_seconds}"
            )
        if self.half_open_success_threshold < 1:
            raise ValueError(
                "half_open_success_threshold must be >= 1, "
                f"got {self.half_open_success_threshold}"
            )

    @classmethod
    def from_config(cls, config: dict[str, Any]) -> CircuitBreakerConfig:
        """Create CircuitBreakerConfig from a configuration dictionary."""
        return cls(
            failure_threshold=int(config.get("failure_threshold", 5)),
            reset_timeout_seconds=float(config.get("reset_timeout_seconds", 60.0)),
            monitoring_period_seconds=float(config.get("monitoring_period_seconds", 10.0)),
            half_open_success_threshold=int(config.get("half_open_success_threshold", 3)),
        )


@dataclass
class CircuitBreakerState:
    """Mutable counters owned by one breaker."""

    state: CircuitState = CircuitState.CLOSED
    """Current circuit state."""

    consecutive_failures: int = 0
    """Failures counted towards the threshold."""

    last_failure_time: float | None = None
    """Clock reading of the most recent failure."""

    half_open_successes: int = 0
    """Successful calls since entering HALF_OPEN."""


class CircuitBreaker:
    """Per-dependency circuit breaker.

    State transitions:
    - CLOSED -> OPEN: after failure_threshold consecutive failures
    - OPEN -> HALF_OPEN: on the first call after reset_timeout_seconds
    - HALF_OPEN -> CLOSED: after half_open_success_threshold successes
    - HALF_OPEN -> OPEN: on any failure

    State checks and updates hold a lock owned by this breaker only; the
    wrapped operation itself runs outside the lock.
    """

    def __init__(
        self,
        name: str,
        config: CircuitBreakerConfig | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        metrics: ResilienceMetrics | None = None,
    ) -> None:
        """Initialize a circuit breaker for a dependency.

        Parameters
        ----------
        name:
            Dependency identifier (e.g., "llm-chat", "music-api").
        config:
            Optional circuit breaker configuration. Uses defaults if not provided.
        clock:
            Monotonic clock in seconds (injectable for tests).
        metrics:
            Optional metrics sink for transitions and rejections.
        """
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._metrics = metrics
        self._state = CircuitBreakerState()
        self._lock = asyncio.Lock()

    @property
    def state(self) -> CircuitState:
        """Current circuit state."""
        return self._state.state

    @property
    def is_open(self) -> bool:
        """True while calls are being rejected."""
        return self._state.state == CircuitState.OPEN

    @property
    def consecutive_failures(self) -> int:
        return self._state.consecutive_failures

    async def execute(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Execute operation through the circuit breaker.

        Raises
        ------
        CircuitOpenError
            If the circuit is open and the reset timeout has not elapsed.
        Exception
            The underlying operation error.
        """
        async with self._lock:
            self._before_call()

        try:
            result = await operation()
        except Exception:
            async with self._lock:
                self._record_failure()
            raise

        async with self._lock:
            self._record_success()
        return result

    def reset(self) -> None:
        """Force the circuit CLOSED with all counters zeroed."""
        logger.warning("Circuit breaker manually reset", extra={"dependency": self.name})
        self._state = CircuitBreakerState()

    def _elapsed_since_failure(self) -> float | None:
        if self._state.last_failure_time is None:
            return None
        return self._clock() - self._state.last_failure_time

    def _before_call(self) -> None:
        if self._state.state != CircuitState.OPEN:
            return

        elapsed = self._elapsed_since_failure()
        reset_timeout = self.config.reset_timeout_seconds
        if elapsed is None or elapsed >= reset_timeout:
            self._transition(CircuitState.HALF_OPEN)
            self._state.half_open_successes = 0
            if self.config.on_half_open is not None:
                self.config.on_half_open()
            return

        if self._metrics is not None:
            self._metrics.record_rejection(self.name)
        raise CircuitOpenError(
            self.name,
            retry_after=reset_timeout - elapsed,
            consecutive_failures=self._state.consecutive_failures,
        )

    def _record_success(self) -> None:
        if self._state.state == CircuitState.HALF_OPEN:
            self._state.half_open_successes += 1
            logger.info(
                "Half-open probe succeeded",
                extra={
                    "dependency": self.name,
                    "successes": self._state.half_open_successes,
                    "threshold": self.config.half_open_success_threshold,
                },
            )
            if self._state.half_open_successes >= self.config.half_open_success_threshold:
                self._transition(CircuitState.CLOSED)
                self._state.consecutive_failures = 0
                self._state.half_open_successes = 0
                if self.config.on_close is not None:
                    self.config.on_close()

        elif self._state.state == CircuitState.CLOSED:
            # Failures inside the monitoring period keep accumulating.
            elapsed = self._elapsed_since_failure()
            if elapsed is None or elapsed > self.config.monitoring_period_seconds:
                self._state.consecutive_failures = 0

    def _record_failure(self) -> None:
        self._state.consecutive_failures += 1
        self._state.last_failure_time = self._clock()

        if self._state.state == CircuitState.HALF_OPEN:
            logger.warning(
                "Half-open probe failed, reopening circuit",
                extra={"dependency": self.name},
            )
            self._state.half_open_successes = 0
            self._open()

        elif self._state.state == CircuitState.CLOSED:
            logger.warning(
                "Circuit breaker failure recorded",
                extra={
                    "dependency": self.name,
                    "consecutive_failures": self._state.consecutive_failures,
                    "threshold": self.config.failure_threshold,
                },
            )
            if self._state.consecutive_failures >= self.config.failure_threshold:
                self._open()

    def _open(self) -> None:
        self._transition(CircuitState.OPEN)
        if self.config.on_open is not None:
            self.config.on_open(self._state.consecutive_failures)

    def _transition(self, new_state: CircuitState) -> None:
        old_state = self._state.state
        self._state.state = new_state
        log = logger.error if new_state == CircuitState.OPEN else logger.info
        log(
            "Circuit breaker transitioning to %s",
            new_state.value,
            extra={
                "dependency": self.name,
                "from_state": old_state.value,
                "to_state": new_state.value,
                "consecutive_failures": self._state.consecutive_failures,
            },
        )
        if self._metrics is not None:
            self._metrics.record_transition(self.name, new_state.value)

    def get_status(self) -> dict[str, Any]:
        """Point-in-time view of this breaker for health endpoints.

        Returns
        -------
        dict
            State, counters, seconds since the last failure, and config.
        """
        elapsed = self._elapsed_since_failure()
        return {
            "dependency": self.name,
            "state": self._state.state.value,
            "consecutive_failures": self._state.consecutive_failures,
            "half_open_successes": self._state.half_open_successes,
            "seconds_since_last_failure": elapsed,
            "config": {
                "failure_threshold": self.config.failure_threshold,
                "reset_timeout_seconds": self.config.reset_timeout_seconds,
                "monitoring_period_seconds": self.config.monitoring_period_seconds,
            },
        }


class CircuitBreakerRegistry:
    """Name-keyed arena of circuit breakers shared by all call sites.

    Entries are created on first use and never evicted.  The configuration
    passed on first use wins; later configurations for the same name are
    ignored.
    """

    def __init__(
        self,
        *,
        clock: Callable[[], float] = time.monotonic,
        metrics: ResilienceMetrics | None = None,
    ) -> None:
        self._clock = clock
        self._metrics = metrics
        self._breakers: dict[str, CircuitBreaker] = {}

    def get_or_create(
        self, name: str, config: CircuitBreakerConfig | None = None
    ) -> CircuitBreaker:
        # No await between lookup and insert: atomic on the event loop.
        breaker = self._breakers.get(name)
        if breaker is None:
            breaker = CircuitBreaker(name, config, clock=self._clock, metrics=self._metrics)
            self._breakers[name] = breaker
            logger.debug(
                "Circuit breaker created",
                extra={"dependency": name, "failure_threshold": breaker.config.failure_threshold},
            )
        return breaker

    def get(self, name: str) -> CircuitBreaker | None:
        return self._breakers.get(name)

    def __contains__(self, name: object) -> bool:
        return name in self._breakers

    def __len__(self) -> int:
        return len(self._breakers)

    def snapshot(self) -> dict[str, dict[str, Any]]:
        """Status of every registered breaker, keyed by dependency name."""
        return {name: breaker.get_status() for name, breaker in self._breakers.items()}

    def reset_all(self) -> None:
        logger.warning("Resetting all circuit breakers")
        for breaker in self._breakers.values():
            breaker.reset()
