"""Single entry point for resilient outbound calls.

Call sites (route handlers talking to the data store, the LLM provider, or
the music API) wrap each outbound call in one of the facade methods::

    facade = ResilienceFacade.from_config(load_config(path))

    tracks = await facade.with_error_handling(
        lambda: music.search(query),
        name=MUSIC_API,
        retry_policy=RetryPolicy(max_attempts=3),
        circuit_breaker_config=CircuitBreakerConfig(failure_threshold=5),
        fallback=lambda: [],
    )

All shared state (breakers, fallbacks, reported events) lives in a
:class:`ResilienceContext` built once at process start and injected here.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import Counter
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, TypeVar

from encore.core.metrics import ResilienceMetrics
from encore.core.telemetry import dependency_span

from .circuit_breaker import CircuitBreakerConfig, CircuitBreakerRegistry, CircuitState
from .errors import CircuitOpenError
from .fallback import FallbackProducer, FallbackRegistry, call_producer
from .reporter import ErrorEvent, ErrorLevel, ErrorReporter
from .retry import RetryPolicy, SleepFn, execute_with_retry

if TYPE_CHECKING:
    from encore.config import EncoreConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class ResilienceContext:
    """Process-wide resilience state, constructed once and injected."""

    breakers: CircuitBreakerRegistry
    fallbacks: FallbackRegistry = field(default_factory=FallbackRegistry)
    reporter: ErrorReporter = field(default_factory=ErrorReporter)
    metrics: ResilienceMetrics | None = None
    default_retry_policy: RetryPolicy = field(default_factory=RetryPolicy)

    @classmethod
    def create(
        cls,
        *,
        service_name: str = "encore",
        default_retry_policy: RetryPolicy | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> ResilienceContext:
        metrics = ResilienceMetrics(service_name)
        return cls(
            breakers=CircuitBreakerRegistry(clock=clock, metrics=metrics),
            fallbacks=FallbackRegistry(),
            reporter=ErrorReporter(metrics=metrics),
            metrics=metrics,
            default_retry_policy=default_retry_policy or RetryPolicy(),
        )


class ResilienceFacade:
    """Composes retry, circuit breaking, fallbacks, and error reporting."""

    def __init__(
        self,
        context: ResilienceContext | None = None,
        *,
        config: EncoreConfig | None = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self.context = context or ResilienceContext.create()
        self.config = config
        self._sleep = sleep

    @classmethod
    def from_config(
        cls,
        config: EncoreConfig,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: SleepFn = asyncio.sleep,
    ) -> ResilienceFacade:
        context = ResilienceContext.create(
            service_name=config.service_name,
            default_retry_policy=config.default_retry_policy,
            clock=clock,
        )
        return cls(context, config=config, sleep=sleep)

    # -- entry points --------------------------------------------------------

    async def with_retry(
        self,
        operation: Callable[[], Awaitable[T]],
        policy: RetryPolicy | None = None,
        *,
        name: str | None = None,
    ) -> T:
        """Run *operation* under *policy* (or the context default).

        With a *name*, the attempts run inside that dependency's span.
        """
        if name is None:
            return await self._retry(operation, policy, None)
        with dependency_span(name, operation="with_retry"):
            return await self._retry(operation, policy, name)

    async def with_circuit_breaker(
        self,
        name: str,
        operation: Callable[[], Awaitable[T]],
        config: CircuitBreakerConfig | None = None,
    ) -> T:
        """Run *operation* through the breaker for *name*.

        The breaker is created on first use with *config*; later calls reuse
        it and ignore *config*.  When the breaker rejects the call and a
        fallback is registered for *name*, the fallback value is returned.
        """
        with dependency_span(name, operation="with_circuit_breaker"):
            return await self._through_breaker(name, operation, config)

    async def with_error_handling(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        name: str,
        fallback: FallbackProducer | None = None,
        retry_policy: RetryPolicy | None = None,
        circuit_breaker_config: CircuitBreakerConfig | None = None,
    ) -> T:
        """Full chain: optional retry inside an optional breaker, with fallback.

        Terminal failures are reported at ``error`` level.  With a *fallback*
        its value is returned (after an ``info`` event); without one the
        original error propagates unchanged.
        """
        if fallback is not None:
            self.register_fallback(name, fallback)

        call: Callable[[], Awaitable[T]] = operation
        if retry_policy is not None:

            async def _retrying() -> T:
                return await self._retry(operation, retry_policy, name)

            call = _retrying

        with dependency_span(name, operation="with_error_handling"):
            try:
                if circuit_breaker_config is not None:
                    return await self._through_breaker(name, call, circuit_breaker_config)
                return await call()

            except Exception as exc:
                self.context.reporter.log(
                    ErrorLevel.ERROR,
                    f"Operation {name} failed",
                    cause=exc,
                    context={"service": name},
                )
                if fallback is None:
                    raise
                self.context.reporter.log(
                    ErrorLevel.INFO,
                    f"Using fallback for {name}",
                    context={"service": name},
                )
                if self.context.metrics is not None:
                    self.context.metrics.record_fallback(name, "terminal_failure")
                return await call_producer(fallback)

    async def with_dependency(
        self,
        name: str,
        operation: Callable[[], Awaitable[T]],
        *,
        fallback: FallbackProducer | None = None,
    ) -> T:
        """``with_error_handling`` using the configured profile for *name*."""
        if self.config is None:
            raise RuntimeError("with_dependency requires a facade built from an EncoreConfig")
        profile = self.config.profile_for(name)
        return await self.with_error_handling(
            operation,
            name=name,
            fallback=fallback,
            retry_policy=profile.retry_policy,
            circuit_breaker_config=profile.circuit_breaker,
        )

    # -- chain steps ---------------------------------------------------------

    async def _retry(
        self,
        operation: Callable[[], Awaitable[T]],
        policy: RetryPolicy | None,
        name: str | None,
    ) -> T:
        return await execute_with_retry(
            operation,
            retry_policy=policy or self.context.default_retry_policy,
            dependency=name,
            sleep=self._sleep,
            metrics=self.context.metrics,
        )

    async def _through_breaker(
        self,
        name: str,
        operation: Callable[[], Awaitable[T]],
        config: CircuitBreakerConfig | None,
    ) -> T:
        breaker = self.context.breakers.get_or_create(name, config)
        try:
            return await breaker.execute(operation)
        except CircuitOpenError as exc:
            # Only this breaker's rejection is resolved here; an open circuit
            # of some other dependency raised by the operation propagates.
            if exc.dependency != name:
                raise
            producer = self.context.fallbacks.get(name)
            if producer is None:
                raise
            self.context.reporter.log(
                ErrorLevel.WARNING,
                f"Circuit breaker {name} is open, using fallback",
                context={"service": name},
            )
            if self.context.metrics is not None:
                self.context.metrics.record_fallback(name, "circuit_open")
            return await call_producer(producer)

    # -- administration ------------------------------------------------------

    def register_fallback(self, name: str, producer: FallbackProducer) -> None:
        self.context.fallbacks.register(name, producer)

    def log_error(
        self,
        level: ErrorLevel | str,
        message: str,
        cause: BaseException | None = None,
        context: Mapping[str, Any] | None = None,
    ) -> ErrorEvent:
        return self.context.reporter.log(level, message, cause, context)

    def subscribe_to_errors(self, listener: Callable[[ErrorEvent], None]) -> Callable[[], None]:
        return self.context.reporter.subscribe(listener)

    def get_circuit_breaker_state(self, name: str) -> CircuitState | None:
        """State of the breaker for *name*, or ``None`` if it was never used."""
        breaker = self.context.breakers.get(name)
        return breaker.state if breaker is not None else None

    def reset_circuit_breaker(self, name: str) -> None:
        """Force the breaker for *name* closed.  Unknown names are ignored."""
        breaker = self.context.breakers.get(name)
        if breaker is not None:
            breaker.reset()

    def health_snapshot(self) -> dict[str, Any]:
        """Per-dependency breaker status plus a summary of reported events."""
        events = self.context.reporter.get_notifications()
        levels = Counter(event.level.value for event in events)
        breakers = self.context.breakers.snapshot()
        return {
            "healthy": all(s["state"] != CircuitState.OPEN.value for s in breakers.values()),
            "circuit_breakers": breakers,
            "fallbacks": sorted(self.context.fallbacks.names()),
            "events": {level.value: levels.get(level.value, 0) for level in ErrorLevel},
        }
