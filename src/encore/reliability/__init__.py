"""Resilience core for outbound dependency calls.

Retry with exponential backoff, per-dependency circuit breakers, fallbacks,
and a bounded error-event reporter, composed by :class:`ResilienceFacade`.
"""

from __future__ import annotations

from .circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerRegistry,
    CircuitBreakerState,
    CircuitState,
)
from .errors import (
    CircuitOpenError,
    DependencyError,
    PermanentOperationError,
    TransientDependencyError,
    classify_error,
    default_retry_predicate,
    extract_status_code,
)
from .facade import ResilienceContext, ResilienceFacade
from .fallback import FallbackRegistry
from .reporter import MAX_EVENTS, ErrorEvent, ErrorLevel, ErrorReporter
from .retry import RetryPolicy, execute_with_retry

__all__ = [
    "MAX_EVENTS",
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerRegistry",
    "CircuitBreakerState",
    "CircuitOpenError",
    "CircuitState",
    "DependencyError",
    "ErrorEvent",
    "ErrorLevel",
    "ErrorReporter",
    "FallbackRegistry",
    "PermanentOperationError",
    "ResilienceContext",
    "ResilienceFacade",
    "RetryPolicy",
    "TransientDependencyError",
    "classify_error",
    "default_retry_predicate",
    "execute_with_retry",
    "extract_status_code",
]
