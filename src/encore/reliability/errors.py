"""Error taxonomy for outbound dependency calls.

Three classes of failure reach the resilience core:

- transient: the dependency is unhealthy or throttled (HTTP 5xx / 429). Retryable.
- permanent: the call itself is wrong (validation, other 4xx, programming
  errors). Never retried.
- circuit_open: synthetic, raised by a circuit breaker that refused the call
  without invoking the operation.

Errors raised by SDKs are not rewrapped.  The retry predicate inspects them
in place through :func:`extract_status_code`.
"""

from __future__ import annotations

from typing import Any


class DependencyError(Exception):
    """Base class for errors attributed to an external dependency."""

    def __init__(
        self,
        message: str,
        *,
        dependency: str | None = None,
        status_code: int | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.dependency = dependency
        self.status_code = status_code
        self.details = details or {}


class TransientDependencyError(DependencyError):
    """Retryable failure of a dependency (5xx-class, 429, connection loss)."""


class PermanentOperationError(DependencyError):
    """Non-retryable failure: bad input, 4xx other than 429, caller bugs."""


class CircuitOpenError(DependencyError):
    """Raised when a circuit breaker rejects a call without executing it."""

    def __init__(
        self,
        dependency: str,
        *,
        retry_after: float | None = None,
        consecutive_failures: int = 0,
    ) -> None:
        super().__init__(
            f"Circuit breaker is OPEN for {dependency}",
            dependency=dependency,
            details={"consecutive_failures": consecutive_failures},
        )
        self.retry_after = retry_after
        self.consecutive_failures = consecutive_failures


def extract_status_code(error: BaseException) -> int | None:
    """Return the HTTP-like status code carried by *error*, if any.

    Looks at ``status_code`` and ``status`` attributes first, then at
    ``error.response.status_code`` (the shape of ``httpx.HTTPStatusError``).
    """
    for attr in ("status_code", "status"):
        value = getattr(error, attr, None)
        if isinstance(value, int) and not isinstance(value, bool):
            return value

    response = getattr(error, "response", None)
    if response is not None:
        value = getattr(response, "status_code", None)
        if isinstance(value, int) and not isinstance(value, bool):
            return value

    return None


def is_retryable_status(status_code: int | None) -> bool:
    """5xx and 429 are retryable, everything else is not."""
    if status_code is None:
        return False
    return status_code >= 500 or status_code == 429


def default_retry_predicate(error: BaseException) -> bool:
    """Default retry decision used by :class:`~encore.reliability.retry.RetryPolicy`.

    Retries only errors that carry a status code >= 500 or exactly 429, plus
    explicit :class:`TransientDependencyError` instances.  Circuit-open and
    permanent errors are never retried.
    """
    if isinstance(error, (CircuitOpenError, PermanentOperationError)):
        return False
    if isinstance(error, TransientDependencyError) and error.status_code is None:
        return True
    return is_retryable_status(extract_status_code(error))


def classify_error(error: BaseException) -> str:
    """Label *error* as ``transient``, ``permanent`` or ``circuit_open``."""
    if isinstance(error, CircuitOpenError):
        return "circuit_open"
    if default_retry_predicate(error):
        return "transient"
    return "permanent"
