"""Bounded retry with exponential backoff for outbound dependency calls.

- Attempts run strictly one after another; the caller is suspended with a
  non-blocking ``asyncio.sleep`` between them.
- Only errors accepted by the policy's ``retry_predicate`` are retried.
  The default accepts HTTP-like 5xx and 429 failures.
- When attempts run out, the last error is re-raised unchanged.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, TypeVar

from .errors import classify_error, default_retry_predicate

if TYPE_CHECKING:
    from encore.core.metrics import ResilienceMetrics

logger = logging.getLogger(__name__)

T = TypeVar("T")

SleepFn = Callable[[float], Awaitable[Any]]


@dataclass(frozen=True)
class RetryPolicy:
    """Retry policy configuration."""

    max_attempts: int = 3
    """Maximum number of attempts (including the initial attempt)."""

    initial_delay_seconds: float = 1.0
    """Delay before the first retry."""

    max_delay_seconds: float = 10.0
    """Ceiling for the delay between attempts."""

    backoff_multiplier: float = 2.0
    """Factor applied to the delay after each retry."""

    retry_predicate: Callable[[BaseException], bool] = default_retry_predicate
    """Decides per failure whether another attempt is allowed."""

    on_retry: Callable[[BaseException, int], None] | None = None
    """Side-effect hook called with (error, attempt_number) before each backoff."""

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.initial_delay_seconds < 0:
            raise ValueError(
                f"initial_delay_seconds must be >= 0, got {self.initial_delay_seconds}"
            )
        if self.max_delay_seconds < self.initial_delay_seconds:
            raise ValueError(
                "max_delay_seconds must be >= initial_delay_seconds "
                f"({self.max_delay_seconds} < {self.initial_delay_seconds})"
            )
        if self.backoff_multiplier < 1:
            raise ValueError(f"backoff_multiplier must be >= 1, got {self.backoff_multiplier}")

    def delay_before_attempt(self, attempt_number: int) -> float:
        """Backoff delay that precedes *attempt_number* (1-indexed).

        The first attempt has no delay.  Attempt ``i > 1`` waits
        ``min(initial * multiplier ** (i - 2), max)``.
        """
        if attempt_number <= 1:
            return 0.0
        delay = self.initial_delay_seconds * (self.backoff_multiplier ** (attempt_number - 2))
        return min(delay, self.max_delay_seconds)

    @classmethod
    def from_config(cls, config: dict[str, Any]) -> RetryPolicy:
        """Create a RetryPolicy from a configuration dictionary.

        Parameters
        ----------
        config:
            Keys: max_attempts, initial_delay_seconds, max_delay_seconds,
            backoff_multiplier (all optional).
        """
        return cls(
            max_attempts=int(config.get("max_attempts", 3)),
            initial_delay_seconds=float(config.get("initial_delay_seconds", 1.0)),
            max_delay_seconds=float(config.get("max_delay_seconds", 10.0)),
            backoff_multiplier=float(config.get("backoff_multiplier", 2.0)),
        )


async def execute_with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    retry_policy: RetryPolicy,
    dependency: str | None = None,
    sleep: SleepFn = asyncio.sleep,
    metrics: ResilienceMetrics | None = None,
) -> T:
    """Execute an operation with a retry policy.

    Parameters
    ----------
    operation:
        Zero-argument coroutine function to execute.
    retry_policy:
        Retry policy to apply.
    dependency:
        Optional dependency name, used for logging and metrics.
    sleep:
        Awaitable sleep used for backoff (injectable for tests).
    metrics:
        Optional metrics sink; records one data point per retry.

    Returns
    -------
    Any
        Result of the first successful attempt.

    Raises
    ------
    Exception
        The last error once attempts are exhausted, or the first
        non-retryable error.
    """
    delay = retry_policy.initial_delay_seconds

    for attempt_number in range(1, retry_policy.max_attempts + 1):
        try:
            return await operation()

        except Exception as exc:
            last_attempt = attempt_number >= retry_policy.max_attempts
            if last_attempt or not retry_policy.retry_predicate(exc):
                logger.info(
                    "Not retrying error",
                    extra={
                        "dependency": dependency,
                        "attempt_number": attempt_number,
                        "max_attempts": retry_policy.max_attempts,
                        "error_class": classify_error(exc),
                        "reason": "max attempts reached" if last_attempt else "non-retryable",
                    },
                )
                raise

            logger.warning(
                "Operation failed, retrying after backoff",
                extra={
                    "dependency": dependency,
                    "attempt_number": attempt_number,
                    "next_attempt": attempt_number + 1,
                    "backoff_delay_seconds": delay,
                    "error_type": type(exc).__name__,
                    "error_message": str(exc),
                },
            )

            if retry_policy.on_retry is not None:
                retry_policy.on_retry(exc, attempt_number)
            if metrics is not None:
                metrics.record_retry(dependency)

            await sleep(delay)
            delay = min(delay * retry_policy.backoff_multiplier, retry_policy.max_delay_seconds)
