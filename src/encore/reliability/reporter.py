"""Structured error/warning events for observability.

The reporter keeps the most recent :data:`MAX_EVENTS` events in memory (oldest
evicted first), broadcasts each new event to live subscribers, and mirrors it
to the standard logger so it reaches the configured log handlers.
Subscribers only see events emitted after they subscribe.
"""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from types import MappingProxyType
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from encore.core.metrics import ResilienceMetrics

logger = logging.getLogger(__name__)

MAX_EVENTS = 1000


class ErrorLevel(StrEnum):
    """Severity of a reported event."""

    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"

    @property
    def log_level(self) -> int:
        return _LOG_LEVELS[self]


_LOG_LEVELS = {
    ErrorLevel.INFO: logging.INFO,
    ErrorLevel.WARNING: logging.WARNING,
    ErrorLevel.ERROR: logging.ERROR,
    ErrorLevel.CRITICAL: logging.CRITICAL,
}


@dataclass(frozen=True)
class ErrorEvent:
    """An immutable, timestamped error report."""

    level: ErrorLevel
    message: str
    cause: BaseException | None = None
    context: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        return {
            "level": self.level.value,
            "message": self.message,
            "error_type": type(self.cause).__name__ if self.cause is not None else None,
            "error_message": str(self.cause) if self.cause is not None else None,
            "context": dict(self.context),
            "timestamp": self.timestamp.isoformat(),
        }


Listener = Callable[[ErrorEvent], None]


class ErrorReporter:
    """Bounded, append-only log of :class:`ErrorEvent` with subscribers."""

    def __init__(
        self,
        *,
        max_events: int = MAX_EVENTS,
        metrics: ResilienceMetrics | None = None,
    ) -> None:
        self._events: deque[ErrorEvent] = deque(maxlen=max_events)
        self._listeners: list[Listener] = []
        self._metrics = metrics

    def log(
        self,
        level: ErrorLevel | str,
        message: str,
        cause: BaseException | None = None,
        context: Mapping[str, Any] | None = None,
    ) -> ErrorEvent:
        """Record an event, notify subscribers, and mirror it to the logger.

        Raises
        ------
        ValueError
            If *level* is not one of info, warning, error, critical.
        """
        event = ErrorEvent(
            level=ErrorLevel(level),
            message=message,
            cause=cause,
            context=MappingProxyType(dict(context or {})),
        )
        self._events.append(event)

        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception(
                    "Error listener raised; continuing with remaining listeners",
                    extra={"listener": getattr(listener, "__qualname__", repr(listener))},
                )

        if self._metrics is not None:
            self._metrics.record_error_event(event.level.value)

        logger.log(
            event.level.log_level,
            message,
            exc_info=cause if event.level in (ErrorLevel.ERROR, ErrorLevel.CRITICAL) else None,
            extra={"event_context": dict(event.context)},
        )
        return event

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register *listener*; returns a function that revokes it.  Idempotent."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            try:
                self._listeners.remove(listener)
            except ValueError:
                pass

        return unsubscribe

    def get_notifications(self, level: ErrorLevel | str | None = None) -> list[ErrorEvent]:
        """Snapshot of stored events, oldest first, optionally filtered by level."""
        if level is None:
            return list(self._events)
        wanted = ErrorLevel(level)
        return [event for event in self._events if event.level == wanted]

    def clear(self) -> None:
        """Drop stored events.  Subscribers are unaffected."""
        self._events.clear()

    def __len__(self) -> int:
        return len(self._events)
