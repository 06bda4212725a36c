"""Structured logging for encore.

Every module logs through ``logging.getLogger(__name__)`` with structured
fields passed as ``extra={...}``.  :func:`configure_logging` puts a structlog
``ProcessorFormatter`` on the root logger, which renders those records either
as colored console lines (``text``) or as JSON lines (``json``).

Each record is enriched with the dependency currently being called (bound by
``dependency_span`` in :mod:`encore.core.telemetry`) and with the ids of the
active OpenTelemetry span.
"""

from __future__ import annotations

import logging
import sys
from contextvars import ContextVar
from pathlib import Path
from typing import TYPE_CHECKING

import structlog
from opentelemetry import trace

if TYPE_CHECKING:
    from encore.config import EncoreConfig

_dependency_context: ContextVar[str | None] = ContextVar("encore_dependency", default=None)

_QUIET_LOGGERS = ("httpx", "httpcore")

_NULL_TRACE_ID = "0" * 32
_NULL_SPAN_ID = "0" * 16


def set_dependency_context(name: str | None) -> None:
    """Bind *name* as the dependency for the current task."""
    _dependency_context.set(name)


def get_dependency_context() -> str | None:
    return _dependency_context.get()


def add_dependency_context(
    logger: logging.Logger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: dict,
) -> dict:
    """Fill ``dependency`` from the task context; an explicit value is kept."""
    event_dict.setdefault("dependency", None)
    if event_dict["dependency"] is None:
        event_dict["dependency"] = _dependency_context.get()
    return event_dict


def add_otel_context(
    logger: logging.Logger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: dict,
) -> dict:
    """Add hex ``trace_id``/``span_id``; all zeros outside of a span."""
    span_context = trace.get_current_span().get_span_context()
    if span_context.is_valid:
        event_dict["trace_id"] = trace.format_trace_id(span_context.trace_id)
        event_dict["span_id"] = trace.format_span_id(span_context.span_id)
    else:
        event_dict["trace_id"] = _NULL_TRACE_ID
        event_dict["span_id"] = _NULL_SPAN_ID
    return event_dict


def _pre_chain(timestamp_fmt: str) -> list[structlog.types.Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt=timestamp_fmt, utc=True),
        structlog.stdlib.ExtraAdder(),
        add_dependency_context,
        add_otel_context,
    ]


def _formatter(fmt: str, pre_chain: list) -> structlog.stdlib.ProcessorFormatter:
    if fmt == "json":
        render: list = [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        render = [structlog.dev.ConsoleRenderer()]
    return structlog.stdlib.ProcessorFormatter(
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, *render],
        foreign_pre_chain=pre_chain,
    )


def configure_logging(
    level: str = "INFO",
    fmt: str = "text",
    log_file: Path | None = None,
) -> None:
    """Route all stdlib logging through structlog.

    Parameters
    ----------
    level:
        Root log level name.  Unknown names fall back to INFO.
    fmt:
        ``"text"`` for the console renderer, ``"json"`` for JSON lines.
    log_file:
        Optional extra destination, always written as JSON.  Missing parent
        directories are created.

    Calling it again replaces the handlers installed by the previous call.
    """
    pre_chain = _pre_chain("iso" if fmt == "json" else "%H:%M:%S")

    stream = logging.StreamHandler(sys.stderr)
    stream.setFormatter(_formatter(fmt, pre_chain))
    handlers: list[logging.Handler] = [stream]

    if log_file is not None:
        log_file = Path(log_file)
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(_formatter("json", _pre_chain("iso")))
        handlers.append(file_handler)

    root = logging.getLogger()
    root.handlers = handlers
    root.setLevel(logging.getLevelNamesMapping().get(level.upper(), logging.INFO))

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    structlog.configure(
        processors=[*pre_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def configure_logging_from(config: EncoreConfig) -> None:
    """Apply the ``[encore.logging]`` section of a loaded config."""
    settings = config.logging
    configure_logging(
        level=settings.level,
        fmt=settings.format,
        log_file=Path(settings.file) if settings.file else None,
    )
