"""OpenTelemetry tracing for outbound dependency calls."""

from __future__ import annotations

import logging
import os
from collections.abc import Iterator
from contextlib import contextmanager

from opentelemetry import trace
from opentelemetry.propagate import inject
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider

from encore.core.logging import _dependency_context

logger = logging.getLogger(__name__)

_TRACER_NAME = "encore"

# Set once init_telemetry has installed the global TracerProvider.
_tracer_provider_installed: bool = False


def init_telemetry(service_name: str) -> trace.Tracer:
    """Install an OTLP-exporting TracerProvider for the process.

    Nothing is installed unless OTEL_EXPORTER_OTLP_ENDPOINT is set; spans are
    then no-ops.  Only the first call installs a provider.

    Parameters
    ----------
    service_name:
        ``service.name`` resource attribute, e.g. "encore-chat".
    """
    global _tracer_provider_installed

    endpoint = os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT")
    if endpoint and not _tracer_provider_installed:
        from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
        from opentelemetry.sdk.trace.export import BatchSpanProcessor

        provider = TracerProvider(resource=Resource.create({"service.name": service_name}))
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
        trace.set_tracer_provider(provider)
        _tracer_provider_installed = True
        logger.info("Tracing enabled", extra={"service": service_name, "endpoint": endpoint})
    elif not endpoint:
        logger.info("OTEL_EXPORTER_OTLP_ENDPOINT not set, spans are not exported")

    return trace.get_tracer(service_name)


def get_tracer(name: str) -> trace.Tracer:
    return trace.get_tracer(name)


@contextmanager
def dependency_span(name: str, *, operation: str) -> Iterator[trace.Span]:
    """Span ``encore.dependency.<name>`` around a call to dependency *name*.

    The span is current for the duration of the block and *name* is bound
    to the logging context.  An exception escaping the block is recorded on
    the span and sets its status to ERROR.
    """
    token = _dependency_context.set(name)
    try:
        with trace.get_tracer(_TRACER_NAME).start_as_current_span(
            f"encore.dependency.{name}",
            attributes={"dependency.name": name, "dependency.operation": operation},
        ) as span:
            yield span
    finally:
        _dependency_context.reset(token)


def inject_trace_context() -> dict[str, str]:
    """W3C trace headers for the current span, for outbound HTTP requests.

    Empty when no span is active.
    """
    headers: dict[str, str] = {}
    inject(headers)
    return headers
