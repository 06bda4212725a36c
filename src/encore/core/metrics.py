"""OpenTelemetry metrics instruments for the resilience core.

Instruments are created lazily from the global MeterProvider, so callers do
not need to pass a Meter instance around.

Initialization
--------------
Call ``init_metrics(service_name)`` once during process startup (alongside
``init_telemetry``).  When OTEL_EXPORTER_OTLP_ENDPOINT is not set, the SDK
falls back to a no-op MeterProvider and all recordings are silent no-ops.

Instruments
-----------
  encore.retry.attempts_total         Counter  (label: dependency)
      Retries scheduled after a retryable failure.

  encore.circuit.transitions_total    Counter  (labels: dependency, to_state)
      Circuit breaker state transitions.

  encore.circuit.rejections_total     Counter  (label: dependency)
      Calls refused by an open circuit.

  encore.fallback.used_total          Counter  (labels: dependency, reason)
      Fallback values returned instead of a real result.

  encore.errors.reported_total        Counter  (label: level)
      Events emitted through the ErrorReporter.

All instruments carry a ``service`` label.
"""

from __future__ import annotations

import logging
import os

from opentelemetry import metrics

logger = logging.getLogger(__name__)

_METER_NAME = "encore"


def init_metrics(service_name: str) -> metrics.Meter:
    """Initialize OpenTelemetry metrics for the process.

    When OTEL_EXPORTER_OTLP_ENDPOINT is set, configures a real MeterProvider
    with a periodic OTLP gRPC exporter.  Otherwise, the global no-op
    MeterProvider is used and all recordings are silent.

    Args:
        service_name: Service name reported on the resource (e.g. "encore-chat").

    Returns:
        A Meter instance bound to the global MeterProvider.
    """
    endpoint = os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT")

    if not endpoint:
        logger.info("OTEL_EXPORTER_OTLP_ENDPOINT not set, using no-op meter")
        return metrics.get_meter(_METER_NAME)

    # Import SDK/exporter only when needed to avoid hard dependency at import time
    from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
    from opentelemetry.sdk.metrics import MeterProvider
    from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
    from opentelemetry.sdk.resources import Resource

    resource = Resource.create({"service.name": service_name})
    exporter = OTLPMetricExporter(endpoint=endpoint)
    reader = PeriodicExportingMetricReader(exporter, export_interval_millis=15_000)
    provider = MeterProvider(resource=resource, metric_readers=[reader])

    metrics.set_meter_provider(provider)
    logger.info("Metrics initialized: service=%s, endpoint=%s", service_name, endpoint)

    return metrics.get_meter(_METER_NAME)


def get_meter() -> metrics.Meter:
    """Return a Meter from the current global provider."""
    return metrics.get_meter(_METER_NAME)


class ResilienceMetrics:
    """Convenience wrapper around the resilience counters.

    Instruments are created on first use from whatever MeterProvider is
    installed at that moment, so it is safe to construct this object before
    ``init_metrics`` is called.
    """

    def __init__(self, service_name: str = "encore") -> None:
        self._service = service_name
        self._instruments: dict[str, metrics.Counter] = {}

    def _counter(self, name: str, description: str, unit: str) -> metrics.Counter:
        counter = self._instruments.get(name)
        if counter is None:
            counter = get_meter().create_counter(name=name, description=description, unit=unit)
            self._instruments[name] = counter
        return counter

    def _attrs(self, **extra: str) -> dict[str, str]:
        return {"service": self._service, **extra}

    def record_retry(self, dependency: str | None) -> None:
        self._counter(
            "encore.retry.attempts_total",
            "Retries scheduled after a retryable failure",
            "attempts",
        ).add(1, self._attrs(dependency=dependency or "unknown"))

    def record_transition(self, dependency: str, to_state: str) -> None:
        self._counter(
            "encore.circuit.transitions_total",
            "Circuit breaker state transitions",
            "transitions",
        ).add(1, self._attrs(dependency=dependency, to_state=to_state))

    def record_rejection(self, dependency: str) -> None:
        self._counter(
            "encore.circuit.rejections_total",
            "Calls rejected by an open circuit breaker",
            "calls",
        ).add(1, self._attrs(dependency=dependency))

    def record_fallback(self, dependency: str, reason: str) -> None:
        self._counter(
            "encore.fallback.used_total",
            "Fallback values returned in place of a dependency result",
            "calls",
        ).add(1, self._attrs(dependency=dependency, reason=reason))

    def record_error_event(self, level: str) -> None:
        self._counter(
            "encore.errors.reported_total",
            "Events emitted through the error reporter",
            "events",
        ).add(1, self._attrs(level=level))
