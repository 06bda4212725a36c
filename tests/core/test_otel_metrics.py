"""Unit tests for the resilience OTel metrics instruments.

Covers:
- init_metrics: no-op when OTEL_EXPORTER_OTLP_ENDPOINT is not set
- ResilienceMetrics: every counter records with the expected attributes
- Breaker, retry, reporter and facade feed the counters
"""

from __future__ import annotations

from typing import Any

import pytest
from opentelemetry import metrics
from opentelemetry.metrics import _internal as _metrics_internal
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import InMemoryMetricReader
from opentelemetry.util._once import Once

from encore.core.metrics import ResilienceMetrics, get_meter, init_metrics
from encore.reliability import (
    CircuitBreakerConfig,
    CircuitOpenError,
    ResilienceContext,
    ResilienceFacade,
    RetryPolicy,
    TransientDependencyError,
)

pytestmark = pytest.mark.unit


# ---------------------------------------------------------------------------
# Helpers / fixtures
# ---------------------------------------------------------------------------


def _reset_metrics_global_state() -> None:
    """Reset the OTel global MeterProvider state for test isolation.

    The OTel SDK uses a ``Once`` guard that prevents ``set_meter_provider``
    from being called more than once per process.
    """
    _metrics_internal._METER_PROVIDER_SET_ONCE = Once()
    _metrics_internal._METER_PROVIDER = None


@pytest.fixture
def reader():
    _reset_metrics_global_state()
    reader = InMemoryMetricReader()
    provider = MeterProvider(metric_readers=[reader])
    metrics.set_meter_provider(provider)
    yield reader
    provider.shutdown()
    _reset_metrics_global_state()


def _points(reader: InMemoryMetricReader) -> dict[str, list[Any]]:
    """Flatten metrics data into {metric_name: data_points}."""
    result: dict[str, list[Any]] = {}
    data = reader.get_metrics_data()
    if data is None:
        return result
    for rm in data.resource_metrics:
        for sm in rm.scope_metrics:
            for metric in sm.metrics:
                result[metric.name] = list(metric.data.data_points)
    return result


def _total(points: list[Any], **attrs: str) -> int:
    return sum(
        p.value for p in points if all(p.attributes.get(k) == v for k, v in attrs.items())
    )


class TestInitMetrics:
    def test_noop_without_endpoint(self, monkeypatch):
        monkeypatch.delenv("OTEL_EXPORTER_OTLP_ENDPOINT", raising=False)
        meter = init_metrics("encore-test")
        meter.create_counter("noop").add(1)

    def test_get_meter(self):
        assert get_meter() is not None


class TestResilienceMetrics:
    def test_all_counters_record(self, reader):
        m = ResilienceMetrics("encore-test")

        m.record_retry("music-api")
        m.record_retry(None)
        m.record_transition("music-api", "OPEN")
        m.record_rejection("music-api")
        m.record_fallback("music-api", "circuit_open")
        m.record_error_event("error")

        points = _points(reader)
        assert _total(points["encore.retry.attempts_total"], dependency="music-api") == 1
        assert _total(points["encore.retry.attempts_total"], dependency="unknown") == 1
        assert _total(points["encore.circuit.transitions_total"], to_state="OPEN") == 1
        assert _total(points["encore.circuit.rejections_total"], dependency="music-api") == 1
        assert _total(points["encore.fallback.used_total"], reason="circuit_open") == 1
        assert _total(points["encore.errors.reported_total"], level="error") == 1
        for series in points.values():
            assert all(p.attributes["service"] == "encore-test" for p in series)


class TestInstrumentedComponents:
    async def test_breaker_and_fallback_counters(self, reader, clock, sleeps):
        facade = ResilienceFacade(ResilienceContext.create(clock=clock), sleep=sleeps)

        async def failing():
            raise TransientDependencyError("upstream 503", status_code=503)

        config = CircuitBreakerConfig(failure_threshold=1)
        with pytest.raises(TransientDependencyError):
            await facade.with_circuit_breaker("llm-chat", failing, config)
        with pytest.raises(CircuitOpenError):
            await facade.with_circuit_breaker("llm-chat", failing)
        facade.register_fallback("llm-chat", lambda: "cached")
        assert await facade.with_circuit_breaker("llm-chat", failing) == "cached"

        points = _points(reader)
        assert _total(points["encore.circuit.transitions_total"], to_state="OPEN") == 1
        assert _total(points["encore.circuit.rejections_total"], dependency="llm-chat") == 2
        assert _total(points["encore.fallback.used_total"], dependency="llm-chat") == 1
        assert _total(points["encore.errors.reported_total"], level="warning") == 1

    async def test_retry_counter(self, reader, clock, sleeps):
        facade = ResilienceFacade(ResilienceContext.create(clock=clock), sleep=sleeps)
        calls = 0

        async def flaky():
            nonlocal calls
            calls += 1
            if calls < 3:
                raise TransientDependencyError("timeout")
            return "ok"

        await facade.with_retry(flaky, RetryPolicy(max_attempts=3), name="database-operation")

        points = _points(reader)
        assert _total(points["encore.retry.attempts_total"], dependency="database-operation") == 2
