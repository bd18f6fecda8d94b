"""
Unit tests for observability helpers.
"""
from unittest.mock import MagicMock

import pytest
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from opentelemetry.trace import StatusCode
from taskmail import observability
from taskmail.observability import get_trace_context, record_metric, trace_operation


@pytest.fixture
def spans(monkeypatch):
    exporter = InMemorySpanExporter()
    provider = TracerProvider()
    provider.add_span_processor(SimpleSpanProcessor(exporter))
    monkeypatch.setattr(observability, "_tracer", provider.get_tracer("test"))
    return exporter


@pytest.fixture
def meter(monkeypatch):
    fake = MagicMock()
    monkeypatch.setattr(observability, "_meter", fake)
    monkeypatch.setattr(observability, "_metric_instruments", {})
    return fake


class TestTraceOperation:
    def test_untraced_before_init(self):
        @trace_operation("plain")
        def add(a, b):
            return a + b

        assert add(1, 2) == 3

    @pytest.mark.asyncio
    async def test_async_span_recorded(self, spans):
        seen = {}

        @trace_operation("hybrid_search", component="retrieval")
        async def search():
            seen.update(get_trace_context())
            return "ok"

        assert await search() == "ok"

        (span,) = spans.get_finished_spans()
        assert span.name == "hybrid_search"
        assert span.attributes["component"] == "retrieval"
        assert span.status.status_code == StatusCode.OK
        assert len(seen["trace_id"]) == 32
        assert get_trace_context() == {}

    def test_exception_marks_span_error(self, spans):
        @trace_operation("failing")
        def fail():
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            fail()

        (span,) = spans.get_finished_spans()
        assert span.status.status_code == StatusCode.ERROR
        assert span.events[0].name == "exception"


class TestRecordMetric:
    def test_no_op_without_meter(self):
        record_metric("search_requests_total", 1)

    def test_counter_created_once(self, meter):
        record_metric("search_requests_total", 1, {"outcome": "ok"})
        record_metric("search_requests_total", 1, {"outcome": "error"})

        meter.create_counter.assert_called_once_with("search_requests_total", unit="1")
        assert meter.create_counter.return_value.add.call_count == 2

    def test_histogram(self, meter):
        record_metric("search_latency_ms", 12.5, metric_type="histogram")

        meter.create_histogram.return_value.record.assert_called_once_with(12.5, {})

    def test_unknown_type_ignored(self, meter):
        record_metric("odd", 1, metric_type="gauge")

        meter.create_counter.assert_not_called()
        meter.create_histogram.assert_not_called()


class TestShutdown:
    def test_flushes_both_providers(self, monkeypatch):
        tracer_provider, meter_provider = MagicMock(), MagicMock()
        monkeypatch.setattr(observability, "_tracer_provider", tracer_provider)
        monkeypatch.setattr(observability, "_meter_provider", meter_provider)

        observability.shutdown_observability()

        tracer_provider.shutdown.assert_called_once_with()
        meter_provider.shutdown.assert_called_once_with()

    def test_provider_failure_does_not_raise(self, monkeypatch):
        tracer_provider = MagicMock()
        tracer_provider.shutdown.side_effect = RuntimeError("exporter gone")
        meter_provider = MagicMock()
        monkeypatch.setattr(observability, "_tracer_provider", tracer_provider)
        monkeypatch.setattr(observability, "_meter_provider", meter_provider)

        observability.shutdown_observability()

        meter_provider.shutdown.assert_called_once_with()
