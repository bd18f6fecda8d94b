"""
Observability infrastructure with OpenTelemetry and structlog.
"""

from __future__ import annotations

import functools
import inspect
import logging
import os
import threading
from collections.abc import Callable
from contextvars import ContextVar
from typing import Any

import structlog
from opentelemetry import metrics, trace
from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import TraceIdRatioBased
from opentelemetry.trace import Status, StatusCode
from taskmail.config.loader import get_config

# Constants
METRIC_EXPORT_INTERVAL_MS = 60000
OTLP_ENDPOINT_ENV = "OTEL_EXPORTER_OTLP_ENDPOINT"

AttributeValue = str | bool | int | float

__all__ = (
    "get_logger",
    "get_trace_context",
    "init_observability",
    "shutdown_observability",
    "record_metric",
    "trace_operation",
)

_trace_context: ContextVar[dict[str, str] | None] = ContextVar(
    "trace_context", default=None
)

# Global tracer and meter (initialized lazily)
_tracer = None
_meter = None
_tracer_provider: TracerProvider | None = None
_meter_provider: MeterProvider | None = None
_metric_instruments: dict[tuple[str, str], Any] = {}
_initialized = False
_init_lock = threading.Lock()
_metric_lock = threading.Lock()


def _init_tracing(service_name: str, sample_rate: float, env: str) -> Any:
    """Initialize OpenTelemetry tracing. Returns tracer or None."""
    global _tracer_provider
    try:
        resource = Resource.create(
            {
                "service.name": service_name,
                "deployment.environment": env,
            }
        )
        provider = TracerProvider(
            resource=resource,
            sampler=TraceIdRatioBased(sample_rate),
        )
        if os.getenv(OTLP_ENDPOINT_ENV):
            provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter()))
            logging.info("OTLP trace exporter configured")
        else:
            logging.info(
                "Tracing enabled without %s; spans stay in-process", OTLP_ENDPOINT_ENV
            )

        trace.set_tracer_provider(provider)
        _tracer_provider = provider
        return trace.get_tracer(__name__)

    except Exception:
        logging.warning("Failed to initialize tracing", exc_info=True)
        return None


def _init_metrics(service_name: str) -> Any:
    """Initialize metrics export. Returns meter or None."""
    global _meter_provider
    if not os.getenv(OTLP_ENDPOINT_ENV):
        logging.info("No OTLP endpoint configured; metrics disabled")
        return None
    try:
        resource = Resource.create({"service.name": service_name})
        reader = PeriodicExportingMetricReader(
            OTLPMetricExporter(), export_interval_millis=METRIC_EXPORT_INTERVAL_MS
        )
        provider = MeterProvider(resource=resource, metric_readers=[reader])
        metrics.set_meter_provider(provider)
        _meter_provider = provider
        logging.info("Metrics export initialized (OTLP)")
        return metrics.get_meter(__name__)

    except Exception:
        logging.warning("Failed to initialize metrics", exc_info=True)
        return None


def _bind_trace_context(logger, method_name, event_dict):
    """A structlog processor to inject the current trace context into log records."""
    ctx = _trace_context.get()
    if ctx:
        event_dict["trace_id"] = ctx.get("trace_id")
        event_dict["span_id"] = ctx.get("span_id")
    return event_dict


def _init_structured_logging(log_level: str, json_logs: bool) -> None:
    """Route stdlib and structlog records through one renderer."""
    renderer: Any = (
        structlog.processors.JSONRenderer()
        if json_logs
        else structlog.dev.ConsoleRenderer()
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            _bind_trace_context,
            renderer,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
    logging.basicConfig(level=getattr(logging, log_level.upper(), logging.INFO))


def init_observability(
    service_name: str = "taskmail",
    enable_tracing: bool = True,
    enable_metrics: bool = True,
    json_logs: bool = True,
    sample_rate: float = 0.1,
) -> None:
    """
    Initialize tracing, metrics and structured logging once per process.
    """
    global _tracer, _meter, _initialized

    with _init_lock:
        if _initialized:
            return

        config = get_config()
        sample_rate = max(0.0, min(sample_rate, 1.0))

        _init_structured_logging(config.system.log_level, json_logs)

        if enable_tracing:
            _tracer = _init_tracing(service_name, sample_rate, config.system.env)

        if enable_metrics:
            _meter = _init_metrics(service_name)

        _initialized = True


def shutdown_observability() -> None:
    """Flush and shutdown OTel providers to avoid losing buffered telemetry."""
    if _tracer_provider is not None:
        try:
            _tracer_provider.shutdown()
        except Exception:
            logging.warning("Failed to shutdown tracer provider", exc_info=True)
    if _meter_provider is not None:
        try:
            _meter_provider.shutdown()
        except Exception:
            logging.warning("Failed to shutdown meter provider", exc_info=True)


def _bind_span(span: Any, span_attributes: dict[str, Any]) -> Any:
    for key, value in span_attributes.items():
        span.set_attribute(key, value)
    ctx = span.get_span_context()
    return _trace_context.set(
        {
            "trace_id": format(ctx.trace_id, "032x"),
            "span_id": format(ctx.span_id, "016x"),
        }
    )


def trace_operation(operation_name: str, **span_attributes):
    """
    Decorator to trace function execution.

    Starts a span, binds trace context for log correlation and records
    exceptions. Runs the function untraced until init_observability is called.
    """

    def decorator(func: Callable) -> Callable:
        if inspect.iscoroutinefunction(func):

            @functools.wraps(func)
            async def async_wrapper(*args, **kwargs):
                if _tracer is None:
                    return await func(*args, **kwargs)

                with _tracer.start_as_current_span(operation_name) as span:
                    token = _bind_span(span, span_attributes)
                    try:
                        result = await func(*args, **kwargs)
                        span.set_status(Status(StatusCode.OK))
                        return result
                    except Exception as e:
                        span.set_status(Status(StatusCode.ERROR))
                        span.record_exception(e)
                        raise
                    finally:
                        _trace_context.reset(token)

            return async_wrapper

        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            if _tracer is None:
                return func(*args, **kwargs)

            with _tracer.start_as_current_span(operation_name) as span:
                token = _bind_span(span, span_attributes)
                try:
                    result = func(*args, **kwargs)
                    span.set_status(Status(StatusCode.OK))
                    return result
                except Exception as e:
                    span.set_status(Status(StatusCode.ERROR))
                    span.record_exception(e)
                    raise
                finally:
                    _trace_context.reset(token)

        return wrapper

    return decorator


def record_metric(
    metric_name: str,
    value: float | int,
    labels: dict[str, AttributeValue] | None = None,
    metric_type: str = "counter",
) -> None:
    """
    Record a counter or histogram value.
    Thread-safe; a no-op until metrics are initialized.
    """
    if _meter is None:
        return

    try:
        attributes = labels or {}
        key = (metric_name, metric_type)
        instrument = _metric_instruments.get(key)

        if instrument is None:
            with _metric_lock:
                instrument = _metric_instruments.get(key)
                if instrument is None:
                    if metric_type == "counter":
                        instrument = _meter.create_counter(metric_name, unit="1")
                    elif metric_type == "histogram":
                        instrument = _meter.create_histogram(metric_name, unit="ms")
                    else:
                        logging.warning(
                            "Unknown metric type '%s' for metric '%s'",
                            metric_type,
                            metric_name,
                        )
                        return

                    _metric_instruments[key] = instrument

        if metric_type == "histogram":
            instrument.record(value, attributes)
        else:
            instrument.add(value, attributes)

    except Exception:
        logging.warning("Failed to record metric %s", metric_name, exc_info=True)


def get_logger(name: str) -> Any:
    """
    Get a structured logger that includes trace context once configured.
    """
    return structlog.get_logger(name)


def get_trace_context() -> dict[str, str]:
    """
    Get current trace context for log correlation.
    """
    return _trace_context.get() or {}
