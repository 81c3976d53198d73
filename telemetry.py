#!/usr/bin/env python3
"""
OpenTelemetry tracing for the channel digest.

Every Discord page request (through the aiohttp client instrumentation), every
completion request and each pipeline stage becomes a span. Spans are exported
to Azure Application Insights when a connection string is configured and stay
in-process otherwise.

Environment variables:
  - APPLICATIONINSIGHTS_CONNECTION_STRING (or AZURE_MONITOR_CONNECTION_STRING)
  - OTEL_SERVICE_NAME, default channel-digest
  - OTEL_ENVIRONMENT, exported as deployment.environment
  - DISABLE_TELEMETRY=true turns all of this off

init_telemetry() may be called any number of times; only the first call acts.
"""

from __future__ import annotations

import atexit
import functools
import inspect
import logging
import os
import threading
from typing import Any, Callable, Dict, Optional

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.instrumentation.aiohttp_client import AioHttpClientInstrumentor
from opentelemetry.instrumentation.logging import LoggingInstrumentor
from opentelemetry.trace import Status, StatusCode

try:
    # Optional extra: pip install channel-digest[azure]
    from azure.monitor.opentelemetry.exporter import AzureMonitorTraceExporter  # type: ignore
    _AZURE_IMPORT_ERROR: Optional[str] = None
except ImportError as _imp_err:
    AzureMonitorTraceExporter = None  # type: ignore
    _AZURE_IMPORT_ERROR = repr(_imp_err)

DEFAULT_SERVICE_NAME = "channel-digest"

_init_lock = threading.Lock()
_initialized = False
_provider: Optional[TracerProvider] = None

_logger = logging.getLogger("ChannelDigest.telemetry")


def telemetry_disabled() -> bool:
    return os.environ.get("DISABLE_TELEMETRY", "false").lower() == "true"


def _connection_string() -> Optional[str]:
    return (os.environ.get("APPLICATIONINSIGHTS_CONNECTION_STRING")
            or os.environ.get("AZURE_MONITOR_CONNECTION_STRING"))


def _resource(service_name: str) -> Resource:
    attrs: Dict[str, Any] = {"service.name": service_name}
    environment = os.environ.get("OTEL_ENVIRONMENT")
    if environment:
        attrs["deployment.environment"] = environment
    return Resource.create(attrs)


def _attach_exporter(provider: TracerProvider, service_name: str) -> None:
    """Export spans to Azure Monitor when a connection string and the exporter are both present."""
    conn = _connection_string()
    if not conn:
        _logger.debug("No Application Insights connection string; spans for %s stay in-process", service_name)
        return
    if AzureMonitorTraceExporter is None:
        _logger.warning(
            "Connection string set but azure-monitor-opentelemetry-exporter is not installed (%s)",
            _AZURE_IMPORT_ERROR,
        )
        return
    try:
        exporter = AzureMonitorTraceExporter.from_connection_string(conn)  # type: ignore
    except ValueError as e:
        _logger.warning("Invalid Application Insights connection string; spans will not be exported (%s)", e)
        return
    provider.add_span_processor(BatchSpanProcessor(exporter))
    _logger.info("Exporting spans for %s to Azure Monitor", service_name)


def init_telemetry(service_name: Optional[str] = None) -> None:
    """Install the tracer provider and instrument aiohttp and logging."""
    global _initialized, _provider
    if _initialized or telemetry_disabled():
        return
    with _init_lock:
        if _initialized:
            return

        svc = service_name or os.environ.get("OTEL_SERVICE_NAME", DEFAULT_SERVICE_NAME)
        # Auto-instrumentation agents may have installed a provider already
        current = trace.get_tracer_provider()
        provider = current if isinstance(current, TracerProvider) else TracerProvider(resource=_resource(svc))
        _attach_exporter(provider, svc)
        if provider is not current:
            trace.set_tracer_provider(provider)
        _provider = provider

        AioHttpClientInstrumentor().instrument()
        # Adds otelTraceID/otelSpanID to log records; the log format is left alone
        LoggingInstrumentor().instrument()

        atexit.register(_shutdown)
        _initialized = True


def _shutdown() -> None:
    # Flush pending spans before a one-shot CLI run exits
    if _provider is not None:
        _provider.shutdown()


def get_tracer(name: str = DEFAULT_SERVICE_NAME):
    return trace.get_tracer(name)


def trace_span(
    span_name: str | None = None,
    *,
    tracer_name: str | None = None,
    static_attrs: dict | None = None,
    attr_from_args: Optional[Callable[..., dict]] = None,
):
    """Run the decorated function (sync or async) inside a span.

    Args:
        span_name: Span name, defaults to module.function
        tracer_name: Tracer to use, defaults to the first dotted part of span_name
        static_attrs: Attributes set on every span
        attr_from_args: Called with the function's arguments; returns extra attributes

    Exceptions are recorded on the span and re-raised.
    """

    def _decorator(func):
        name = span_name or f"{func.__module__}.{func.__name__}"
        tracer = get_tracer(tracer_name or name.split(".")[0] or DEFAULT_SERVICE_NAME)

        def _annotate(span, args, kwargs):
            attrs = dict(static_attrs or {})
            if attr_from_args is not None:
                try:
                    attrs.update(attr_from_args(*args, **kwargs) or {})
                except (TypeError, AttributeError, ValueError) as e:
                    _logger.debug("Could not derive span attributes for %s: %s", name, e)
            for key, value in attrs.items():
                span.set_attribute(key, value)

        def _fail(span, exc: BaseException):
            span.record_exception(exc)
            span.set_status(Status(StatusCode.ERROR, str(exc)))

        if inspect.iscoroutinefunction(func):

            @functools.wraps(func)
            async def _async_wrapper(*args, **kwargs):
                with tracer.start_as_current_span(name) as span:
                    _annotate(span, args, kwargs)
                    try:
                        return await func(*args, **kwargs)
                    except Exception as e:
                        _fail(span, e)
                        raise

            return _async_wrapper

        @functools.wraps(func)
        def _wrapper(*args, **kwargs):
            with tracer.start_as_current_span(name) as span:
                _annotate(span, args, kwargs)
                try:
                    return func(*args, **kwargs)
                except Exception as e:
                    _fail(span, e)
                    raise

        return _wrapper

    return _decorator


__all__ = ["init_telemetry", "get_tracer", "trace_span", "telemetry_disabled"]
