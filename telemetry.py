#!/usr/bin/env python3
"""
Telemetry setup using OpenTelemetry.

This module configures tracing for aiohttp client requests and the digest
pipeline stages. Spans are exported to Azure Monitor only when an Application
Insights connection string is provided and the optional exporter package is
installed; otherwise they stay in-process.

Environment variables:
  - APPLICATIONINSIGHTS_CONNECTION_STRING or AZURE_MONITOR_CONNECTION_STRING
  - OTEL_SERVICE_NAME (default: feed-epub)
  - OTEL_ENVIRONMENT (maps to deployment.environment)
  - DISABLE_TELEMETRY=true to fully disable

The module is safe to import multiple times; initialization is idempotent.
"""

from __future__ import annotations

import os
import atexit
import logging
import threading
from typing import Optional
import asyncio
import functools

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.instrumentation.aiohttp_client import AioHttpClientInstrumentor
from opentelemetry.instrumentation.logging import LoggingInstrumentor

try:
    # Azure Monitor exporter is optional; only used when connection string is present
    from azure.monitor.opentelemetry.exporter import AzureMonitorTraceExporter  # type: ignore
    _AZURE_AVAILABLE = True
    _AZURE_IMPORT_ERROR: Optional[str] = None
except ImportError as _imp_err:
    AzureMonitorTraceExporter = None  # type: ignore
    _AZURE_AVAILABLE = False
    _AZURE_IMPORT_ERROR = repr(_imp_err)

_init_lock = threading.Lock()
_initialized = False
_provider: Optional[TracerProvider] = None

_logger = logging.getLogger("FeedEpub.telemetry")


def _telemetry_disabled() -> bool:
    return os.environ.get("DISABLE_TELEMETRY", "false").lower() == "true"


def _connection_string() -> Optional[str]:
    return os.environ.get("APPLICATIONINSIGHTS_CONNECTION_STRING") or os.environ.get(
        "AZURE_MONITOR_CONNECTION_STRING"
    )


def init_telemetry(service_name: Optional[str] = None) -> None:
    """Initialize OpenTelemetry tracing and instrumentation.

    Safe to call multiple times. If DISABLE_TELEMETRY=true, it's a no-op.
    """
    global _initialized, _provider
    if _telemetry_disabled() or _initialized:
        return
    with _init_lock:
        if _initialized:
            return

        svc = service_name or os.environ.get("OTEL_SERVICE_NAME", "feed-epub")
        env = os.environ.get("OTEL_ENVIRONMENT")
        attrs = {"service.name": svc}
        if env:
            attrs["deployment.environment"] = env
        resource = Resource.create(attrs)

        # If a provider was already set by external auto-instrumentation, reuse it
        existing = trace.get_tracer_provider()
        if isinstance(existing, TracerProvider):
            provider = existing
        else:
            provider = TracerProvider(resource=resource)

        conn = _connection_string()
        if conn and _AZURE_AVAILABLE:
            try:
                provider.add_span_processor(
                    BatchSpanProcessor(AzureMonitorTraceExporter.from_connection_string(conn))  # type: ignore
                )
                _logger.info("Telemetry initialized: Azure Monitor trace exporter enabled (service=%s)", svc)
            except ValueError as e:
                _logger.warning("Telemetry init: failed to enable Azure exporter (%s); spans will not be exported", e)
        else:
            _logger.debug("Telemetry initialized without exporter (service=%s)", svc)
            if conn and _AZURE_IMPORT_ERROR:
                _logger.warning(
                    "Azure exporter package unavailable; install 'azure-monitor-opentelemetry-exporter'. Import error: %s",
                    _AZURE_IMPORT_ERROR,
                )

        if not isinstance(existing, TracerProvider):
            trace.set_tracer_provider(provider)
        _provider = provider

        # Instrumentors raise if instrumented twice by an outer agent; that is fine to ignore
        try:
            AioHttpClientInstrumentor().instrument()
        except Exception as e:
            _logger.debug("aiohttp instrumentation skipped: %s", e)
        try:
            # Inject trace/span ids into log records as otelTraceID / otelSpanID without changing format
            LoggingInstrumentor().instrument(set_logging_format=False)
        except Exception as e:
            _logger.debug("logging instrumentation skipped: %s", e)

        _initialized = True
        atexit.register(_shutdown)


def _shutdown() -> None:
    # TracerProvider.shutdown() flushes BatchSpanProcessor
    if _provider is not None:
        _provider.shutdown()


def get_tracer(name: str = "feed-epub"):
    """Get the OpenTelemetry tracer for a named subsystem."""
    return trace.get_tracer(name)


def trace_span(
    span_name: str | None = None,
    *,
    tracer_name: str | None = None,
    static_attrs: dict | None = None,
    attr_from_args: Optional[callable] = None,
):
    """Decorator to wrap a function call in an OpenTelemetry span.

    Args:
        span_name: Name of the span (defaults to module.funcname)
        tracer_name: Tracer name (defaults to span_name or 'feed-epub')
        static_attrs: Dict of attributes to set on the span
        attr_from_args: Callable taking (*args, **kwargs) and returning a dict
                        of attributes to set on the span

    Works with sync and async functions.
    """

    def _decorator(func):
        name = span_name or f"{func.__module__}.{func.__name__}"
        tname = tracer_name or name.split(".")[0] or "feed-epub"
        tracer = get_tracer(tname)

        def _set_attrs(span, args, kwargs):
            if not span:
                return
            try:
                if static_attrs:
                    for k, v in static_attrs.items():
                        span.set_attribute(k, v)
                if callable(attr_from_args):
                    dyn = attr_from_args(*args, **kwargs) or {}
                    for k, v in dyn.items():
                        span.set_attribute(k, v)
            except Exception as e:
                # Never break the app on attribute setting
                _logger.debug("span attribute error in %s: %s", name, e)

        def _record(span, exc):
            if span:
                span.record_exception(exc)
                span.set_status(Status(StatusCode.ERROR))

        if asyncio.iscoroutinefunction(func):

            @functools.wraps(func)
            async def _aw(*args, **kwargs):
                with tracer.start_as_current_span(name) as span:
                    _set_attrs(span, args, kwargs)
                    try:
                        return await func(*args, **kwargs)
                    except Exception as e:
                        _record(span, e)
                        raise

            return _aw

        @functools.wraps(func)
        def _w(*args, **kwargs):
            with tracer.start_as_current_span(name) as span:
                _set_attrs(span, args, kwargs)
                try:
                    return func(*args, **kwargs)
                except Exception as e:
                    _record(span, e)
                    raise

        return _w

    return _decorator
