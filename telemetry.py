#!/usr/bin/env python3
"""
OpenTelemetry tracing for FeedSync.

``init_telemetry`` installs a tracer provider and instruments aiohttp client
requests, sqlite3 queries and logging (trace/span ids on every record). Spans
stay in-process unless OTEL_CONSOLE_EXPORT=true prints them to stdout.
DISABLE_TELEMETRY=true turns the whole thing off; spans then go to the
default no-op provider.

Environment variables:
  - OTEL_SERVICE_NAME (default: feedsync)
  - OTEL_ENVIRONMENT (maps to deployment.environment)
  - OTEL_CONSOLE_EXPORT
  - DISABLE_TELEMETRY
"""

from __future__ import annotations

import os
import atexit
import logging
import threading
import functools
import inspect
from typing import Any, Callable, Dict, Optional

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
from opentelemetry.instrumentation.aiohttp_client import AioHttpClientInstrumentor
from opentelemetry.instrumentation.logging import LoggingInstrumentor
from opentelemetry.instrumentation.sqlite3 import SQLite3Instrumentor

_init_lock = threading.Lock()
_initialized = False

_logger = logging.getLogger(__name__)

INSTRUMENTORS = (AioHttpClientInstrumentor, LoggingInstrumentor, SQLite3Instrumentor)


def _enabled(name: str) -> bool:
    return os.environ.get(name, "false").lower() == "true"


def init_telemetry(service_name: Optional[str] = None) -> None:
    """Install the tracer provider and library instrumentation once per process."""
    global _initialized
    if _enabled("DISABLE_TELEMETRY"):
        return
    with _init_lock:
        if _initialized:
            return

        attrs = {"service.name": service_name or os.environ.get("OTEL_SERVICE_NAME", "feedsync")}
        if os.environ.get("OTEL_ENVIRONMENT"):
            attrs["deployment.environment"] = os.environ["OTEL_ENVIRONMENT"]
        provider = TracerProvider(resource=Resource.create(attrs))
        if _enabled("OTEL_CONSOLE_EXPORT"):
            provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))
        trace.set_tracer_provider(provider)
        # Short CLI runs exit right after their last span
        atexit.register(provider.shutdown)

        for instrumentor in INSTRUMENTORS:
            try:
                instrumentor().instrument()
            except Exception as e:
                _logger.warning(f"Could not enable {instrumentor.__name__}: {e}")

        _initialized = True
        _logger.debug(f"Telemetry initialized for {attrs['service.name']}")


def get_tracer(name: str = "feedsync"):
    return trace.get_tracer(name)


def trace_span(
    span_name: Optional[str] = None,
    *,
    tracer_name: Optional[str] = None,
    static_attrs: Optional[Dict[str, Any]] = None,
    attr_from_args: Optional[Callable[..., Dict[str, Any]]] = None,
):
    """Run the decorated function, sync or async, inside a span.

    Args:
        span_name: defaults to ``module.function``.
        tracer_name: defaults to the first dotted part of the span name.
        static_attrs: attributes set on every span.
        attr_from_args: called with the function's arguments; the returned
            dict becomes span attributes.
    """

    def decorate(func):
        name = span_name or f"{func.__module__}.{func.__name__}"
        tracer = get_tracer(tracer_name or name.split(".")[0])

        def annotate(span, args, kwargs):
            if static_attrs:
                span.set_attributes(static_attrs)
            if attr_from_args is None:
                return
            try:
                span.set_attributes(attr_from_args(*args, **kwargs) or {})
            except Exception as e:
                _logger.debug(f"Span attributes for {name} failed: {e}")

        def failed(span, error):
            span.record_exception(error)
            span.set_status(Status(StatusCode.ERROR))

        if inspect.iscoroutinefunction(func):

            @functools.wraps(func)
            async def traced_async(*args, **kwargs):
                with tracer.start_as_current_span(name) as span:
                    annotate(span, args, kwargs)
                    try:
                        return await func(*args, **kwargs)
                    except Exception as e:
                        failed(span, e)
                        raise

            return traced_async

        @functools.wraps(func)
        def traced(*args, **kwargs):
            with tracer.start_as_current_span(name) as span:
                annotate(span, args, kwargs)
                try:
                    return func(*args, **kwargs)
                except Exception as e:
                    failed(span, e)
                    raise

        return traced

    return decorate
