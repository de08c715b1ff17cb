"""OpenTelemetry tracing for incident messages.

Spans are exported to the console. The producer injects W3C trace context
into AMQP headers and the worker extracts it, so one trace spans publish and
handling of an incident command, including its retries.
"""

from __future__ import annotations

from typing import Any, Dict, Mapping

from opentelemetry import trace  # type: ignore
from opentelemetry.context import Context  # type: ignore
from opentelemetry.propagate import get_global_textmap, inject, set_global_textmap  # type: ignore
from opentelemetry.sdk.resources import Resource  # type: ignore
from opentelemetry.sdk.trace import TracerProvider  # type: ignore
from opentelemetry.sdk.trace.export import ConsoleSpanExporter, SimpleSpanProcessor  # type: ignore
from opentelemetry.trace import Tracer  # type: ignore
from opentelemetry.trace.propagation.tracecontext import TraceContextTextMapPropagator  # type: ignore

SERVICE_NAME = "process-incident-worker"


def start_tracing(service_name: str = SERVICE_NAME) -> Tracer:
    """Install a console-exporting TracerProvider and the W3C propagator."""
    provider = TracerProvider(resource=Resource.create({"service.name": service_name}))
    provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))
    trace.set_tracer_provider(provider)
    set_global_textmap(TraceContextTextMapPropagator())
    return trace.get_tracer(service_name)


def get_tracer(service_name: str = SERVICE_NAME) -> Tracer:
    return trace.get_tracer(service_name)


def _as_carrier(headers: Mapping[str, Any] | None) -> Dict[str, str]:
    # AMQP header values may arrive as bytes or ints; propagators want str.
    carrier: Dict[str, str] = {}
    for key, value in (headers or {}).items():
        if isinstance(value, (bytes, bytearray)):
            value = value.decode("utf-8", errors="replace")
        carrier[str(key)] = value if isinstance(value, str) else str(value)
    return carrier


def inject_headers(headers: Mapping[str, Any] | None = None) -> Dict[str, Any]:
    """Return ``headers`` plus the current trace context (``traceparent``)."""
    carrier: Dict[str, Any] = dict(headers or {})
    inject(carrier)
    return carrier


def extract_context_from_headers(headers: Mapping[str, Any] | None) -> Context:
    """Return the trace context carried by AMQP ``headers``."""
    return get_global_textmap().extract(_as_carrier(headers))
