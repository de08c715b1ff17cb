from opentelemetry import trace
from opentelemetry.trace.propagation.tracecontext import TraceContextTextMapPropagator

from libs.tracing import extract_context_from_headers, inject_headers

TRACEPARENT = "00-4bf92f3577b34da6a3ce929d0e0e4736-00f067aa0ba902b7-01"


def test_extract_reads_bytes_headers(monkeypatch):
    monkeypatch.setattr("libs.tracing.get_global_textmap", lambda: TraceContextTextMapPropagator())

    ctx = extract_context_from_headers({"traceparent": TRACEPARENT.encode(), "x-retry-count": 2})

    span_context = trace.get_current_span(ctx).get_span_context()
    assert format(span_context.trace_id, "032x") == "4bf92f3577b34da6a3ce929d0e0e4736"
    assert span_context.is_remote


def test_extract_without_headers_has_no_parent():
    ctx = extract_context_from_headers(None)
    assert not trace.get_current_span(ctx).get_span_context().is_valid


def test_inject_keeps_existing_headers():
    headers = inject_headers({"x-retry-count": 1})
    assert headers["x-retry-count"] == 1
