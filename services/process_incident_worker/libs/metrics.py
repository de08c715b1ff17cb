"""Prometheus metrics and a tiny HTTP server to expose them.

Call `start_metrics_server(port)` once in a process to expose /metrics.
"""

from __future__ import annotations

from prometheus_client import Counter, Histogram, start_http_server


# Controller metrics
INCIDENT_MESSAGE_TOTAL = Counter(
    "incident_message_total", "Total incident messages handled", ["outcome", "command"]
)
DEPENDENCY_FAILURE_TOTAL = Counter(
    "incident_dependency_failure_total", "Failed workflow engine or store calls", ["operation"]
)
DEPLOYMENT_NAME_FALLBACK_TOTAL = Counter(
    "incident_deployment_name_fallback_total",
    "Incidents stored with the definition id because the deployment name could not be resolved",
)

# Worker metrics
INCIDENT_PROCESS_LATENCY_SECONDS = Histogram(
    "incident_process_latency_seconds",
    "Time to process a single incident message",
    buckets=(0.01, 0.05, 0.1, 0.5, 1, 2, 5, 10, 30),
)
INCIDENT_RETRY_TOTAL = Counter(
    "incident_retry_total", "Total failed incident messages scheduled for retry", ["command"]
)
INCIDENT_DLQ_TOTAL = Counter(
    "incident_dlq_total", "Total incident messages sent to the DLQ", ["command"]
)


def start_metrics_server(port: int = 9000) -> None:
    start_http_server(port)
