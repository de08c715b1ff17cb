"""
Incident worker.

- Consumes the incident queue (``{prefix}.incidents.q``)
- Hands every message body to the reconciliation controller
- Acknowledges handled and ignored messages; failed ones go to a delay queue
  and, once retries are exhausted, to the DLQ
- Exposes Prometheus metrics and emits one trace span per message
"""

import asyncio
import logging
import signal
import time
from typing import Any, Optional

from aio_pika.abc import AbstractChannel, AbstractIncomingMessage
from opentelemetry import context  # type: ignore

from libs.camunda import CamundaGateway
from libs.config import Settings
from libs.constants import HEADER_ERROR, HEADER_RETRY_COUNT
from libs.controller import IncidentController
from libs.db import build_engine, build_session_factory
from libs.logging_utils import setup_logging
from libs.metrics import (
    INCIDENT_DLQ_TOTAL,
    INCIDENT_PROCESS_LATENCY_SECONDS,
    INCIDENT_RETRY_TOTAL,
    start_metrics_server,
)
from libs.models import Outcome
from libs.rabbit import (
    connect,
    declare_incident_topology,
    declare_retry_topology,
    incidents_queue,
    publish_to_dlq,
    schedule_retry,
)
from libs.retry import next_delay_ms, retry_count_from_headers, should_dead_letter
from libs.store import SqlIncidentStore
from libs.tracing import extract_context_from_headers, get_tracer, start_tracing

logger = logging.getLogger(__name__)


class IncidentWorker:
    """Consumes incident messages and applies them through the controller.

    Concurrency model:
    - ``WORKER_PREFETCH`` (AMQP QoS) bounds unacknowledged deliveries
    - ``WORKER_CONCURRENCY`` (semaphore) bounds in-flight handlers
    - Messages for different incidents are not ordered relative to each other

    Example:
    ```python
    worker = IncidentWorker(controller, Settings())
    await worker.run()
    ```
    """

    def __init__(self, controller: IncidentController, settings: Settings):
        self.controller = controller
        self.settings = settings
        self._stopping = asyncio.Event()
        self._concurrency = max(settings.worker_concurrency, 1)
        self._sem = asyncio.Semaphore(self._concurrency)
        self._channel: Optional[AbstractChannel] = None
        self._tracer = get_tracer("process-incident-worker")

    async def run(self) -> None:
        """Connect to RabbitMQ and consume until ``stop()`` is called."""
        try:
            start_metrics_server(self.settings.metrics_port)
            logger.info("metrics server listening on :%d /metrics", self.settings.metrics_port)
        except OSError:
            # Already started in this process
            pass

        start_tracing("process-incident-worker")
        self._tracer = get_tracer("process-incident-worker")

        prefix = self.settings.queue_prefix
        connection = await connect(self.settings.rabbitmq_url, self.settings)
        async with connection:
            channel = await connection.channel()
            await channel.set_qos(prefetch_count=self.settings.prefetch_count)
            await declare_incident_topology(channel, prefix)
            await declare_retry_topology(channel, prefix, self.settings.retry_delays_ms)
            self._channel = channel

            queue = await channel.get_queue(incidents_queue(prefix))
            logger.info("worker consuming %s", incidents_queue(prefix))
            consumer_tag = await queue.consume(self._on_message, no_ack=False)

            await self._stopping.wait()
            logger.info("worker stopping")
            await queue.cancel(consumer_tag)
            try:
                await asyncio.wait_for(self._drain(), timeout=self.settings.call_timeout_seconds * 2)
            except asyncio.TimeoutError:
                logger.warning("in-flight incident handlers did not finish before shutdown")

    async def _drain(self) -> None:
        """Wait until every in-flight handler has released its slot."""
        for _ in range(self._concurrency):
            await self._sem.acquire()

    async def _on_message(self, message: AbstractIncomingMessage) -> None:
        """Process one delivery and acknowledge it.

        Redelivery of failures is done by republishing to the retry exchange,
        so the broker never requeues a message in a tight loop. If that
        republish fails the delivery is rejected and the queue dead-letters it.
        """
        async with self._sem:
            start_ts = time.perf_counter()
            async with message.process(requeue=False):
                token = context.attach(extract_context_from_headers(message.headers))
                try:
                    with self._tracer.start_as_current_span("handle_incident") as span:
                        outcome = await self.controller.handle_message(
                            message.body,
                            cancel=self._stopping,
                            deadline=self.settings.message_deadline_seconds,
                        )
                        span.set_attribute("incident.command", outcome.command)
                        span.set_attribute("incident.outcome", outcome.status)
                        if outcome.is_failed:
                            span.set_attribute("error", True)
                            try:
                                await self._redeliver(message, outcome)
                            except Exception:
                                logger.exception("unable to redeliver failed incident message -> reject")
                                raise
                finally:
                    context.detach(token)
                    INCIDENT_PROCESS_LATENCY_SECONDS.observe(time.perf_counter() - start_ts)

    async def _redeliver(self, message: AbstractIncomingMessage, outcome: Outcome) -> None:
        """Schedule a retry for a failed message, or dead-letter it."""
        if self._channel is None:
            raise RuntimeError("worker channel is not open")
        prefix = self.settings.queue_prefix
        retry_count = retry_count_from_headers(message.headers)
        headers: dict[str, Any] = dict(message.headers or {})

        if should_dead_letter(retry_count, self.settings.max_retries):
            headers[HEADER_ERROR] = outcome.reason
            await publish_to_dlq(self._channel, prefix, message.body, headers=headers)
            INCIDENT_DLQ_TOTAL.labels(command=outcome.command).inc()
            logger.error(
                "incident message dead-lettered after %d retries: %s", retry_count, outcome.reason
            )
            return

        delay = next_delay_ms(retry_count, self.settings.retry_delays_ms)
        headers[HEADER_RETRY_COUNT] = retry_count + 1
        await schedule_retry(self._channel, prefix, message.body, delay_ms=delay, headers=headers)
        INCIDENT_RETRY_TOTAL.labels(command=outcome.command).inc()
        logger.warning(
            "incident message retry %d scheduled in %dms: %s", retry_count + 1, delay, outcome.reason
        )

    def stop(self) -> None:
        """Signal the run loop to stop (used by signal handlers)."""
        self._stopping.set()


async def main() -> None:
    """Entrypoint for running the worker as a script."""
    settings = Settings()
    setup_logging(settings.log_level)

    engine = build_engine(settings)
    gateway = CamundaGateway.from_settings(settings)
    controller = IncidentController(
        gateway=gateway,
        store=SqlIncidentStore(build_session_factory(engine)),
        call_timeout=settings.call_timeout_seconds,
    )
    worker = IncidentWorker(controller, settings)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, worker.stop)

    try:
        await worker.run()
    finally:
        await gateway.aclose()
        await engine.dispose()


if __name__ == "__main__":
    asyncio.run(main())
