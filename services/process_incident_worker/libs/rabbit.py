"""RabbitMQ plumbing for the incident worker.

Connections (with TLS/mTLS and connect retries), topology declaration and
publishing for the incident queue, built on ``aio_pika``.

Names are derived from a prefix (``INCIDENT_QUEUE_PREFIX``, default ``process``):

- ``{prefix}.incidents`` / ``{prefix}.incidents.q``: inbound incident commands
- ``{prefix}.incidents.retry`` / ``{prefix}.incidents.retry.{delay}``: delay
  queues that dead-letter back to the inbound exchange after their TTL
- ``{prefix}.incidents.dlx`` / ``{prefix}.incidents.dlq``: terminal failures
"""

import asyncio
import json
import logging
import ssl
from typing import Any, Dict, Mapping, Optional
from urllib.parse import urlsplit

import aio_pika
from aio_pika import ExchangeType, Message, DeliveryMode
from aio_pika.abc import AbstractChannel, AbstractRobustConnection, HeadersType

from libs.config import Settings
from libs.constants import DEFAULT_RETRY_DELAYS_MS

logger = logging.getLogger(__name__)


ROUTING_INCIDENTS = "incidents"
ROUTING_DEAD = "dead"


def incidents_exchange(prefix: str) -> str:
    return f"{prefix}.incidents"


def incidents_queue(prefix: str) -> str:
    return f"{prefix}.incidents.q"


def retry_exchange(prefix: str) -> str:
    return f"{prefix}.incidents.retry"


def dead_letter_exchange(prefix: str) -> str:
    return f"{prefix}.incidents.dlx"


def dead_letter_queue(prefix: str) -> str:
    return f"{prefix}.incidents.dlq"


def _wants_tls(settings: Settings) -> bool:
    if urlsplit(settings.rabbitmq_url).scheme.lower() == "amqps":
        return True
    return bool(settings.rabbitmq_ssl_ca_path or settings.rabbitmq_ssl_cert_path or settings.rabbitmq_ssl_key_path)


def _build_ssl_context(settings: Settings) -> Optional[ssl.SSLContext]:
    """Return the TLS context for the broker connection, or ``None`` for plain AMQP.

    ``RABBITMQ_SSL_CERT_PATH`` and ``RABBITMQ_SSL_KEY_PATH`` together enable
    mTLS. ``RABBITMQ_SSL_VERIFY=false`` turns off certificate and hostname
    checks for local brokers with self-signed certificates.
    """
    if not _wants_tls(settings):
        return None

    context = ssl.create_default_context(cafile=settings.rabbitmq_ssl_ca_path or None)
    if settings.rabbitmq_ssl_cert_path and settings.rabbitmq_ssl_key_path:
        context.load_cert_chain(settings.rabbitmq_ssl_cert_path, settings.rabbitmq_ssl_key_path)

    if settings.rabbitmq_ssl_verify:
        context.check_hostname = settings.rabbitmq_ssl_check_hostname
        context.verify_mode = ssl.CERT_REQUIRED
    else:
        # check_hostname must be off before CERT_NONE is accepted
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
    return context


async def connect(amqp_url: str | None = None, settings: Settings | None = None) -> AbstractRobustConnection:
    """Open a robust AMQP connection, retrying with exponential backoff.

    Attempts and delays come from ``RABBITMQ_CONNECT_ATTEMPTS``,
    ``RABBITMQ_CONNECT_BASE_DELAY_MS`` and ``RABBITMQ_CONNECT_MAX_DELAY_MS``.
    The last connection error is raised once attempts are used up.

    Example:
        >>> connection = await connect(settings=Settings())
        >>> async with connection:
        ...     channel = await connection.channel()
    """
    settings = settings or Settings()
    url = amqp_url or settings.rabbitmq_url
    ssl_context = _build_ssl_context(settings)
    attempts = max(settings.rabbitmq_connect_attempts, 1)
    delay_ms = settings.rabbitmq_connect_base_delay_ms

    for attempt in range(1, attempts + 1):
        try:
            if ssl_context is None:
                return await aio_pika.connect_robust(url)
            return await aio_pika.connect_robust(url, ssl=True, ssl_options=ssl_context)  # type: ignore[arg-type]
        except Exception as exc:  # noqa: BLE001
            if attempt == attempts:
                raise
            logger.warning("RabbitMQ connect attempt %d/%d failed: %s", attempt, attempts, exc)
            await asyncio.sleep(delay_ms / 1000.0)
            delay_ms = min(delay_ms * 2, settings.rabbitmq_connect_max_delay_ms)
    raise RuntimeError("unreachable")


async def declare_incident_topology(channel: AbstractChannel, prefix: str) -> None:
    """Declare the inbound incident exchange/queue and the DLQ exchange/queue.

    The incident queue dead-letters to the DLQ, so a delivery the worker
    rejects is kept rather than discarded.
    """
    exchange = await channel.declare_exchange(incidents_exchange(prefix), ExchangeType.DIRECT, durable=True)
    # Deliveries rejected by the worker (redelivery itself failed) land in the DLQ
    queue = await channel.declare_queue(
        incidents_queue(prefix),
        durable=True,
        arguments={
            "x-dead-letter-exchange": dead_letter_exchange(prefix),
            "x-dead-letter-routing-key": ROUTING_DEAD,
        },
    )
    await queue.bind(exchange, routing_key=ROUTING_INCIDENTS)

    dlx = await channel.declare_exchange(dead_letter_exchange(prefix), ExchangeType.DIRECT, durable=True)
    dlq = await channel.declare_queue(dead_letter_queue(prefix), durable=True)
    await dlq.bind(dlx, routing_key=ROUTING_DEAD)


async def declare_retry_topology(channel: AbstractChannel, prefix: str, delays_ms: list[int] | None = None) -> None:
    """Declare the retry exchange and per-delay queues that DLX back to incidents.

    Each delay queue holds the message for ``x-message-ttl`` milliseconds and
    then dead-letters it back to the inbound incidents exchange.
    """
    if not delays_ms:
        delays_ms = DEFAULT_RETRY_DELAYS_MS

    exchange = await channel.declare_exchange(retry_exchange(prefix), ExchangeType.DIRECT, durable=True)

    for delay in sorted(set(delays_ms)):
        queue = await channel.declare_queue(
            f"{retry_exchange(prefix)}.{delay}",
            durable=True,
            arguments={
                "x-message-ttl": delay,
                "x-dead-letter-exchange": incidents_exchange(prefix),
                "x-dead-letter-routing-key": ROUTING_INCIDENTS,
            },
        )
        await queue.bind(exchange, routing_key=f"delay_{delay}")


def _message(body: bytes, headers: Optional[HeadersType]) -> Message:
    hdrs: Dict[str, Any] = dict(headers) if headers else {}
    return Message(
        body=body,
        content_type="application/json",
        delivery_mode=DeliveryMode.PERSISTENT,
        headers=hdrs,
    )


async def publish_incident_command(
    channel: AbstractChannel,
    prefix: str,
    payload: Mapping[str, Any],
    headers: Optional[HeadersType] = None,
) -> None:
    """Publish an incident command payload to the inbound exchange."""
    exchange = await channel.get_exchange(incidents_exchange(prefix))
    body = json.dumps(payload, separators=(",", ":"), default=str).encode("utf-8")
    await exchange.publish(_message(body, headers), routing_key=ROUTING_INCIDENTS, mandatory=True)


async def schedule_retry(
    channel: AbstractChannel,
    prefix: str,
    body: bytes,
    delay_ms: int,
    headers: Optional[HeadersType] = None,
) -> None:
    """Send a failed message body, unchanged, to the retry exchange for later redelivery."""
    exchange = await channel.get_exchange(retry_exchange(prefix))
    await exchange.publish(_message(body, headers), routing_key=f"delay_{delay_ms}")


async def publish_to_dlq(
    channel: AbstractChannel,
    prefix: str,
    body: bytes,
    headers: Optional[HeadersType] = None,
) -> None:
    """Publish a terminal failure, unchanged, to the DLQ exchange."""
    dlx = await channel.get_exchange(dead_letter_exchange(prefix))
    await dlx.publish(_message(body, headers), routing_key=ROUTING_DEAD)
