"""
Topology initializer.

- Declares the incident exchange/queue and the DLQ exchange/queue
- Declares the retry exchange and one delay queue per configured delay

Supports a best-effort mode via ``--best-effort`` or ``INIT_TOPOLOGY_BEST_EFFORT=1``
which skips errors if RabbitMQ is not reachable.

Examples:
    python -m scripts.init_topology
    python -m scripts.init_topology --best-effort
"""

import argparse
import asyncio
import logging
import os

from libs.config import Settings
from libs.logging_utils import setup_logging
from libs.rabbit import connect, declare_incident_topology, declare_retry_topology

logger = logging.getLogger(__name__)


async def main(settings: Settings, best_effort: bool) -> None:
    """Declare the incident topology for ``settings.queue_prefix``.

    When ``best_effort`` is True, any connection or declaration error is
    logged and the function returns successfully.
    """
    try:
        connection = await connect(settings.rabbitmq_url, settings)
    except Exception as exc:  # noqa: BLE001
        if best_effort:
            logger.warning("skipping topology: RabbitMQ not reachable (%s)", exc)
            return
        raise

    async with connection:
        try:
            channel = await connection.channel()
            await declare_incident_topology(channel, settings.queue_prefix)
            await declare_retry_topology(channel, settings.queue_prefix, settings.retry_delays_ms)
        except Exception as exc:  # noqa: BLE001
            if best_effort:
                logger.warning("skipping topology declarations due to error: %s", exc)
                return
            raise
    logger.info("declared incident topology for prefix %r", settings.queue_prefix)


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Declare RabbitMQ topology for the incident worker")
    parser.add_argument("--best-effort", action="store_true", help="Do not fail if RabbitMQ is unreachable")
    args = parser.parse_args()

    best_effort_env = os.getenv("INIT_TOPOLOGY_BEST_EFFORT", "false").lower() in {"1", "true", "yes"}
    settings = Settings()
    setup_logging(settings.log_level)
    asyncio.run(main(settings, bool(args.best_effort or best_effort_env)))
