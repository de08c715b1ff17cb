"""
Publish a single incident command for manual testing.

Builds a ``msg_version`` 3 envelope and publishes it to the incident exchange
with trace headers.

Examples:
    python -m scripts.producer put --instance pi-1 --definition def-1 --tenant t1 --error "boom"
    python -m scripts.producer delete --definition def-1
    python -m scripts.producer delete --instance pi-1
"""

import argparse
import asyncio
import datetime as _dt
import logging
import uuid
from typing import Any, Sequence

from libs.config import Settings
from libs.constants import ENVELOPE_DELETE, ENVELOPE_PUT
from libs.logging_utils import setup_logging
from libs.models import IncidentRecord
from libs.rabbit import connect, declare_incident_topology, publish_incident_command
from libs.tracing import get_tracer, inject_headers, start_tracing

logger = logging.getLogger(__name__)

ENVELOPE_VERSION = 3


def build_put(args: argparse.Namespace) -> dict[str, Any]:
    """Return a PUT envelope carrying a validated incident record."""
    record = IncidentRecord(
        id=args.id or str(uuid.uuid4()),
        external_task_id=args.task or "",
        process_instance_id=args.instance,
        process_definition_id=args.definition or "",
        worker_id=args.worker or "producer",
        error_message=args.error or "",
        time=_dt.datetime.now(_dt.timezone.utc),
        tenant_id=args.tenant or "",
    )
    return {"msg_version": ENVELOPE_VERSION, "command": ENVELOPE_PUT, "incident": record.to_wire()}


def build_delete(args: argparse.Namespace) -> dict[str, Any]:
    envelope: dict[str, Any] = {"msg_version": ENVELOPE_VERSION, "command": ENVELOPE_DELETE}
    if args.definition:
        envelope["process_definition_id"] = args.definition
    if args.instance:
        envelope["process_instance_id"] = args.instance
    return envelope


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Publish an incident command")
    parser.add_argument("action", choices=["put", "delete"])
    parser.add_argument("--id", help="incident id (default: random uuid)")
    parser.add_argument("--instance", help="process instance id")
    parser.add_argument("--definition", help="process definition id")
    parser.add_argument("--tenant", help="tenant id")
    parser.add_argument("--task", help="external task id")
    parser.add_argument("--worker", help="worker id")
    parser.add_argument("--error", help="error message")
    args = parser.parse_args(argv)
    if args.action == "put" and not args.instance:
        parser.error("put requires --instance")
    if args.action == "delete" and not (args.instance or args.definition):
        parser.error("delete requires --instance or --definition")
    return args


async def main(args: argparse.Namespace) -> None:
    """Build the envelope and publish it to the incident exchange."""
    settings = Settings()
    start_tracing("process-incident-producer")
    tracer = get_tracer("process-incident-producer")
    payload = build_put(args) if args.action == "put" else build_delete(args)

    connection = await connect(settings.rabbitmq_url, settings)
    async with connection:
        channel = await connection.channel(publisher_confirms=True)
        await declare_incident_topology(channel, settings.queue_prefix)
        with tracer.start_as_current_span("publish_incident") as span:
            span.set_attribute("incident.command", payload["command"])
            await publish_incident_command(channel, settings.queue_prefix, payload, headers=inject_headers())
    logger.info("published %s", payload)


if __name__ == "__main__":
    setup_logging(Settings().log_level)
    asyncio.run(main(parse_args()))
