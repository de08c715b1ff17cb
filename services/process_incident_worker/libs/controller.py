"""Incident reconciliation controller.

Turns one inbound message into workflow engine and store side effects:

- ``CreateOrReplace``: stop the process instance, resolve the deployment name
  (falling back to the definition id), then upsert the record. The steps run
  strictly in this order and nothing is stored if the stop fails.
- ``DeleteByProcessInstance`` / ``DeleteByProcessDefinition``: delete all
  matching records. No match is not an error.

The controller holds no state between messages; its collaborators are passed
in explicitly. Every collaborator call is bounded by ``call_timeout`` seconds.

Example:
    >>> controller = IncidentController(gateway=CamundaGateway.from_settings(settings), store=SqlIncidentStore(sessions))
    >>> outcome = await controller.handle_message(body, deadline=30)
    >>> outcome.status
    'handled'
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Mapping, Optional

from libs.constants import (
    COMMAND_CREATE_OR_REPLACE,
    COMMAND_DELETE_BY_PROCESS_DEFINITION,
    COMMAND_DELETE_BY_PROCESS_INSTANCE,
    OP_DELETE_WHERE,
    OP_RESOLVE_DEPLOYMENT_NAME,
    OP_STOP_PROCESS_INSTANCE,
    OP_UPSERT,
)
from libs.decoder import Payload, decode
from libs.errors import DependencyFailure, OperationCancelled
from libs.interfaces import IncidentStore, WorkflowGateway
from libs.metrics import (
    DEPENDENCY_FAILURE_TOTAL,
    DEPLOYMENT_NAME_FALLBACK_TOTAL,
    INCIDENT_MESSAGE_TOTAL,
)
from libs.models import (
    CreateOrReplace,
    DeleteByProcessDefinition,
    DeleteByProcessInstance,
    IncidentCommand,
    IncidentField,
    IncidentRecord,
    Outcome,
)

logger = logging.getLogger(__name__)

DEFAULT_CALL_TIMEOUT_SECONDS = 5.0


class IncidentController:
    """Reconciles incident messages against the workflow engine and the store.

    Safe to share between concurrently running handlers as long as the
    gateway and store are.
    """

    def __init__(
        self,
        gateway: WorkflowGateway,
        store: IncidentStore,
        call_timeout: Optional[float] = DEFAULT_CALL_TIMEOUT_SECONDS,
    ):
        self.gateway = gateway
        self.store = store
        self.call_timeout = call_timeout

    async def handle_message(
        self,
        payload: Payload,
        *,
        cancel: Optional[asyncio.Event] = None,
        deadline: Optional[float] = None,
    ) -> Outcome:
        """Decode and execute one message, reporting the outcome.

        ``cancel`` aborts in-flight calls when set; ``deadline`` bounds the
        whole message in seconds. Either one yields a ``failed`` outcome with
        a ``cancelled`` reason. Bad input yields ``ignored``; dependency
        failures yield ``failed``. Never raises for either.
        """
        command = decode(payload)
        if command is None:
            outcome = Outcome.ignored("no actionable command in message")
        else:
            outcome = await self._execute_bounded(command, cancel, deadline)
        INCIDENT_MESSAGE_TOTAL.labels(outcome=outcome.status, command=outcome.command).inc()
        return outcome

    async def execute(self, command: IncidentCommand) -> None:
        """Apply ``command``; raises ``DependencyFailure`` on collaborator errors."""
        if isinstance(command, CreateOrReplace):
            await self.create_incident(command.record)
        elif isinstance(command, DeleteByProcessInstance):
            await self.delete_by_process_instance(command.process_instance_id)
        elif isinstance(command, DeleteByProcessDefinition):
            await self.delete_by_process_definition(command.process_definition_id)
        else:
            raise TypeError(f"unsupported incident command: {command!r}")

    async def create_incident(self, record: IncidentRecord) -> IncidentRecord:
        """Stop the incident's process instance and store the incident.

        Returns the stored record (with ``deployment_name`` resolved).
        """
        ids = {
            "incident": record.id,
            "process_instance": record.process_instance_id,
            "tenant": record.tenant_id,
        }
        await self._call(
            COMMAND_CREATE_OR_REPLACE,
            OP_STOP_PROCESS_INSTANCE,
            ids,
            self.gateway.stop_process_instance(record.process_instance_id, record.tenant_id),
        )

        name = await self._resolve_name(record)
        stored = record.model_copy(update={"deployment_name": name})

        await self._call(COMMAND_CREATE_OR_REPLACE, OP_UPSERT, ids, self.store.upsert(stored))
        logger.info(
            "stored incident %s for process instance %s (deployment %r)",
            stored.id,
            stored.process_instance_id,
            stored.deployment_name,
        )
        return stored

    async def delete_by_process_instance(self, process_instance_id: str) -> int:
        deleted = await self._call(
            COMMAND_DELETE_BY_PROCESS_INSTANCE,
            OP_DELETE_WHERE,
            {"process_instance": process_instance_id},
            self.store.delete_where(IncidentField.PROCESS_INSTANCE_ID, process_instance_id),
        )
        logger.info("deleted %d incident(s) of process instance %s", deleted, process_instance_id)
        return deleted

    async def delete_by_process_definition(self, process_definition_id: str) -> int:
        deleted = await self._call(
            COMMAND_DELETE_BY_PROCESS_DEFINITION,
            OP_DELETE_WHERE,
            {"process_definition": process_definition_id},
            self.store.delete_where(IncidentField.PROCESS_DEFINITION_ID, process_definition_id),
        )
        logger.info("deleted %d incident(s) of process definition %s", deleted, process_definition_id)
        return deleted

    async def _resolve_name(self, record: IncidentRecord) -> str:
        # A missing name only degrades display; the incident is still stored.
        try:
            name = await self._bounded(
                self.gateway.resolve_deployment_name(record.process_definition_id, record.tenant_id)
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "unable to get deployment name of %s -> use definition id: %s",
                record.process_definition_id,
                str(exc) or exc.__class__.__name__,
            )
            DEPENDENCY_FAILURE_TOTAL.labels(operation=OP_RESOLVE_DEPLOYMENT_NAME).inc()
            DEPLOYMENT_NAME_FALLBACK_TOTAL.inc()
            return record.process_definition_id
        return name or record.process_definition_id

    async def _bounded(self, awaitable: Awaitable[Any]) -> Any:
        return await asyncio.wait_for(awaitable, self.call_timeout)

    async def _call(
        self,
        command: str,
        operation: str,
        identifiers: Mapping[str, str],
        awaitable: Awaitable[Any],
    ) -> Any:
        """Await a collaborator call, wrapping any failure in ``DependencyFailure``."""
        try:
            return await self._bounded(awaitable)
        except asyncio.TimeoutError as exc:
            DEPENDENCY_FAILURE_TOTAL.labels(operation=operation).inc()
            cause = TimeoutError(f"timed out after {self.call_timeout}s")
            raise DependencyFailure(command, operation, identifiers, cause) from exc
        except Exception as exc:  # noqa: BLE001
            DEPENDENCY_FAILURE_TOTAL.labels(operation=operation).inc()
            raise DependencyFailure(command, operation, identifiers, exc) from exc

    async def _execute_bounded(
        self,
        command: IncidentCommand,
        cancel: Optional[asyncio.Event],
        deadline: Optional[float],
    ) -> Outcome:
        try:
            await self._run_cancellable(command, cancel, deadline)
        except DependencyFailure as exc:
            logger.error("incident command failed: %s", exc)
            return Outcome.failed(str(exc), command.kind)
        except OperationCancelled as exc:
            logger.warning("incident command %s cancelled: %s", command.kind, exc)
            return Outcome.failed(f"cancelled: {exc}", command.kind)
        return Outcome.handled(command.kind)

    async def _run_cancellable(
        self,
        command: IncidentCommand,
        cancel: Optional[asyncio.Event],
        deadline: Optional[float],
    ) -> None:
        """Run ``execute(command)`` until done, ``cancel`` is set or ``deadline`` passes."""
        if cancel is None and deadline is None:
            await self.execute(command)
            return
        if cancel is not None and cancel.is_set():
            raise OperationCancelled("cancellation requested before start")

        work = asyncio.ensure_future(self.execute(command))
        waiters: set[asyncio.Future[Any]] = {work}
        stop: Optional[asyncio.Future[Any]] = None
        if cancel is not None:
            stop = asyncio.ensure_future(cancel.wait())
            waiters.add(stop)
        try:
            done, _ = await asyncio.wait(waiters, timeout=deadline, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            work.cancel()
            raise
        finally:
            if stop is not None and not stop.done():
                stop.cancel()

        if work in done:
            work.result()
            return

        work.cancel()
        await asyncio.gather(work, return_exceptions=True)
        if stop is not None and stop in done:
            raise OperationCancelled("cancellation requested")
        raise OperationCancelled(f"deadline of {deadline}s exceeded")
