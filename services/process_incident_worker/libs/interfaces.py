"""Collaborator contracts used by the reconciliation controller.

The controller only depends on these protocols. ``libs.camunda`` and
``libs.store`` provide the production implementations; tests use in-memory
fakes. Implementations signal failure by raising.
"""
from __future__ import annotations

from typing import Protocol, runtime_checkable

from libs.models import IncidentField, IncidentRecord


@runtime_checkable
class WorkflowGateway(Protocol):
    async def stop_process_instance(self, instance_id: str, tenant_id: str) -> None:
        """Stop the running process instance ``instance_id``."""
        ...

    async def resolve_deployment_name(self, definition_id: str, tenant_id: str) -> str:
        """Return the human-readable name of process definition ``definition_id``."""
        ...


@runtime_checkable
class IncidentStore(Protocol):
    async def upsert(self, record: IncidentRecord) -> None:
        """Insert ``record`` or replace the stored record with the same ``id``."""
        ...

    async def delete_where(self, field: IncidentField, value: str) -> int:
        """Delete every record whose ``field`` equals ``value``; return the count."""
        ...
