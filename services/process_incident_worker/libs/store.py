"""PostgreSQL incident store.

Implements ``IncidentStore`` with single-statement writes, so every upsert or
delete is atomic per row even when several workers race on the same incident.

Example:
    >>> store = SqlIncidentStore(build_session_factory(build_engine(Settings())))
    >>> await store.upsert(record)
    >>> await store.delete_where(IncidentField.PROCESS_DEFINITION_ID, "def-1")
    3
"""
from __future__ import annotations

from typing import Any

from sqlalchemy import Delete, delete
from sqlalchemy.dialects.postgresql import Insert, insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker  # type: ignore

from libs.errors import StoreError
from libs.models import IncidentField, IncidentRecord
from libs.orm_models import Incident


_FILTER_COLUMNS = {
    IncidentField.PROCESS_INSTANCE_ID: Incident.process_instance_id,
    IncidentField.PROCESS_DEFINITION_ID: Incident.process_definition_id,
}


def record_to_row(record: IncidentRecord) -> dict[str, Any]:
    """Map an ``IncidentRecord`` onto ``incidents`` column values."""
    return {
        "id": record.id,
        "external_task_id": record.external_task_id,
        "process_instance_id": record.process_instance_id,
        "process_definition_id": record.process_definition_id,
        "worker_id": record.worker_id,
        "error_message": record.error_message,
        "time": record.occurred_at,
        "tenant_id": record.tenant_id,
        "deployment_name": record.deployment_name,
        "msg_version": record.schema_version,
    }


def build_upsert(record: IncidentRecord) -> Insert:
    """Return ``INSERT ... ON CONFLICT (id) DO UPDATE`` replacing every column."""
    row = record_to_row(record)
    stmt = insert(Incident).values(**row)
    replace = {column: stmt.excluded[column] for column in row if column != "id"}
    return stmt.on_conflict_do_update(index_elements=[Incident.id], set_=replace)


def build_delete(field: IncidentField | str, value: str) -> Delete:
    """Return ``DELETE FROM incidents WHERE <field> = value``."""
    column = _FILTER_COLUMNS[IncidentField(field)]
    return delete(Incident).where(column == value)


class SqlIncidentStore:
    """``IncidentStore`` backed by an async SQLAlchemy session factory."""

    def __init__(self, sessions: async_sessionmaker):
        self._sessions = sessions

    async def upsert(self, record: IncidentRecord) -> None:
        try:
            async with self._sessions() as session:
                await session.execute(build_upsert(record))
                await session.commit()
        except SQLAlchemyError as exc:
            raise StoreError(f"unable to upsert incident {record.id}: {exc}") from exc

    async def delete_where(self, field: IncidentField, value: str) -> int:
        stmt = build_delete(field, value)
        try:
            async with self._sessions() as session:
                result = await session.execute(stmt)
                await session.commit()
        except SQLAlchemyError as exc:
            raise StoreError(f"unable to delete incidents where {IncidentField(field).value}={value}: {exc}") from exc
        return max(result.rowcount or 0, 0)
