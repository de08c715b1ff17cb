"""SQLAlchemy ORM model for stored incidents.

The ``incidents`` table holds one row per incident ``id``. Rows are written
with ``INSERT ... ON CONFLICT (id) DO UPDATE`` so redelivered messages replace
the previous row instead of duplicating it.

Indexes:
- ``process_instance_id`` and ``process_definition_id`` back the two delete
  commands.
- ``tenant_id`` backs tenant-scoped listings.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all ORM models."""


class Incident(Base):
    """Latest known state of an incident reported by the workflow engine.

    Fields:
        - id: Incident identifier from the engine (primary key, upsert key)
        - external_task_id: External task that failed
        - process_instance_id: Process instance that raised the incident
        - process_definition_id: Definition the instance was started from
        - worker_id: External task worker that reported the failure
        - error_message: Diagnostic text
        - time: When the incident occurred
        - tenant_id: Tenant partition
        - deployment_name: Display name, or the definition id as fallback
        - msg_version: Wire format version that produced this row
    """
    __tablename__ = "incidents"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    external_task_id: Mapped[str] = mapped_column(String, default="")
    process_instance_id: Mapped[str] = mapped_column(String, index=True)
    process_definition_id: Mapped[str] = mapped_column(String, index=True, default="")
    worker_id: Mapped[str] = mapped_column(String, default="")
    error_message: Mapped[str] = mapped_column(Text, default="")
    time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True, default="")
    deployment_name: Mapped[str] = mapped_column(String, default="")
    msg_version: Mapped[int | None] = mapped_column(Integer, nullable=True)
