"""Incident record, command and outcome models.

``IncidentRecord`` and ``IncidentEnvelope`` are pydantic models that validate
the wire payloads (JSON field names are kept as aliases). Commands are plain
frozen dataclasses forming a tagged union: a command is built per inbound
message, executed once by the controller and discarded.
"""
from __future__ import annotations

import datetime as _dt
import enum
from dataclasses import dataclass
from typing import Any, ClassVar, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, StrictInt, field_validator

from libs.constants import (
    COMMAND_CREATE_OR_REPLACE,
    COMMAND_DELETE_BY_PROCESS_DEFINITION,
    COMMAND_DELETE_BY_PROCESS_INSTANCE,
    COMMAND_NONE,
    OUTCOME_FAILED,
    OUTCOME_HANDLED,
    OUTCOME_IGNORED,
)


class IncidentRecord(BaseModel):
    """Durable incident as reported by the workflow engine.

    ``id`` is the upsert key and must be stable across redeliveries.
    ``deployment_name`` is always overwritten by the controller before the
    record is stored.
    """
    model_config = ConfigDict(extra="ignore", populate_by_name=True, frozen=True)

    id: str = Field(min_length=1)
    external_task_id: str = ""
    process_instance_id: str = Field(min_length=1)
    process_definition_id: str = ""
    worker_id: str = ""
    error_message: str = ""
    occurred_at: Optional[_dt.datetime] = Field(default=None, alias="time")
    tenant_id: str = ""
    deployment_name: str = ""
    # Set from the envelope for msg_version 3; legacy payloads may omit it
    schema_version: Optional[StrictInt] = Field(default=None, alias="msg_version")

    @field_validator(
        "external_task_id",
        "process_definition_id",
        "worker_id",
        "error_message",
        "tenant_id",
        "deployment_name",
        mode="before",
    )
    @classmethod
    def blank_if_none(cls, value: Any) -> Any:
        # Producers serialize unset identifiers as null
        return "" if value is None else value

    def to_wire(self) -> dict[str, Any]:
        """Return the JSON-ready wire representation (aliased field names)."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class IncidentEnvelope(BaseModel):
    """Versioned command envelope (``msg_version`` 3 and later)."""
    model_config = ConfigDict(extra="ignore")

    msg_version: StrictInt
    command: str = ""
    # Validated as an IncidentRecord only when the command needs it
    incident: Optional[dict[str, Any]] = None
    process_definition_id: str = ""
    process_instance_id: str = ""

    @field_validator("command", "process_definition_id", "process_instance_id", mode="before")
    @classmethod
    def blank_if_none(cls, value: Any) -> Any:
        return "" if value is None else value


class IncidentField(str, enum.Enum):
    """Columns an incident delete may filter on."""

    PROCESS_INSTANCE_ID = "process_instance_id"
    PROCESS_DEFINITION_ID = "process_definition_id"


@dataclass(frozen=True)
class CreateOrReplace:
    record: IncidentRecord

    kind: ClassVar[str] = COMMAND_CREATE_OR_REPLACE


@dataclass(frozen=True)
class DeleteByProcessInstance:
    process_instance_id: str

    kind: ClassVar[str] = COMMAND_DELETE_BY_PROCESS_INSTANCE


@dataclass(frozen=True)
class DeleteByProcessDefinition:
    process_definition_id: str

    kind: ClassVar[str] = COMMAND_DELETE_BY_PROCESS_DEFINITION


IncidentCommand = Union[CreateOrReplace, DeleteByProcessInstance, DeleteByProcessDefinition]


@dataclass(frozen=True)
class Outcome:
    """Result of handling one inbound message.

    The consumer decides acknowledgement and redelivery from ``status``:
    ``handled`` and ``ignored`` are final, ``failed`` may be retried.
    """

    status: str
    reason: str = ""
    command: str = COMMAND_NONE

    @classmethod
    def handled(cls, command: str) -> "Outcome":
        return cls(OUTCOME_HANDLED, "", command)

    @classmethod
    def ignored(cls, reason: str, command: str = COMMAND_NONE) -> "Outcome":
        return cls(OUTCOME_IGNORED, reason, command)

    @classmethod
    def failed(cls, reason: str, command: str = COMMAND_NONE) -> "Outcome":
        return cls(OUTCOME_FAILED, reason, command)

    @property
    def is_handled(self) -> bool:
        return self.status == OUTCOME_HANDLED

    @property
    def is_ignored(self) -> bool:
        return self.status == OUTCOME_IGNORED

    @property
    def is_failed(self) -> bool:
        return self.status == OUTCOME_FAILED
