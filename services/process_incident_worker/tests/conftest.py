import asyncio
import json
from typing import Any, Optional

import pytest

from libs.controller import IncidentController
from libs.models import IncidentField, IncidentRecord


class FakeGateway:
    """In-memory workflow engine recording every call into a shared log."""

    def __init__(self, calls: list):
        self.calls = calls
        self.names: dict[str, str] = {}
        self.stop_error: Optional[Exception] = None
        self.resolve_error: Optional[Exception] = None
        self.stop_delay = 0.0

    async def stop_process_instance(self, instance_id: str, tenant_id: str) -> None:
        self.calls.append(("stop", instance_id, tenant_id))
        if self.stop_delay:
            await asyncio.sleep(self.stop_delay)
        if self.stop_error is not None:
            raise self.stop_error

    async def resolve_deployment_name(self, definition_id: str, tenant_id: str) -> str:
        self.calls.append(("resolve", definition_id, tenant_id))
        if self.resolve_error is not None:
            raise self.resolve_error
        return self.names.get(definition_id, f"deployment {definition_id}")


class FakeStore:
    """Dict-backed incident store keyed by incident id."""

    def __init__(self, calls: list):
        self.calls = calls
        self.records: dict[str, IncidentRecord] = {}
        self.error: Optional[Exception] = None

    async def upsert(self, record: IncidentRecord) -> None:
        self.calls.append(("upsert", record.id))
        if self.error is not None:
            raise self.error
        self.records[record.id] = record

    async def delete_where(self, field: IncidentField, value: str) -> int:
        self.calls.append(("delete", field.value, value))
        if self.error is not None:
            raise self.error
        matching = [k for k, r in self.records.items() if getattr(r, field.value) == value]
        for key in matching:
            del self.records[key]
        return len(matching)


def encode(payload: dict[str, Any]) -> bytes:
    return json.dumps(payload).encode("utf-8")


def legacy_incident(incident_id: str = "a", **overrides: Any) -> dict[str, Any]:
    payload = {
        "id": incident_id,
        "msg_version": 2,
        "external_task_id": "task-1",
        "process_instance_id": "p1",
        "process_definition_id": "d1",
        "worker_id": "w1",
        "error_message": "boom",
        "time": "2024-05-01T10:00:00Z",
        "tenant_id": "t1",
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def calls() -> list:
    return []


@pytest.fixture
def gateway(calls) -> FakeGateway:
    return FakeGateway(calls)


@pytest.fixture
def store(calls) -> FakeStore:
    return FakeStore(calls)


@pytest.fixture
def controller(gateway, store) -> IncidentController:
    return IncidentController(gateway=gateway, store=store, call_timeout=1.0)
