"""Camunda REST gateway.

Implements ``WorkflowGateway`` on top of the Camunda 7 engine REST API using
``httpx``. Tenants may be routed to dedicated engine shards via
``CAMUNDA_TENANT_URLS``; everything else goes to ``CAMUNDA_URL``.

Example:
    >>> async with CamundaGateway.from_settings(Settings()) as gateway:
    ...     await gateway.stop_process_instance("pi-1", "tenant-a")
    ...     name = await gateway.resolve_deployment_name("def-1", "tenant-a")
"""
from __future__ import annotations

import logging
from typing import Mapping, Optional
from urllib.parse import quote

import httpx

from libs.config import Settings
from libs.errors import WorkflowEngineError

logger = logging.getLogger(__name__)

ENGINE_REST = "/engine-rest"


class CamundaGateway:
    """Stops process instances and resolves deployment names via Camunda REST."""

    def __init__(
        self,
        base_url: str,
        tenant_urls: Optional[Mapping[str, str]] = None,
        timeout: float = 5.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.tenant_urls = {k: v.rstrip("/") for k, v in (tenant_urls or {}).items()}
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    @classmethod
    def from_settings(cls, settings: Settings, client: Optional[httpx.AsyncClient] = None) -> "CamundaGateway":
        return cls(
            base_url=settings.camunda_url,
            tenant_urls=settings.camunda_tenant_urls,
            timeout=settings.call_timeout_seconds,
            client=client,
        )

    async def __aenter__(self) -> "CamundaGateway":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def engine_url(self, tenant_id: str) -> str:
        """Return the engine REST root serving ``tenant_id``."""
        return self.tenant_urls.get(tenant_id, self.base_url) + ENGINE_REST

    async def stop_process_instance(self, instance_id: str, tenant_id: str) -> None:
        """Delete the running process instance.

        A 404 means the instance is already gone (for example on redelivery of
        the same incident) and counts as stopped.
        """
        url = f"{self.engine_url(tenant_id)}/process-instance/{quote(instance_id, safe='')}"
        try:
            resp = await self._client.delete(url, params={"skipIoMappings": "true"})
        except httpx.HTTPError as exc:
            raise WorkflowEngineError(f"unable to stop process instance {instance_id}: {exc!r}") from exc
        if resp.status_code == 404:
            logger.info("process instance %s already stopped (tenant %r)", instance_id, tenant_id)
            return
        if not resp.is_success:
            raise WorkflowEngineError(
                f"unable to stop process instance {instance_id}: {resp.status_code} {resp.text[:200]}",
                status_code=resp.status_code,
            )

    async def resolve_deployment_name(self, definition_id: str, tenant_id: str) -> str:
        """Return the ``name`` of the process definition."""
        url = f"{self.engine_url(tenant_id)}/process-definition/{quote(definition_id, safe='')}"
        try:
            resp = await self._client.get(url)
        except httpx.HTTPError as exc:
            raise WorkflowEngineError(f"unable to load process definition {definition_id}: {exc!r}") from exc
        if not resp.is_success:
            raise WorkflowEngineError(
                f"unable to load process definition {definition_id}: {resp.status_code}",
                status_code=resp.status_code,
            )
        try:
            name = resp.json().get("name")
        except (ValueError, AttributeError) as exc:
            raise WorkflowEngineError(f"unexpected process definition response for {definition_id}") from exc
        if not name:
            raise WorkflowEngineError(f"process definition {definition_id} has no name")
        return str(name)
