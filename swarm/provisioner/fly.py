"""
SWARM Provisioner — Fly Machines

HTTP client for a Fly Machines-style API. Each session runs on a
single-use machine named after the session, configured to auto-destroy
when it stops.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Iterable

import aiohttp

from swarm.provisioner.base import (
    REUSABLE_STATES,
    Resource,
    ResourceConfig,
    ResourceState,
    find_by_name,
)
from swarm.shared.errors import ProvisionerError, ResourceNotFoundError, is_retryable_status

logger = logging.getLogger("swarm.provisioner.fly")

# Returned by the API when a machine with the requested name already exists.
_NAME_CONFLICT_STATUSES = {409, 422}


class FlyProvisioner:
    """Machines API client for one app."""

    def __init__(
        self,
        app_name: str,
        api_token: str,
        api_base: str = "https://api.machines.dev/v1",
        timeout_seconds: float = 30.0,
    ) -> None:
        self.app_name = app_name
        self.api_token = api_token
        self.api_base = api_base.rstrip("/")
        self.timeout_seconds = timeout_seconds
        logger.info("Fly provisioner initialized (app=%s, api=%s)", app_name, self.api_base)

    def _url(self, path: str) -> str:
        return f"{self.api_base}/apps/{self.app_name}{path}"

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_token}",
            "Content-Type": "application/json",
        }

    async def _request(
        self,
        method: str,
        path: str,
        *,
        operation: str,
        resource_id: str = "",
        json_body: dict[str, Any] | None = None,
        params: dict[str, str] | None = None,
    ) -> Any:
        timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.request(
                    method,
                    self._url(path),
                    headers=self._headers(),
                    json=json_body,
                    params=params,
                ) as resp:
                    if resp.status == 404:
                        raise ResourceNotFoundError(operation, resource_id)
                    if resp.status >= 400:
                        text = await resp.text()
                        raise ProvisionerError(
                            operation,
                            text[:500],
                            resource_id=resource_id,
                            status=resp.status,
                            retryable=is_retryable_status(resp.status),
                        )
                    if resp.content_length == 0:
                        return None
                    return await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise ProvisionerError(
                operation,
                f"{type(exc).__name__}: {exc}",
                resource_id=resource_id,
                retryable=True,
            ) from exc

    @staticmethod
    def _to_resource(data: dict[str, Any]) -> Resource:
        return Resource(
            id=str(data.get("id") or ""),
            name=str(data.get("name") or ""),
            state=ResourceState.parse(data.get("state")),
            metadata=dict((data.get("config") or {}).get("metadata") or {}),
        )

    @staticmethod
    def _machine_body(name: str, config: ResourceConfig) -> dict[str, Any]:
        return {
            "name": name,
            "config": {
                "image": config.image,
                "auto_destroy": config.auto_destroy,
                "stop_config": {
                    "timeout": f"{config.stop_timeout}s",
                    "signal": config.stop_signal,
                },
                "restart": {"policy": config.restart_policy},
                "guest": {
                    "cpu_kind": config.cpu_kind,
                    "cpus": config.cpus,
                    "memory_mb": config.memory_mb,
                },
                "env": dict(config.env),
                "metadata": dict(config.metadata),
            },
        }

    async def _post_machine(self, name: str, config: ResourceConfig) -> Resource:
        data = await self._request(
            "POST",
            "/machines",
            operation="create",
            json_body=self._machine_body(name, config),
        )
        resource = self._to_resource(data or {})
        logger.info("Created machine %s (name=%s, state=%s)", resource.id, name, resource.state.value)
        return resource

    async def create(self, name: str, config: ResourceConfig) -> Resource:
        try:
            return await self._post_machine(name, config)
        except ProvisionerError as exc:
            if exc.status not in _NAME_CONFLICT_STATUSES:
                raise
            existing = await find_by_name(self, name)
            if existing is None:
                raise

        if existing.state in REUSABLE_STATES:
            # Another creator won the race for this name; converge on its machine.
            logger.info("Machine name %s already exists, reusing %s", name, existing.id)
            return existing

        # A stopped or stopping machine still holds the name but will never run again.
        logger.info(
            "Machine name %s held by %s machine %s, destroying it",
            name,
            existing.state.value,
            existing.id,
        )
        await self.destroy(existing.id)
        try:
            return await self._post_machine(name, config)
        except ProvisionerError as exc:
            if exc.status not in _NAME_CONFLICT_STATUSES:
                raise
            raise ProvisionerError(
                "create",
                f"name {name} still held by machine {existing.id}",
                resource_id=existing.id,
                status=exc.status,
                retryable=True,
            ) from exc

    async def list(self, states: Iterable[ResourceState] | None = None) -> list[Resource]:
        data = await self._request("GET", "/machines", operation="list")
        if not isinstance(data, list):
            raise ProvisionerError("list", f"unexpected payload type {type(data).__name__}")
        resources = [self._to_resource(item) for item in data if isinstance(item, dict)]
        if states is None:
            return resources
        wanted = set(states)
        return [resource for resource in resources if resource.state in wanted]

    async def stop(self, resource_id: str) -> None:
        try:
            await self._request(
                "POST",
                f"/machines/{resource_id}/stop",
                operation="stop",
                resource_id=resource_id,
            )
        except ResourceNotFoundError:
            logger.debug("Stop of unknown machine %s ignored", resource_id)

    async def destroy(self, resource_id: str) -> None:
        try:
            await self._request(
                "DELETE",
                f"/machines/{resource_id}",
                operation="destroy",
                resource_id=resource_id,
                params={"force": "true"},
            )
        except ResourceNotFoundError:
            logger.debug("Destroy of unknown machine %s ignored", resource_id)

    async def close(self) -> None:
        # Sessions are per request.
        return None
