"""
SWARM — In-Memory Provisioner

A provisioner that simulates a machine platform inside the current
process without starting anything.

Useful for:
- Testing the control plane
- Local development without platform credentials
"""

from __future__ import annotations

import logging
import uuid
from typing import Iterable

from swarm.provisioner.base import (
    GONE_STATES,
    REUSABLE_STATES,
    Resource,
    ResourceConfig,
    ResourceState,
)

logger = logging.getLogger("swarm.provisioner.memory")


class InMemoryProvisioner:
    """Name-idempotent resource table with platform-like state transitions."""

    def __init__(self, start_state: ResourceState = ResourceState.STARTED) -> None:
        self.start_state = start_state
        self.resources: dict[str, Resource] = {}
        self.configs: dict[str, ResourceConfig] = {}
        self.calls: list[tuple[str, str]] = []
        logger.info("In-memory provisioner initialized")

    async def create(self, name: str, config: ResourceConfig) -> Resource:
        self.calls.append(("create", name))
        for resource in self.resources.values():
            if resource.name != name or resource.state in GONE_STATES:
                continue
            if resource.state in REUSABLE_STATES:
                logger.info("[MEMORY] Reusing resource %s for name %s", resource.id, name)
                return resource
            # Stopped machines never run again; free the name.
            resource.state = ResourceState.DESTROYED
            logger.info("[MEMORY] Replacing stopped resource %s for name %s", resource.id, name)

        resource_id = uuid.uuid4().hex[:14]
        resource = Resource(
            id=resource_id,
            name=name,
            state=self.start_state,
            metadata=dict(config.metadata),
        )
        self.resources[resource_id] = resource
        self.configs[resource_id] = config
        logger.info("[MEMORY] Created resource %s (name=%s)", resource_id, name)
        return resource

    async def list(self, states: Iterable[ResourceState] | None = None) -> list[Resource]:
        self.calls.append(("list", ""))
        wanted = set(states) if states is not None else None
        return [
            resource
            for resource in self.resources.values()
            if wanted is None or resource.state in wanted
        ]

    async def stop(self, resource_id: str) -> None:
        self.calls.append(("stop", resource_id))
        resource = self.resources.get(resource_id)
        if resource is None or resource.state in GONE_STATES:
            return
        config = self.configs.get(resource_id)
        if config is not None and config.auto_destroy:
            resource.state = ResourceState.DESTROYED
        else:
            resource.state = ResourceState.STOPPED
        logger.info("[MEMORY] Stopped resource %s -> %s", resource_id, resource.state.value)

    async def destroy(self, resource_id: str) -> None:
        self.calls.append(("destroy", resource_id))
        resource = self.resources.get(resource_id)
        if resource is None:
            return
        resource.state = ResourceState.DESTROYED
        logger.info("[MEMORY] Destroyed resource %s", resource_id)

    async def close(self) -> None:
        return None

    def count(self, action: str) -> int:
        return sum(1 for name, _ in self.calls if name == action)
