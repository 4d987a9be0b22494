"""
SWARM Provisioner — Contract

Create / list / stop / destroy of compute resources. The control plane
only depends on this contract; concrete backends live beside it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, Protocol


class ResourceState(str, Enum):
    """Platform-reported resource lifecycle states."""
    CREATED = "created"
    STARTING = "starting"
    STARTED = "started"
    STOPPING = "stopping"
    STOPPED = "stopped"
    DESTROYING = "destroying"
    DESTROYED = "destroyed"

    @classmethod
    def parse(cls, value: Any) -> "ResourceState":
        try:
            return cls(str(value).lower())
        except ValueError:
            # Unknown platform states are treated as not running.
            return cls.STOPPED


LIVE_STATES: frozenset[ResourceState] = frozenset({ResourceState.STARTING, ResourceState.STARTED})
GONE_STATES: frozenset[ResourceState] = frozenset({ResourceState.DESTROYING, ResourceState.DESTROYED})
# A same-name machine in one of these states can be handed to a new caller.
REUSABLE_STATES: frozenset[ResourceState] = frozenset(
    {ResourceState.CREATED, ResourceState.STARTING, ResourceState.STARTED}
)


@dataclass
class Resource:
    """A compute instance as reported by the provisioner."""

    id: str
    name: str
    state: ResourceState
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def is_live(self) -> bool:
        return self.state in LIVE_STATES

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "state": self.state.value,
            "metadata": self.metadata,
        }


@dataclass
class ResourceConfig:
    """
    Creation parameters.

    ``auto_destroy`` and ``stop_timeout`` are advisory hints to the platform;
    the reaper works without them.
    """

    image: str = ""
    env: dict[str, str] = field(default_factory=dict)
    auto_destroy: bool = True
    stop_timeout: int = 30
    stop_signal: str = "SIGTERM"
    restart_policy: str = "no"
    cpu_kind: str = "shared"
    cpus: int = 1
    memory_mb: int = 512
    metadata: dict[str, str] = field(default_factory=dict)


class Provisioner(Protocol):
    """Backend contract consumed by the orchestrator and the reaper."""

    async def create(self, name: str, config: ResourceConfig) -> Resource:
        """Create a resource; creating an existing name returns that resource."""
        ...

    async def list(self, states: Iterable[ResourceState] | None = None) -> list[Resource]:
        """List resources, optionally only those in the given states."""
        ...

    async def stop(self, resource_id: str) -> None:
        """Stop a resource. Stopping an unknown or stopped resource is a no-op."""
        ...

    async def destroy(self, resource_id: str) -> None:
        """Destroy a resource. Destroying an unknown resource is a no-op."""
        ...

    async def close(self) -> None:
        ...


async def find_by_name(
    provisioner: Provisioner,
    name: str,
    states: Iterable[ResourceState] | None = None,
) -> Resource | None:
    """
    Return the newest non-destroyed resource with this name, if any.

    ``states`` narrows the match further, e.g. to REUSABLE_STATES.
    """
    wanted = set(states) if states is not None else None
    for resource in reversed(await provisioner.list()):
        if resource.name != name or resource.state in GONE_STATES:
            continue
        if wanted is None or resource.state in wanted:
            return resource
    return None
