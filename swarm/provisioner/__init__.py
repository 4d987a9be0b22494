"""
SWARM provisioners: the create/list/stop/destroy contract and its backends.
"""

from __future__ import annotations

from .base import (
    LIVE_STATES,
    REUSABLE_STATES,
    Provisioner,
    Resource,
    ResourceConfig,
    ResourceState,
    find_by_name,
)
from .fly import FlyProvisioner
from .memory import InMemoryProvisioner

from swarm.shared.settings import SwarmSettings


def build_provisioner(settings: SwarmSettings) -> Provisioner:
    """Construct the provisioner selected by ``settings.provisioner``."""
    if settings.provisioner == "memory":
        return InMemoryProvisioner()
    settings.require("fly_api_token", "fly_app_name")
    return FlyProvisioner(
        app_name=settings.fly_app_name,
        api_token=settings.fly_api_token,
        api_base=settings.fly_api_base,
        timeout_seconds=settings.provisioner_timeout,
    )


__all__ = [
    "LIVE_STATES",
    "REUSABLE_STATES",
    "FlyProvisioner",
    "InMemoryProvisioner",
    "Provisioner",
    "Resource",
    "ResourceConfig",
    "ResourceState",
    "build_provisioner",
    "find_by_name",
]
