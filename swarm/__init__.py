"""
SWARM — single-use worker machines with dual-layer recycling.

Each session runs on its own short-lived machine. Machines are reclaimed by
two independent mechanisms:
- workers report liveness and completion into a shared registry (lease)
- a control-plane reaper reconciles live machines against that registry

Main Components:
- swarm.registry: typed records and the Redis-backed registry client
- swarm.agent: lease reporter and one-shot runner (inside the worker)
- swarm.provisioner: machine create/list/stop/destroy backends
- swarm.control_plane: session orchestrator and reaper
- swarm.api: FastAPI surface for the control plane
- swarm.shared: settings, errors, logging

Usage:
    from swarm.shared.settings import load_settings
    from swarm.registry import RegistryClient
    from swarm.control_plane import SessionOrchestrator, SessionReaper
"""

# Version
__version__ = "0.3.0"

from swarm.shared.errors import (
    ProvisionerError,
    RegistryUnavailableError,
    SessionNotFoundError,
    SessionTimeoutError,
    SwarmError,
)
from swarm.shared.settings import SwarmSettings

__all__ = [
    "__version__",
    "SwarmSettings",
    "SwarmError",
    "ProvisionerError",
    "RegistryUnavailableError",
    "SessionNotFoundError",
    "SessionTimeoutError",
]
