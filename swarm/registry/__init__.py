"""
SWARM registry: typed records and the key-value client shared by workers
and the control plane.
"""

from .client import RegistryClient
from .records import (
    Lease,
    LeaseStatus,
    RegistryKeys,
    SessionMapping,
    StatusRecord,
    TerminalStatus,
)

__all__ = [
    "Lease",
    "LeaseStatus",
    "RegistryClient",
    "RegistryKeys",
    "SessionMapping",
    "StatusRecord",
    "TerminalStatus",
]
