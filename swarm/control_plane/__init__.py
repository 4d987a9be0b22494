"""
SWARM control-plane primitives.

These modules never run workloads themselves; they provision session
machines, track them through the registry, and reclaim them.
"""

from .orchestrator import PollPolicy, Session, SessionOrchestrator, SessionStatus
from .reaper import ReclaimReason, Reclamation, SessionReaper, SweepReport, decide

__all__ = [
    "PollPolicy",
    "ReclaimReason",
    "Reclamation",
    "Session",
    "SessionOrchestrator",
    "SessionReaper",
    "SessionStatus",
    "SweepReport",
    "decide",
]
