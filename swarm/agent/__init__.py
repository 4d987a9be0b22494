"""
SWARM worker-side components: the lease reporter and the one-shot runner.
"""

from .heartbeat import LeaseReporter
from .runner import run_with_lease

__all__ = ["LeaseReporter", "run_with_lease"]
