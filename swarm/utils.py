"""
SWARM — shared utility helpers.

Centralises small helpers that would otherwise be duplicated across modules.
"""

from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Callable

# Injectable wall clock (epoch seconds). Loops take one of these so tests
# can drive them with a virtual clock.
Clock = Callable[[], float]


def epoch_now() -> float:
    """Return the current time as epoch seconds."""
    return time.time()


def epoch_to_iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, timezone.utc).isoformat()


def iso_to_epoch(value: str) -> float | None:
    """Parse an ISO 8601 timestamp into epoch seconds; None if unparseable."""
    try:
        parsed = datetime.fromisoformat(value)
    except (TypeError, ValueError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.timestamp()
