"""
SWARM API Schemas - Pydantic models for FastAPI endpoints.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


# ============================================================================
# Sessions
# ============================================================================


class CreateSessionRequest(BaseModel):
    """Request to create (or reuse) a session."""

    session_id: str | None = Field(None, description="Session id; generated when omitted")
    params: dict[str, str] = Field(
        default_factory=dict,
        description="Passed to the worker as upper-cased environment variables",
    )


class SessionMappingResponse(BaseModel):
    """Session → machine mapping."""

    session_id: str
    resource_id: str
    resource_name: str = ""
    created_at: str


class SessionResponse(BaseModel):
    """Current view of a session."""

    session_id: str
    status: str = Field(..., description="pending | running | done | error")
    resource_id: str | None = None
    created_at: str | None = None
    message: str = ""


class WaitSessionRequest(BaseModel):
    """Blocking wait for a terminal status."""

    timeout_seconds: float = Field(60.0, gt=0, le=3600, description="Maximum wait")


class StatusResponse(BaseModel):
    """Terminal status of a session."""

    session_id: str
    status: str = Field(..., description="done | error")
    message: str = ""
    finished_at: float | None = None


class DestroySessionResponse(BaseModel):
    session_id: str
    destroyed: bool


# ============================================================================
# Reaper
# ============================================================================


class ReclamationModel(BaseModel):
    session_id: str
    resource_id: str
    reason: str
    stopped: bool
    error: str = ""
    retryable: bool = False


class SweepResponse(BaseModel):
    """Result of a manually triggered sweep."""

    inspected: int
    ignored: int
    untouched: list[str] = Field(default_factory=list)
    skipped: list[str] = Field(default_factory=list)
    reclaimed: list[ReclamationModel] = Field(default_factory=list)


# ============================================================================
# Health
# ============================================================================


class HealthResponse(BaseModel):
    status: str = Field(..., description="ok | degraded")
    version: str
    registry: bool
    reaper_running: bool
    reaper_sweeps: int = 0
    details: dict[str, Any] = Field(default_factory=dict)
