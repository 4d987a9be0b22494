"""
SWARM API Routes - session endpoint handlers.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Any

from fastapi import APIRouter, Depends, HTTPException

from swarm import __version__
from swarm.api import schemas
from swarm.control_plane import SessionOrchestrator, SessionReaper
from swarm.registry import RegistryClient
from swarm.shared.errors import (
    ProvisionerError,
    RegistryUnavailableError,
    SessionNotFoundError,
    SessionTimeoutError,
)

logger = logging.getLogger("swarm.api")

router = APIRouter(prefix="/v1", tags=["swarm"])


@dataclass
class AppState:
    """Application state container."""

    registry: RegistryClient | None = None
    provisioner: Any | None = None
    orchestrator: SessionOrchestrator | None = None
    reaper: SessionReaper | None = None


app_state = AppState()


def get_orchestrator() -> SessionOrchestrator:
    """Dependency: Get shared session orchestrator."""
    if app_state.orchestrator is None:
        raise HTTPException(status_code=503, detail="Orchestrator not initialized")
    return app_state.orchestrator


def get_reaper() -> SessionReaper:
    """Dependency: Get shared session reaper."""
    if app_state.reaper is None:
        raise HTTPException(status_code=503, detail="Reaper not initialized")
    return app_state.reaper


def _http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, SessionNotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, SessionTimeoutError):
        return HTTPException(status_code=504, detail=str(exc))
    if isinstance(exc, RegistryUnavailableError):
        return HTTPException(status_code=503, detail=str(exc))
    if isinstance(exc, ProvisionerError):
        return HTTPException(status_code=502, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc))


@router.get("/health", response_model=schemas.HealthResponse)
async def health() -> schemas.HealthResponse:
    registry_ok = False
    details: dict[str, Any] = {}
    if app_state.registry is not None:
        try:
            registry_ok = await app_state.registry.ping()
        except RegistryUnavailableError as exc:
            details["registry_error"] = str(exc)
    reaper = app_state.reaper
    return schemas.HealthResponse(
        status="ok" if registry_ok else "degraded",
        version=__version__,
        registry=registry_ok,
        reaper_running=bool(reaper and reaper.running),
        reaper_sweeps=reaper.sweeps if reaper else 0,
        details=details,
    )


@router.post("/sessions", response_model=schemas.SessionMappingResponse, status_code=201)
async def create_session(
    request: schemas.CreateSessionRequest,
    orchestrator: SessionOrchestrator = Depends(get_orchestrator),
) -> schemas.SessionMappingResponse:
    session_id = request.session_id or uuid.uuid4().hex[:12]
    try:
        mapping = await orchestrator.get_or_create_session(session_id, request.params)
    except (ProvisionerError, RegistryUnavailableError) as exc:
        raise _http_error(exc) from exc
    return schemas.SessionMappingResponse(**mapping.to_dict())


@router.get("/sessions/{session_id}", response_model=schemas.SessionResponse)
async def get_session(
    session_id: str,
    orchestrator: SessionOrchestrator = Depends(get_orchestrator),
) -> schemas.SessionResponse:
    try:
        session = await orchestrator.get_session(session_id)
    except (SessionNotFoundError, RegistryUnavailableError) as exc:
        raise _http_error(exc) from exc
    return schemas.SessionResponse(
        session_id=session.id,
        status=session.status.value,
        resource_id=session.resource_id,
        created_at=session.created_at,
        message=session.message,
    )


@router.post("/sessions/{session_id}/wait", response_model=schemas.StatusResponse)
async def wait_for_session(
    session_id: str,
    request: schemas.WaitSessionRequest,
    orchestrator: SessionOrchestrator = Depends(get_orchestrator),
) -> schemas.StatusResponse:
    try:
        record = await orchestrator.wait_for_session(session_id, request.timeout_seconds)
    except (SessionTimeoutError, RegistryUnavailableError) as exc:
        raise _http_error(exc) from exc
    return schemas.StatusResponse(
        session_id=session_id,
        status=record.status.value,
        message=record.message,
        finished_at=record.finished_at,
    )


@router.delete("/sessions/{session_id}", response_model=schemas.DestroySessionResponse)
async def destroy_session(
    session_id: str,
    orchestrator: SessionOrchestrator = Depends(get_orchestrator),
) -> schemas.DestroySessionResponse:
    try:
        destroyed = await orchestrator.destroy_session(session_id)
    except (ProvisionerError, RegistryUnavailableError) as exc:
        raise _http_error(exc) from exc
    return schemas.DestroySessionResponse(session_id=session_id, destroyed=destroyed)


@router.post("/reaper/sweep", response_model=schemas.SweepResponse)
async def trigger_sweep(
    reaper: SessionReaper = Depends(get_reaper),
) -> schemas.SweepResponse:
    """Run one sweep now, outside the reaper's own schedule."""
    try:
        report = await reaper.sweep()
    except (ProvisionerError, RegistryUnavailableError) as exc:
        raise _http_error(exc) from exc
    return schemas.SweepResponse(**report.to_dict())
