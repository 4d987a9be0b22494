"""
SWARM FastAPI Service - Main Application.

Control-plane API for session machines. Hosts the session orchestrator and
runs the session reaper in the background for the life of the process.

Usage:
    # Development
    uvicorn swarm.api.main:app --reload --host 0.0.0.0 --port 8080

    # Production (single worker: one reaper per control plane)
    uvicorn swarm.api.main:app --host 0.0.0.0 --port 8080

Endpoints:
    POST   /v1/sessions - Create or reuse a session
    GET    /v1/sessions/{id} - Session status
    POST   /v1/sessions/{id}/wait - Block until the session finishes
    DELETE /v1/sessions/{id} - Destroy a session now
    POST   /v1/reaper/sweep - Run one sweep immediately
    GET    /v1/health - Health check
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from swarm import __version__
from swarm.api.routes import app_state, router
from swarm.control_plane import SessionOrchestrator, SessionReaper
from swarm.provisioner import build_provisioner
from swarm.registry import RegistryClient
from swarm.shared.logging import setup_logging
from swarm.shared.settings import load_settings

logger = logging.getLogger("swarm.api")


# ============================================================================
# Lifespan Management
# ============================================================================


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Handles startup and shutdown of components.
    """
    # ---- Startup ----
    settings = load_settings()
    setup_logging(settings.log_level, settings.log_format)
    logger.info("SWARM API starting...")

    app_state.registry = RegistryClient.from_url(settings.redis_url, settings.key_prefix)
    app_state.provisioner = build_provisioner(settings)
    app_state.orchestrator = SessionOrchestrator.from_settings(
        settings,
        registry=app_state.registry,
        provisioner=app_state.provisioner,
    )
    app_state.reaper = SessionReaper.from_settings(
        settings,
        registry=app_state.registry,
        provisioner=app_state.provisioner,
    )
    await app_state.reaper.start()
    logger.info(
        "SWARM API ready (provisioner=%s, reaper_interval=%ss).",
        settings.provisioner,
        settings.reaper_interval,
    )

    yield

    # ---- Shutdown ----
    logger.info("SWARM API shutting down...")

    if app_state.reaper:
        try:
            await app_state.reaper.stop()
        except Exception as e:
            logger.error(f"Error stopping reaper: {e}")

    if app_state.provisioner:
        try:
            await app_state.provisioner.close()
        except Exception as e:
            logger.error(f"Error closing provisioner: {e}")

    if app_state.registry:
        try:
            await app_state.registry.close()
        except Exception as e:
            logger.error(f"Error closing registry: {e}")

    app_state.orchestrator = None
    app_state.reaper = None
    app_state.provisioner = None
    app_state.registry = None
    logger.info("Shutdown complete")


# ============================================================================
# FastAPI Application
# ============================================================================


app = FastAPI(
    title="SWARM Control Plane API",
    description="Session machines: deduplicated creation, completion waits, and reclamation.",
    version=__version__,
    lifespan=lifespan,
)

app.include_router(router)


@app.get("/")
async def root():
    """Root endpoint with API information."""
    return {
        "service": "SWARM Control Plane API",
        "version": __version__,
        "status": "online",
        "docs": "/docs",
    }
