"""
SWARM — dispatch one session and wait for it.

Creates (or reuses) a session machine, blocks until the worker writes its
terminal status, then tears the session down. A reaper runs alongside for
the duration.

Usage:
    SESSION_ID=demo-1 AGENT_COMMAND="echo hello" python scripts/run_session.py
"""

from __future__ import annotations

import asyncio
import logging
import os
import sys
import time

from swarm.control_plane import SessionOrchestrator, SessionReaper
from swarm.provisioner import build_provisioner
from swarm.registry import RegistryClient
from swarm.shared.errors import SwarmError
from swarm.shared.logging import setup_logging
from swarm.shared.settings import load_settings

logger = logging.getLogger("swarm.scripts.run_session")


async def main() -> int:
    settings = load_settings()
    setup_logging(settings.log_level, settings.log_format)

    session_id = os.getenv("SESSION_ID") or f"test-{int(time.time() * 1000)}"
    params = {"agent_command": os.getenv("AGENT_COMMAND", "echo hello")}

    registry = RegistryClient.from_url(settings.redis_url, settings.key_prefix)
    provisioner = build_provisioner(settings)
    orchestrator = SessionOrchestrator.from_settings(settings, registry=registry, provisioner=provisioner)
    reaper = SessionReaper.from_settings(settings, registry=registry, provisioner=provisioner)

    await reaper.start()
    try:
        mapping = await orchestrator.get_or_create_session(session_id, params)
        logger.info("Dispatched session %s on %s", mapping.session_id, mapping.resource_id)
        record = await orchestrator.wait_for_session(session_id)
        logger.info("Session %s finished: %s %s", session_id, record.status.value, record.message)
        return 0 if not record.is_error else 1
    except SwarmError as exc:
        logger.error("Session %s failed: %s", session_id, exc)
        return 1
    finally:
        await orchestrator.destroy_session(session_id)
        await reaper.stop()
        await provisioner.close()
        await registry.close()


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
