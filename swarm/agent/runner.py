"""
SWARM Agent — Runner

One-shot worker entry point. Runs a single task under a lease and writes
the terminal status when it ends.

Environment (set by the orchestrator when it provisions the machine):
    SESSION_ID      session this worker belongs to (required)
    AGENT_COMMAND   shell command to run as the task (required)
    STARTED_AT      epoch seconds the session was provisioned
    FLY_MACHINE_ID  resource id reported in the lease

Usage:
    python -m swarm.agent.runner
"""

from __future__ import annotations

import asyncio
import logging
import os
import sys
from typing import Any, Awaitable, Callable

from swarm.agent.heartbeat import LeaseReporter
from swarm.registry import RegistryClient
from swarm.shared.errors import SwarmError
from swarm.shared.logging import setup_logging
from swarm.shared.settings import load_settings

logger = logging.getLogger("swarm.agent.runner")


class TaskFailedError(SwarmError):
    """Raised when the worker's task exits unsuccessfully."""
    def __init__(self, returncode: int, stderr: str = ""):
        self.returncode = returncode
        self.stderr = stderr
        detail = f": {stderr.strip()[-500:]}" if stderr.strip() else ""
        super().__init__(f"Task exited with code {returncode}{detail}")


async def run_with_lease(
    reporter: LeaseReporter,
    task: Callable[[], Awaitable[Any]],
) -> Any:
    """
    Run ``task`` while ``reporter`` keeps the lease alive.

    Success writes ``done``; any exception, cancellation included, writes
    ``error`` and is re-raised. A failure to write the error status is
    logged and never replaces the task's own exception. The reporter is
    always closed.
    """
    await reporter.start()
    try:
        result = await task()
    except BaseException as exc:
        logger.error(
            "Task failed (session_id=%s): %s",
            reporter.session_id,
            str(exc) or type(exc).__name__,
            extra={"session_id": reporter.session_id, "operation": "task"},
        )
        try:
            await reporter.mark_error(exc)
        except Exception as write_exc:
            logger.error(
                "Could not record error status (session_id=%s, resource_id=%s, operation=mark_error): %s",
                reporter.session_id,
                reporter.resource_id,
                write_exc,
                extra={
                    "session_id": reporter.session_id,
                    "resource_id": reporter.resource_id,
                    "operation": "mark_error",
                },
            )
        raise
    else:
        await reporter.mark_done()
        return result
    finally:
        await reporter.close()


async def run_command(command: str) -> str:
    """Run a shell command and return its stdout; raise on non-zero exit."""
    proc = await asyncio.create_subprocess_shell(
        command,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    stdout, stderr = await proc.communicate()
    if proc.returncode != 0:
        raise TaskFailedError(proc.returncode, stderr.decode("utf-8", "replace"))
    return stdout.decode("utf-8", "replace")


def _parse_started_at(raw: str | None) -> float | None:
    if not raw:
        return None
    try:
        return float(raw)
    except ValueError:
        logger.warning("Ignoring invalid STARTED_AT=%r", raw)
        return None


async def main() -> int:
    settings = load_settings()
    setup_logging(settings.log_level, settings.log_format)

    session_id = os.environ.get("SESSION_ID", "")
    command = os.environ.get("AGENT_COMMAND", "")
    if not session_id or not command:
        logger.error("SESSION_ID and AGENT_COMMAND must be set")
        return 2

    registry = RegistryClient.from_url(settings.redis_url, settings.key_prefix)
    reporter = LeaseReporter.from_settings(
        registry,
        session_id,
        settings,
        resource_id=os.environ.get("FLY_MACHINE_ID", "local"),
        started_at=_parse_started_at(os.environ.get("STARTED_AT")),
    )

    logger.info("Worker started (session_id=%s)", session_id)
    try:
        output = await run_with_lease(reporter, lambda: run_command(command))
    except Exception as exc:
        logger.error("Worker failed (session_id=%s): %s", session_id, exc)
        return 1
    sys.stdout.write(output)
    logger.info("Worker finished (session_id=%s)", session_id)
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
