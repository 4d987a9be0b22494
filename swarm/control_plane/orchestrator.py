"""
SWARM session orchestrator.

Control-plane entry point for sessions:
- deduplicates session creation onto a single machine
- provisions machines through the provisioner
- records the session → machine mapping in the registry
- waits for a session's terminal status
- tears sessions down on request
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from swarm.provisioner.base import Provisioner, ResourceConfig, find_by_name
from swarm.registry import RegistryClient, SessionMapping, StatusRecord
from swarm.shared.errors import ProvisionerError, SessionNotFoundError, SessionTimeoutError
from swarm.shared.settings import SwarmSettings
from swarm.utils import Clock, epoch_now, epoch_to_iso

logger = logging.getLogger("swarm.control.orchestrator")

Sleep = Callable[[float], Awaitable[Any]]


class SessionStatus(str, Enum):
    """Session lifecycle as seen by callers."""
    PENDING = "pending"
    RUNNING = "running"
    DONE = "done"
    ERROR = "error"


@dataclass
class Session:
    """Read-side view of a session assembled from its registry keys."""

    id: str
    status: SessionStatus
    resource_id: str | None = None
    created_at: str | None = None
    message: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "status": self.status.value,
            "resource_id": self.resource_id,
            "created_at": self.created_at,
            "message": self.message,
        }


@dataclass(frozen=True)
class PollPolicy:
    """Interval growth for completion polling: ``interval * backoff``, capped."""

    interval: float = 2.0
    max_interval: float = 2.0
    backoff: float = 1.0

    def next_interval(self, current: float) -> float:
        return min(current * self.backoff, self.max_interval)


class SessionOrchestrator:
    """Creates, inspects, waits on and destroys sessions."""

    def __init__(
        self,
        *,
        registry: RegistryClient,
        provisioner: Provisioner,
        max_turn_timeout: int = 600,
        mapping_grace: int = 300,
        resource_prefix: str = "session-",
        resource_template: ResourceConfig | None = None,
        poll_policy: PollPolicy | None = None,
        clock: Clock = epoch_now,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.registry = registry
        self.provisioner = provisioner
        self.max_turn_timeout = int(max_turn_timeout)
        self.mapping_grace = int(mapping_grace)
        self.resource_prefix = resource_prefix
        self.resource_template = resource_template or ResourceConfig()
        self.poll_policy = poll_policy or PollPolicy()
        self.clock = clock
        self.sleep = sleep

    @classmethod
    def from_settings(
        cls,
        settings: SwarmSettings,
        *,
        registry: RegistryClient,
        provisioner: Provisioner,
        clock: Clock = epoch_now,
        sleep: Sleep = asyncio.sleep,
    ) -> "SessionOrchestrator":
        template = ResourceConfig(
            image=settings.agent_image,
            # The worker's lease timing must match what the reaper assumes.
            env={
                "REDIS_URL": settings.redis_url,
                "SWARM_KEY_PREFIX": settings.key_prefix,
                "SWARM_HEARTBEAT_TTL": str(settings.heartbeat_ttl),
                "SWARM_HEARTBEAT_INTERVAL": str(settings.heartbeat_interval),
                "SWARM_STATUS_TTL": str(settings.status_ttl),
                "SWARM_LOG_LEVEL": settings.log_level,
                "SWARM_LOG_FORMAT": settings.log_format,
            },
            auto_destroy=True,
            stop_timeout=settings.stop_config_timeout,
            cpu_kind=settings.machine_cpu_kind,
            cpus=settings.machine_cpus,
            memory_mb=settings.machine_memory_mb,
        )
        return cls(
            registry=registry,
            provisioner=provisioner,
            max_turn_timeout=settings.max_turn_timeout,
            mapping_grace=settings.mapping_grace,
            resource_prefix=settings.resource_prefix,
            resource_template=template,
            poll_policy=PollPolicy(
                interval=settings.poll_interval,
                max_interval=settings.poll_max_interval,
                backoff=settings.poll_backoff,
            ),
            clock=clock,
            sleep=sleep,
        )

    @property
    def mapping_ttl(self) -> int:
        return self.max_turn_timeout + self.mapping_grace

    def resource_name(self, session_id: str) -> str:
        """Deterministic machine name; concurrent creators converge on it."""
        return f"{self.resource_prefix}{session_id}"

    def _config_for(self, session_id: str, params: dict[str, Any] | None) -> ResourceConfig:
        env = dict(self.resource_template.env)
        # Caller params reach the worker as upper-cased environment variables.
        for key, value in (params or {}).items():
            env[str(key).upper()] = str(value)
        started_at = str(self.clock())
        env["SESSION_ID"] = session_id
        env["STARTED_AT"] = started_at
        metadata = dict(self.resource_template.metadata)
        metadata["session_id"] = session_id
        metadata["started_at"] = started_at
        return replace(self.resource_template, env=env, metadata=metadata)

    # =========================================================================
    # Create
    # =========================================================================
    async def get_or_create_session(
        self,
        session_id: str,
        params: dict[str, Any] | None = None,
    ) -> SessionMapping:
        """
        Return the session's mapping, provisioning a machine if there is none.

        Two concurrent callers may both miss the mapping. The provisioner
        returns the same machine for the same name, and the mapping write is
        set-if-absent, so both end up with one machine and one mapping.
        """
        if not session_id:
            raise ValueError("session_id must be non-empty")

        existing = await self.registry.get_mapping(session_id)
        if existing is not None:
            logger.info(
                "Session already mapped (session_id=%s, resource_id=%s).",
                session_id,
                existing.resource_id,
            )
            return existing

        name = self.resource_name(session_id)
        try:
            resource = await self.provisioner.create(name, self._config_for(session_id, params))
        except ProvisionerError as exc:
            logger.error(
                "Provisioning failed (session_id=%s, operation=create, retryable=%s): %s",
                session_id,
                exc.retryable,
                exc,
                extra={"session_id": session_id, "operation": "create", "retryable": exc.retryable},
            )
            raise

        mapping = SessionMapping(
            session_id=session_id,
            resource_id=resource.id,
            created_at=epoch_to_iso(self.clock()),
            resource_name=name,
        )
        winner = await self.registry.claim_mapping(mapping, self.mapping_ttl)
        logger.info(
            "Session created (session_id=%s, resource_id=%s, reused=%s).",
            session_id,
            winner.resource_id,
            winner is not mapping,
        )
        return winner

    # =========================================================================
    # Read
    # =========================================================================
    async def get_status(self, session_id: str) -> StatusRecord | None:
        """
        Terminal status, or None while the session is still in flight.

        Raises SessionNotFoundError when the registry knows nothing about it.
        """
        record = await self.registry.get_status(session_id)
        if record is not None:
            return record
        if await self.registry.get_mapping(session_id) is None and (
            await self.registry.get_lease(session_id) is None
        ):
            raise SessionNotFoundError(session_id)
        return None

    async def get_session(self, session_id: str) -> Session:
        mapping = await self.registry.get_mapping(session_id)
        record = await self.registry.get_status(session_id)
        lease = await self.registry.get_lease(session_id)

        if mapping is None and record is None and lease is None:
            raise SessionNotFoundError(session_id)

        resource_id = mapping.resource_id if mapping else (lease.resource_id if lease else None)
        if record is not None:
            status = SessionStatus.ERROR if record.is_error else SessionStatus.DONE
        elif lease is not None:
            status = SessionStatus.RUNNING
        else:
            status = SessionStatus.PENDING
        return Session(
            id=session_id,
            status=status,
            resource_id=resource_id,
            created_at=mapping.created_at if mapping else None,
            message=record.message if record else "",
        )

    # =========================================================================
    # Wait
    # =========================================================================
    async def wait_for_session(
        self,
        session_id: str,
        timeout_seconds: Optional[float] = None,
    ) -> StatusRecord:
        """
        Poll the status record until it is terminal or the deadline passes.

        The loop never sleeps past the deadline. Cancelling the awaiting task
        stops the polling.
        """
        timeout = float(self.max_turn_timeout if timeout_seconds is None else timeout_seconds)
        deadline = self.clock() + timeout
        interval = self.poll_policy.interval

        while True:
            record = await self.registry.get_status(session_id)
            if record is not None:
                logger.info(
                    "Session finished (session_id=%s, status=%s).",
                    session_id,
                    record.status.value,
                )
                return record
            remaining = deadline - self.clock()
            if remaining <= 0:
                logger.warning("Timed out waiting for session (session_id=%s, timeout=%ss).", session_id, timeout)
                raise SessionTimeoutError(session_id, timeout)
            await self.sleep(min(interval, remaining))
            interval = self.poll_policy.next_interval(interval)

    # =========================================================================
    # Destroy
    # =========================================================================
    async def destroy_session(self, session_id: str) -> bool:
        """
        Destroy the session's machine and drop its registry keys now.

        Unknown or already destroyed sessions are a no-op. Returns whether
        anything was torn down.
        """
        mapping = await self.registry.get_mapping(session_id)
        resource_id = mapping.resource_id if mapping else None
        if resource_id is None:
            # The mapping may have expired while the machine lives on.
            resource = await find_by_name(self.provisioner, self.resource_name(session_id))
            resource_id = resource.id if resource else None

        try:
            if resource_id:
                await self.provisioner.destroy(resource_id)
        finally:
            deleted = await self.registry.purge_session(session_id)

        torn_down = bool(resource_id) or deleted > 0
        logger.info(
            "Session destroyed (session_id=%s, resource_id=%s, keys_deleted=%d).",
            session_id,
            resource_id or "-",
            deleted,
        )
        return torn_down
