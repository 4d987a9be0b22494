"""
SWARM session reaper.

Background task that reconciles live machines against the registry and
reclaims the ones that are finished, dead, or over their time budget.

The loop reschedules itself only after a sweep completes, so sweeps never
overlap. Within a sweep each machine is evaluated concurrently; a decision
touches only that machine's own session keys.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from swarm.provisioner.base import LIVE_STATES, Provisioner, Resource
from swarm.registry import Lease, RegistryClient, StatusRecord
from swarm.shared.errors import RegistryError, RegistryUnavailableError
from swarm.shared.settings import SwarmSettings
from swarm.utils import Clock, epoch_now, iso_to_epoch

logger = logging.getLogger("swarm.control.reaper")


class ReclaimReason(str, Enum):
    """Why a machine was reclaimed."""
    TASK_DONE = "task_done"
    HEARTBEAT_LOST = "heartbeat_lost"
    TIMEOUT = "timeout"


@dataclass
class Reclamation:
    """Outcome of reclaiming one machine."""

    session_id: str
    resource_id: str
    reason: ReclaimReason
    stopped: bool
    error: str = ""
    retryable: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "resource_id": self.resource_id,
            "reason": self.reason.value,
            "stopped": self.stopped,
            "error": self.error,
            "retryable": self.retryable,
        }


@dataclass
class SweepReport:
    """Summary of one sweep."""

    inspected: int = 0
    ignored: int = 0
    untouched: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    reclaimed: list[Reclamation] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "inspected": self.inspected,
            "ignored": self.ignored,
            "untouched": list(self.untouched),
            "skipped": list(self.skipped),
            "reclaimed": [item.to_dict() for item in self.reclaimed],
        }


def decide(
    status: StatusRecord | None,
    lease: Lease | None,
    now: float,
    max_turn_timeout: float,
    *,
    provisioned_at: float | None = None,
    startup_grace: float = 0.0,
) -> ReclaimReason | None:
    """
    Reclamation decision for one session; first match wins.

    A terminal status always wins. A missing lease means no recent
    heartbeat, unless the machine was provisioned less than
    ``startup_grace`` seconds ago and its worker may not have written the
    first lease yet. A healthy lease does not exempt a run from the
    wall-clock budget.
    """
    if status is not None:
        return ReclaimReason.TASK_DONE
    if lease is None:
        if provisioned_at is not None and now - provisioned_at <= startup_grace:
            return None
        return ReclaimReason.HEARTBEAT_LOST
    if lease.elapsed(now) > max_turn_timeout:
        return ReclaimReason.TIMEOUT
    return None


class SessionReaper:
    """Background sweep loop for session machines."""

    def __init__(
        self,
        *,
        registry: RegistryClient,
        provisioner: Provisioner,
        max_turn_timeout: int = 600,
        poll_interval_seconds: float = 30.0,
        resource_prefix: str = "session-",
        explicit_destroy: bool = False,
        startup_grace: float = 30.0,
        clock: Clock = epoch_now,
    ) -> None:
        self.registry = registry
        self.provisioner = provisioner
        self.max_turn_timeout = int(max_turn_timeout)
        self.poll_interval_seconds = float(poll_interval_seconds)
        self.resource_prefix = resource_prefix
        self.explicit_destroy = explicit_destroy
        self.startup_grace = float(startup_grace)
        self.clock = clock
        self.sweeps = 0
        self.last_report: SweepReport | None = None
        self._task: asyncio.Task[None] | None = None
        self._stop = asyncio.Event()
        self._sweep_lock = asyncio.Lock()

    @classmethod
    def from_settings(
        cls,
        settings: SwarmSettings,
        *,
        registry: RegistryClient,
        provisioner: Provisioner,
        clock: Clock = epoch_now,
    ) -> "SessionReaper":
        return cls(
            registry=registry,
            provisioner=provisioner,
            max_turn_timeout=settings.max_turn_timeout,
            poll_interval_seconds=settings.reaper_interval,
            resource_prefix=settings.resource_prefix,
            explicit_destroy=settings.explicit_destroy,
            startup_grace=settings.heartbeat_ttl,
            clock=clock,
        )

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._task = asyncio.create_task(self._run_loop(), name="swarm-session-reaper")
        logger.info(
            "Session reaper started (interval=%ss max_turn_timeout=%ss).",
            self.poll_interval_seconds,
            self.max_turn_timeout,
        )

    async def stop(self) -> None:
        """Stop rescheduling; a sweep already in progress runs to completion."""
        self._stop.set()
        if self._task is not None:
            await self._task
            self._task = None
        logger.info("Session reaper stopped.")

    async def _run_loop(self) -> None:
        while not self._stop.is_set():
            try:
                await self.sweep()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Session reaper sweep error.")
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.poll_interval_seconds)
            except asyncio.TimeoutError:
                pass

    def session_id_for(self, resource: Resource) -> str | None:
        """Session id encoded in the machine name, or None if not ours."""
        if not resource.name.startswith(self.resource_prefix):
            return None
        session_id = resource.name[len(self.resource_prefix):]
        return session_id or None

    async def sweep(self) -> SweepReport:
        """Run one reconciliation pass over all live machines."""
        # Manual sweeps queue behind the scheduled one.
        async with self._sweep_lock:
            return await self._sweep()

    async def _sweep(self) -> SweepReport:
        resources = await self.provisioner.list(LIVE_STATES)
        report = SweepReport()

        owned: list[tuple[Resource, str]] = []
        for resource in resources:
            session_id = self.session_id_for(resource)
            if session_id is None:
                report.ignored += 1
                continue
            owned.append((resource, session_id))
        report.inspected = len(owned)

        results = await asyncio.gather(
            *(self._evaluate(resource, session_id) for resource, session_id in owned),
            return_exceptions=True,
        )
        for (resource, session_id), result in zip(owned, results):
            if isinstance(result, Reclamation):
                report.reclaimed.append(result)
            elif isinstance(result, BaseException):
                report.skipped.append(session_id)
                logger.warning(
                    "Skipped machine this sweep (session_id=%s, resource_id=%s): %s",
                    session_id,
                    resource.id,
                    result,
                    extra={"session_id": session_id, "resource_id": resource.id, "operation": "evaluate"},
                )
            else:
                report.untouched.append(session_id)

        self.sweeps += 1
        self.last_report = report
        logger.info(
            "Sweep complete (live=%d, inspected=%d, reclaimed=%d, skipped=%d).",
            len(resources),
            report.inspected,
            len(report.reclaimed),
            len(report.skipped),
        )
        return report

    async def _read_lease(self, session_id: str) -> Lease | None:
        try:
            return await self.registry.get_lease(session_id)
        except RegistryUnavailableError:
            raise
        except RegistryError as exc:
            logger.warning("Unreadable lease treated as absent (session_id=%s): %s", session_id, exc)
            return None

    async def _read_status(self, session_id: str) -> StatusRecord | None:
        try:
            return await self.registry.get_status(session_id)
        except RegistryUnavailableError:
            raise
        except RegistryError as exc:
            logger.warning("Unreadable status treated as absent (session_id=%s): %s", session_id, exc)
            return None

    async def _provisioned_at(self, resource: Resource, session_id: str) -> float | None:
        """When the session's machine was provisioned, from its metadata or mapping."""
        raw = resource.metadata.get("started_at")
        if raw is not None:
            try:
                return float(raw)
            except (TypeError, ValueError):
                pass
        try:
            mapping = await self.registry.get_mapping(session_id)
        except RegistryUnavailableError:
            raise
        except RegistryError as exc:
            logger.warning("Unreadable mapping ignored (session_id=%s): %s", session_id, exc)
            return None
        if mapping is None:
            return None
        return iso_to_epoch(mapping.created_at)

    async def _evaluate(self, resource: Resource, session_id: str) -> Reclamation | None:
        status, lease = await asyncio.gather(
            self._read_status(session_id),
            self._read_lease(session_id),
        )
        provisioned_at = None
        if status is None and lease is None:
            provisioned_at = await self._provisioned_at(resource, session_id)
        reason = decide(
            status,
            lease,
            self.clock(),
            self.max_turn_timeout,
            provisioned_at=provisioned_at,
            startup_grace=self.startup_grace,
        )
        if reason is None:
            return None
        return await self._reclaim(resource, session_id, reason)

    async def _reclaim(
        self,
        resource: Resource,
        session_id: str,
        reason: ReclaimReason,
    ) -> Reclamation:
        logger.warning(
            "Reclaiming machine (session_id=%s, resource_id=%s, reason=%s).",
            session_id,
            resource.id,
            reason.value,
            extra={"session_id": session_id, "resource_id": resource.id, "reason": reason.value},
        )
        outcome = Reclamation(
            session_id=session_id,
            resource_id=resource.id,
            reason=reason,
            stopped=False,
        )
        try:
            await self.provisioner.stop(resource.id)
            if self.explicit_destroy:
                await self.provisioner.destroy(resource.id)
            outcome.stopped = True
        except Exception as exc:
            outcome.error = str(exc)
            outcome.retryable = bool(getattr(exc, "retryable", True))
            logger.error(
                "Stop failed, will retry next sweep (session_id=%s, resource_id=%s, "
                "operation=stop, retryable=%s): %s",
                session_id,
                resource.id,
                outcome.retryable,
                exc,
                extra={
                    "session_id": session_id,
                    "resource_id": resource.id,
                    "operation": "stop",
                    "retryable": outcome.retryable,
                },
            )

        # Registry cleanup does not depend on the stop succeeding.
        await self.registry.purge_session(session_id)
        return outcome
