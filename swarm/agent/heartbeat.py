"""
SWARM Agent — Lease Reporter

Runs inside each worker alongside the task. Renews the session lease on a
fixed interval and, when the task ends, retires the lease into a terminal
status record so the reaper can reclaim the machine straight away.

Renewal failures are logged and retried on the next tick only: a single
failed write looks the same as network jitter, and the lease TTL is longer
than the renewal interval.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from swarm.registry import Lease, LeaseStatus, RegistryClient, StatusRecord
from swarm.shared.settings import SwarmSettings
from swarm.utils import Clock, epoch_now

logger = logging.getLogger("swarm.agent.heartbeat")


class LeaseReporter:
    """Heartbeat loop bound to one session for the lifetime of a worker."""

    def __init__(
        self,
        registry: RegistryClient,
        session_id: str,
        *,
        resource_id: str = "local",
        heartbeat_interval: float = 10.0,
        heartbeat_ttl: int = 30,
        status_ttl: int = 3600,
        started_at: Optional[float] = None,
        clock: Clock = epoch_now,
        close_registry: bool = True,
    ) -> None:
        self.registry = registry
        self.session_id = session_id
        self.resource_id = resource_id
        self.heartbeat_interval = float(heartbeat_interval)
        self.heartbeat_ttl = int(heartbeat_ttl)
        self.status_ttl = int(status_ttl)
        self.clock = clock
        self.started_at = started_at if started_at is not None else clock()
        self.close_registry = close_registry
        self.renewals = 0
        self.failed_renewals = 0
        self._task: asyncio.Task[None] | None = None
        self._stop = asyncio.Event()
        self._finish_lock = asyncio.Lock()
        self._terminal: StatusRecord | None = None
        self._closed = False

    @classmethod
    def from_settings(
        cls,
        registry: RegistryClient,
        session_id: str,
        settings: SwarmSettings,
        **kwargs,
    ) -> "LeaseReporter":
        return cls(
            registry,
            session_id,
            heartbeat_interval=settings.heartbeat_interval,
            heartbeat_ttl=settings.heartbeat_ttl,
            status_ttl=settings.status_ttl,
            **kwargs,
        )

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def terminal(self) -> StatusRecord | None:
        return self._terminal

    async def start(self) -> None:
        """Write the first lease immediately, then renew every interval."""
        if self.running or self._terminal is not None or self._closed:
            return
        self._stop.clear()
        await self._renew()
        self._task = asyncio.create_task(
            self._run_loop(), name=f"swarm-lease-{self.session_id}"
        )
        logger.info(
            "Lease reporter started (session_id=%s, resource_id=%s, interval=%ss, ttl=%ss).",
            self.session_id,
            self.resource_id,
            self.heartbeat_interval,
            self.heartbeat_ttl,
        )

    async def _run_loop(self) -> None:
        while not self._stop.is_set():
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.heartbeat_interval)
            except asyncio.TimeoutError:
                pass
            if self._stop.is_set():
                return
            await self._renew()

    async def _renew(self) -> None:
        lease = Lease(
            resource_id=self.resource_id,
            started_at=self.started_at,
            status=LeaseStatus.RUNNING,
            renewed_at=self.clock(),
        )
        try:
            await self.registry.put_lease(self.session_id, lease, self.heartbeat_ttl)
        except Exception as exc:
            self.failed_renewals += 1
            logger.warning(
                "Lease renewal failed (session_id=%s, resource_id=%s, operation=renew): %s",
                self.session_id,
                self.resource_id,
                exc,
                extra={
                    "session_id": self.session_id,
                    "resource_id": self.resource_id,
                    "operation": "renew",
                },
            )
            return
        self.renewals += 1

    def stop(self) -> None:
        """Stop scheduling renewals. A renewal already in flight still completes."""
        self._stop.set()

    async def _drain(self) -> None:
        task = self._task
        if task is None:
            return
        try:
            await task
        finally:
            self._task = None

    async def mark_done(self) -> StatusRecord:
        """Retire the lease with a ``done`` status record."""
        return await self._finish(StatusRecord.done(finished_at=self.clock()))

    async def mark_error(self, err: BaseException | str) -> StatusRecord:
        """Retire the lease with an ``error`` status record carrying the message."""
        if isinstance(err, BaseException):
            message = str(err) or type(err).__name__
        else:
            message = str(err)
        return await self._finish(StatusRecord.error(message, finished_at=self.clock()))

    async def _finish(self, record: StatusRecord) -> StatusRecord:
        async with self._finish_lock:
            if self._terminal is not None:
                logger.debug(
                    "Terminal status already written (session_id=%s, status=%s).",
                    self.session_id,
                    self._terminal.status.value,
                )
                return self._terminal

            # The timer must be dead before the lease is deleted, otherwise a
            # late renewal would resurrect the key.
            self.stop()
            await self._drain()

            await self.registry.retire_lease(self.session_id, record, self.status_ttl)
            self._terminal = record
            logger.info(
                "Lease retired (session_id=%s, resource_id=%s, status=%s%s).",
                self.session_id,
                self.resource_id,
                record.status.value,
                f", message={record.message}" if record.message else "",
            )
            return record

    async def close(self) -> None:
        """Stop renewing and release the registry. Safe to call repeatedly."""
        self.stop()
        await self._drain()
        if self._closed:
            return
        self._closed = True
        if self.close_registry:
            await self.registry.close()
        logger.info("Lease reporter closed (session_id=%s).", self.session_id)

    async def __aenter__(self) -> "LeaseReporter":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()
