"""
Tests for the session reaper.

Covers:
- decision priority (status > missing lease > wall-clock budget)
- heartbeat loss, completion and timeout reclamation
- startup grace before the first heartbeat is due
- stop failures are retried without blocking registry cleanup
- foreign machines and unreachable registry reads
- the background loop lifecycle
"""

from __future__ import annotations

import asyncio
import logging

import pytest

from swarm.control_plane.orchestrator import SessionOrchestrator
from swarm.control_plane.reaper import ReclaimReason, SessionReaper, decide
from swarm.provisioner.base import ResourceConfig, ResourceState
from swarm.registry import Lease, SessionMapping, StatusRecord
from swarm.shared.errors import ProvisionerError
from swarm.utils import epoch_to_iso


def _reaper(registry, provisioner, clock, **kwargs) -> SessionReaper:
    return SessionReaper(
        registry=registry,
        provisioner=provisioner,
        max_turn_timeout=kwargs.pop("max_turn_timeout", 600),
        poll_interval_seconds=kwargs.pop("poll_interval_seconds", 30.0),
        clock=clock,
        **kwargs,
    )


async def _machine(provisioner, session_id: str, **config):
    return await provisioner.create(f"session-{session_id}", ResourceConfig(**config))


class FailingStopProvisioner:
    """Wraps a provisioner and fails the first ``failures`` stop calls."""

    def __init__(self, inner, failures: int = 1, retryable: bool = True) -> None:
        self.inner = inner
        self.failures = failures
        self.retryable = retryable
        self.stop_attempts = 0

    async def create(self, name, config):
        return await self.inner.create(name, config)

    async def list(self, states=None):
        return await self.inner.list(states)

    async def stop(self, resource_id):
        self.stop_attempts += 1
        if self.failures > 0:
            self.failures -= 1
            raise ProvisionerError(
                "stop", "platform unavailable", resource_id=resource_id,
                status=503, retryable=self.retryable,
            )
        await self.inner.stop(resource_id)

    async def destroy(self, resource_id):
        await self.inner.destroy(resource_id)

    async def close(self):
        await self.inner.close()


# =============================================================================
# decide()
# =============================================================================
def test_terminal_status_wins_over_everything() -> None:
    lease = Lease("m-1", started_at=0.0)
    assert decide(StatusRecord.done(), lease, 10_000.0, 600) is ReclaimReason.TASK_DONE
    assert decide(StatusRecord.error("x"), None, 0.0, 600) is ReclaimReason.TASK_DONE


def test_missing_lease_means_heartbeat_lost() -> None:
    assert decide(None, None, 0.0, 600) is ReclaimReason.HEARTBEAT_LOST


def test_budget_is_strictly_exceeded() -> None:
    lease = Lease("m-1", started_at=100.0)
    assert decide(None, lease, 700.0, 600) is None
    assert decide(None, lease, 700.5, 600) is ReclaimReason.TIMEOUT


def test_missing_lease_is_tolerated_during_startup_grace() -> None:
    assert decide(None, None, 130.0, 600, provisioned_at=100.0, startup_grace=30.0) is None
    assert decide(None, None, 130.5, 600, provisioned_at=100.0, startup_grace=30.0) is ReclaimReason.HEARTBEAT_LOST
    # Unknown machine age gets no grace.
    assert decide(None, None, 130.0, 600, provisioned_at=None, startup_grace=30.0) is ReclaimReason.HEARTBEAT_LOST


# =============================================================================
# Sweeps
# =============================================================================
@pytest.mark.asyncio
async def test_empty_sweep_writes_nothing(registry, provisioner, fake_redis, clock) -> None:
    reaper = _reaper(registry, provisioner, clock)
    report = await reaper.sweep()

    assert report.inspected == 0
    assert report.reclaimed == []
    assert fake_redis.writes == []
    assert provisioner.count("stop") == 0
    assert reaper.sweeps == 1


@pytest.mark.asyncio
async def test_healthy_session_is_left_alone(registry, provisioner, fake_redis, clock) -> None:
    machine = await _machine(provisioner, "s1")
    await registry.put_lease("s1", Lease(machine.id, started_at=clock()), 30)
    writes_before = list(fake_redis.writes)

    report = await _reaper(registry, provisioner, clock).sweep()

    assert report.untouched == ["s1"]
    assert provisioner.count("stop") == 0
    assert fake_redis.writes == writes_before


@pytest.mark.asyncio
async def test_heartbeat_loss_reclaims_after_ttl(registry, provisioner, clock) -> None:
    machine = await _machine(provisioner, "s1")
    started = clock()
    reaper = _reaper(registry, provisioner, clock)

    # Heartbeats at t=0 and t=20, then the worker dies.
    await registry.put_lease("s1", Lease(machine.id, started_at=started), 30)
    clock.advance(20)
    await registry.put_lease("s1", Lease(machine.id, started_at=started), 30)

    clock.advance(25)
    report = await reaper.sweep()
    assert report.untouched == ["s1"]

    clock.advance(5.5)
    report = await reaper.sweep()
    assert [item.reason for item in report.reclaimed] == [ReclaimReason.HEARTBEAT_LOST]
    assert report.reclaimed[0].stopped is True
    assert provisioner.resources[machine.id].state is ResourceState.DESTROYED


@pytest.mark.asyncio
async def test_completed_session_is_reclaimed_and_purged(registry, provisioner, clock) -> None:
    machine = await _machine(provisioner, "s1")
    await registry.put_lease("s1", Lease(machine.id, started_at=clock()), 30)
    await registry.retire_lease("s1", StatusRecord.done(), 3600)

    report = await _reaper(registry, provisioner, clock).sweep()

    assert [item.reason for item in report.reclaimed] == [ReclaimReason.TASK_DONE]
    assert await registry.get_status("s1") is None
    assert await registry.get_mapping("s1") is None

    # The machine is gone, so the next sweep has nothing to do.
    report = await _reaper(registry, provisioner, clock).sweep()
    assert report.inspected == 0


@pytest.mark.asyncio
async def test_timeout_overrides_healthy_heartbeat(registry, provisioner, clock) -> None:
    machine = await _machine(provisioner, "s1")
    started = clock()
    reaper = _reaper(registry, provisioner, clock)

    clock.advance(600)
    await registry.put_lease("s1", Lease(machine.id, started_at=started), 30)
    report = await reaper.sweep()
    assert report.untouched == ["s1"]

    clock.advance(1)
    await registry.put_lease("s1", Lease(machine.id, started_at=started), 30)
    report = await reaper.sweep()
    assert [item.reason for item in report.reclaimed] == [ReclaimReason.TIMEOUT]
    assert await registry.get_lease("s1") is None


@pytest.mark.asyncio
async def test_stop_failure_still_purges_and_retries(registry, provisioner, clock) -> None:
    machine = await _machine(provisioner, "s1")
    flaky = FailingStopProvisioner(provisioner, failures=1)
    await registry.retire_lease("s1", StatusRecord.done(), 3600)
    reaper = _reaper(registry, flaky, clock)

    report = await reaper.sweep()
    outcome = report.reclaimed[0]
    assert outcome.stopped is False
    assert outcome.retryable is True
    assert "platform unavailable" in outcome.error
    assert await registry.get_status("s1") is None
    assert provisioner.resources[machine.id].is_live

    # Keys are gone, so the next sweep sees a lost heartbeat and stops it.
    report = await reaper.sweep()
    assert [item.reason for item in report.reclaimed] == [ReclaimReason.HEARTBEAT_LOST]
    assert report.reclaimed[0].stopped is True
    assert flaky.stop_attempts == 2
    assert not provisioner.resources[machine.id].is_live


@pytest.mark.asyncio
async def test_foreign_machines_are_ignored(registry, provisioner, clock) -> None:
    await provisioner.create("database-primary", ResourceConfig())
    await provisioner.create("session-", ResourceConfig())

    report = await _reaper(registry, provisioner, clock).sweep()

    assert report.ignored == 2
    assert report.inspected == 0
    assert provisioner.count("stop") == 0


@pytest.mark.asyncio
async def test_stopped_machines_are_not_listed(registry, provisioner, clock) -> None:
    machine = await _machine(provisioner, "s1", auto_destroy=False)
    await provisioner.stop(machine.id)

    report = await _reaper(registry, provisioner, clock).sweep()

    assert report.inspected == 0
    assert provisioner.count("stop") == 1


@pytest.mark.asyncio
async def test_unreachable_registry_skips_without_stopping(registry, provisioner, fake_redis, clock) -> None:
    await _machine(provisioner, "s1")
    fake_redis.fail = True

    report = await _reaper(registry, provisioner, clock).sweep()

    assert report.skipped == ["s1"]
    assert report.reclaimed == []
    assert provisioner.count("stop") == 0


@pytest.mark.asyncio
async def test_malformed_status_is_treated_as_absent(registry, provisioner, clock) -> None:
    machine = await _machine(provisioner, "s1")
    await registry.put_lease("s1", Lease(machine.id, started_at=clock()), 30)
    await registry.set_with_ttl(registry.keys.status("s1"), "{not json", 3600)

    report = await _reaper(registry, provisioner, clock).sweep()

    assert report.untouched == ["s1"]


@pytest.mark.asyncio
async def test_explicit_destroy(registry, provisioner, clock) -> None:
    machine = await _machine(provisioner, "s1", auto_destroy=False)

    report = await _reaper(registry, provisioner, clock, explicit_destroy=True).sweep()

    assert report.reclaimed[0].stopped is True
    assert provisioner.count("destroy") == 1
    assert provisioner.resources[machine.id].state is ResourceState.DESTROYED


@pytest.mark.asyncio
async def test_sessions_are_evaluated_independently(registry, provisioner, clock) -> None:
    alive = await _machine(provisioner, "alive")
    await _machine(provisioner, "dead")
    await registry.put_lease("alive", Lease(alive.id, started_at=clock()), 30)

    report = await _reaper(registry, provisioner, clock).sweep()

    assert report.untouched == ["alive"]
    assert [item.session_id for item in report.reclaimed] == ["dead"]


@pytest.mark.asyncio
async def test_fresh_session_survives_until_first_heartbeat_is_due(registry, provisioner, clock) -> None:
    orchestrator = SessionOrchestrator(
        registry=registry,
        provisioner=provisioner,
        clock=clock,
        sleep=clock.sleep,
    )
    mapping = await orchestrator.get_or_create_session("s1")
    reaper = _reaper(registry, provisioner, clock, startup_grace=30)

    clock.advance(1)
    report = await reaper.sweep()
    assert report.untouched == ["s1"]
    assert provisioner.resources[mapping.resource_id].is_live

    clock.advance(30)
    report = await reaper.sweep()
    assert [item.reason for item in report.reclaimed] == [ReclaimReason.HEARTBEAT_LOST]
    assert not provisioner.resources[mapping.resource_id].is_live


@pytest.mark.asyncio
async def test_startup_grace_falls_back_to_mapping_age(registry, provisioner, clock) -> None:
    machine = await _machine(provisioner, "s1")
    mapping = SessionMapping("s1", machine.id, created_at=epoch_to_iso(clock()))
    await registry.put_mapping(mapping, 900)
    reaper = _reaper(registry, provisioner, clock, startup_grace=30)

    clock.advance(10)
    assert (await reaper.sweep()).untouched == ["s1"]

    clock.advance(25)
    report = await reaper.sweep()
    assert [item.reason for item in report.reclaimed] == [ReclaimReason.HEARTBEAT_LOST]


@pytest.mark.asyncio
async def test_stop_failure_log_carries_session_fields(registry, provisioner, clock, caplog) -> None:
    machine = await _machine(provisioner, "s1")
    await registry.retire_lease("s1", StatusRecord.done(), 3600)
    reaper = _reaper(registry, FailingStopProvisioner(provisioner, failures=1), clock)

    with caplog.at_level(logging.WARNING, logger="swarm.control.reaper"):
        await reaper.sweep()

    failures = [r for r in caplog.records if getattr(r, "operation", None) == "stop"]
    assert len(failures) == 1
    assert failures[0].session_id == "s1"
    assert failures[0].resource_id == machine.id
    assert failures[0].retryable is True
    reclaiming = [r for r in caplog.records if getattr(r, "reason", None) == "task_done"]
    assert reclaiming and reclaiming[0].session_id == "s1"


# =============================================================================
# Loop lifecycle
# =============================================================================
@pytest.mark.asyncio
async def test_start_sweeps_immediately_and_stop_is_clean(registry, provisioner, clock) -> None:
    await _machine(provisioner, "s1")
    reaper = _reaper(registry, provisioner, clock, poll_interval_seconds=0.01)

    await reaper.start()
    assert reaper.running
    for _ in range(100):
        if reaper.sweeps >= 2:
            break
        await asyncio.sleep(0.01)
    await reaper.stop()

    assert not reaper.running
    assert reaper.sweeps >= 2
    assert provisioner.count("stop") == 1


@pytest.mark.asyncio
async def test_stop_without_start(registry, provisioner, clock) -> None:
    reaper = _reaper(registry, provisioner, clock)
    await reaper.stop()
    assert not reaper.running
