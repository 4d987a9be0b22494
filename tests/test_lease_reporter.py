"""Tests for the worker-side lease reporter."""

from __future__ import annotations

import asyncio
import logging

import pytest

from swarm.agent.heartbeat import LeaseReporter
from swarm.registry import TerminalStatus
from swarm.shared.errors import RegistryUnavailableError


def _reporter(registry, clock, **kwargs) -> LeaseReporter:
    kwargs.setdefault("heartbeat_interval", 0.01)
    return LeaseReporter(
        registry,
        "s1",
        resource_id="m-1",
        heartbeat_ttl=30,
        status_ttl=3600,
        clock=clock,
        **kwargs,
    )


async def _wait_for(predicate, attempts: int = 200) -> None:
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0.01)
    raise AssertionError("condition not reached")


@pytest.mark.asyncio
async def test_start_writes_lease_immediately(registry, fake_redis, clock) -> None:
    reporter = _reporter(registry, clock, heartbeat_interval=60)
    await reporter.start()

    lease = await registry.get_lease("s1")
    assert lease is not None
    assert lease.resource_id == "m-1"
    assert lease.started_at == clock()
    assert fake_redis.ttl(registry.keys.heartbeat("s1")) == 30
    assert reporter.running

    await reporter.close()
    assert not reporter.running


@pytest.mark.asyncio
async def test_renewals_keep_started_at(registry, clock) -> None:
    reporter = _reporter(registry, clock)
    started = clock()
    await reporter.start()
    clock.advance(100)

    await _wait_for(lambda: reporter.renewals >= 3)
    lease = await registry.get_lease("s1")
    assert lease.started_at == started
    assert lease.renewed_at == started + 100

    await reporter.close()


@pytest.mark.asyncio
async def test_mark_done_retires_lease_and_stops_timer(registry, fake_redis, clock) -> None:
    reporter = _reporter(registry, clock)
    await reporter.start()
    await _wait_for(lambda: reporter.renewals >= 2)

    record = await reporter.mark_done()
    assert record.status is TerminalStatus.DONE
    assert not reporter.running
    assert await registry.get_lease("s1") is None
    assert (await registry.get_status("s1")).status is TerminalStatus.DONE

    # No renewal resurrects the lease after retirement.
    writes = len(fake_redis.writes)
    await asyncio.sleep(0.05)
    assert await registry.get_lease("s1") is None
    assert len(fake_redis.writes) == writes

    await reporter.close()


@pytest.mark.asyncio
async def test_second_terminal_call_is_a_noop(registry, fake_redis, clock) -> None:
    reporter = _reporter(registry, clock)
    await reporter.start()

    first = await reporter.mark_done()
    writes = len(fake_redis.writes)
    again = await reporter.mark_done()
    late_error = await reporter.mark_error("too late")

    assert again is first
    assert late_error is first
    assert len(fake_redis.writes) == writes
    assert (await registry.get_status("s1")).status is TerminalStatus.DONE
    await reporter.close()


@pytest.mark.asyncio
async def test_mark_error_records_message(registry, clock) -> None:
    reporter = _reporter(registry, clock)
    await reporter.start()

    await reporter.mark_error(RuntimeError("model crashed"))

    status = await registry.get_status("s1")
    assert status.is_error
    assert status.message == "model crashed"
    await reporter.close()


@pytest.mark.asyncio
async def test_mark_error_uses_type_name_for_empty_message(registry, clock) -> None:
    reporter = _reporter(registry, clock)
    await reporter.start()

    await reporter.mark_error(TimeoutError())

    assert (await registry.get_status("s1")).message == "TimeoutError"
    await reporter.close()


@pytest.mark.asyncio
async def test_concurrent_terminal_calls_write_once(registry, clock) -> None:
    reporter = _reporter(registry, clock)
    await reporter.start()

    results = await asyncio.gather(reporter.mark_done(), reporter.mark_error("boom"))

    assert results[0] is results[1]
    assert (await registry.get_status("s1")).status is TerminalStatus.DONE
    await reporter.close()


@pytest.mark.asyncio
async def test_renewal_failure_is_not_fatal(registry, fake_redis, clock, caplog) -> None:
    reporter = _reporter(registry, clock)
    await reporter.start()

    with caplog.at_level(logging.WARNING, logger="swarm.agent.heartbeat"):
        fake_redis.fail = True
        await _wait_for(lambda: reporter.failed_renewals >= 2)
    assert reporter.running
    renew_failures = [r for r in caplog.records if getattr(r, "operation", None) == "renew"]
    assert renew_failures
    assert renew_failures[0].session_id == "s1"
    assert renew_failures[0].resource_id == "m-1"

    fake_redis.fail = False
    renewals = reporter.renewals
    await _wait_for(lambda: reporter.renewals > renewals)
    assert await registry.get_lease("s1") is not None
    await reporter.close()


@pytest.mark.asyncio
async def test_terminal_write_failure_propagates(registry, fake_redis, clock) -> None:
    reporter = _reporter(registry, clock)
    await reporter.start()
    fake_redis.fail = True

    with pytest.raises(RegistryUnavailableError):
        await reporter.mark_done()

    assert reporter.terminal is None
    assert not reporter.running
    fake_redis.fail = False
    await reporter.close()


@pytest.mark.asyncio
async def test_close_is_idempotent_and_releases_registry(registry, fake_redis, clock) -> None:
    reporter = _reporter(registry, clock)
    await reporter.start()
    await reporter.mark_done()

    await reporter.close()
    await reporter.close()

    assert fake_redis.closed == 1
    # A closed reporter does not start again.
    await reporter.start()
    assert not reporter.running


@pytest.mark.asyncio
async def test_context_manager(registry, fake_redis, clock) -> None:
    async with _reporter(registry, clock, close_registry=False) as reporter:
        assert reporter.running
        await reporter.mark_done()

    assert fake_redis.closed == 0
    assert not reporter.running
