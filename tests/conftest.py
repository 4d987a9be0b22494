"""Shared fixtures: virtual clock and an in-memory Redis stand-in for tests."""

from __future__ import annotations

import asyncio
from pathlib import Path
import sys
from typing import Any

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

sys.path.insert(0, str(Path(__file__).parent.parent))

from swarm.provisioner import InMemoryProvisioner
from swarm.registry import RegistryClient, RegistryKeys


class VirtualClock:
    """Epoch-seconds clock advanced explicitly by tests."""

    def __init__(self, start: float = 0.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        await asyncio.sleep(0)


class FakePipeline:
    def __init__(self, redis: "FakeRedis") -> None:
        self.redis = redis
        self.ops: list[tuple[str, tuple[Any, ...], dict[str, Any]]] = []

    async def __aenter__(self) -> "FakePipeline":
        return self

    async def __aexit__(self, *exc_info) -> None:
        self.ops.clear()

    def set(self, *args, **kwargs) -> "FakePipeline":
        self.ops.append(("set", args, kwargs))
        return self

    def delete(self, *args) -> "FakePipeline":
        self.ops.append(("delete", args, {}))
        return self

    async def execute(self) -> list[Any]:
        self.redis._check()
        # Applied without yielding, like MULTI/EXEC.
        results = []
        for op, args, kwargs in self.ops:
            if op == "set":
                results.append(self.redis._set(*args, **kwargs))
            else:
                results.append(self.redis._delete(*args))
        self.ops.clear()
        return results


class FakeRedis:
    """The subset of redis.asyncio.Redis used by RegistryClient, with TTLs on a virtual clock."""

    def __init__(self, clock: VirtualClock) -> None:
        self.clock = clock
        self.data: dict[str, tuple[str, float | None]] = {}
        self.writes: list[tuple[str, str]] = []
        self.fail = False
        self.closed = 0

    def _check(self) -> None:
        if self.fail:
            raise RedisConnectionError("connection refused")

    def _alive(self, key: str) -> bool:
        entry = self.data.get(key)
        if entry is None:
            return False
        _, expires_at = entry
        if expires_at is not None and self.clock() >= expires_at:
            del self.data[key]
            return False
        return True

    def _set(self, name: str, value: str, ex: int | None = None, nx: bool = False) -> bool | None:
        if nx and self._alive(name):
            return None
        expires_at = self.clock() + ex if ex is not None else None
        self.data[name] = (value, expires_at)
        self.writes.append(("set", name))
        return True

    def _delete(self, *names: str) -> int:
        count = 0
        for name in names:
            if self._alive(name):
                count += 1
            self.data.pop(name, None)
            self.writes.append(("delete", name))
        return count

    async def set(self, name: str, value: str, ex: int | None = None, nx: bool = False):
        self._check()
        await asyncio.sleep(0)
        return self._set(name, value, ex=ex, nx=nx)

    async def get(self, name: str) -> str | None:
        self._check()
        await asyncio.sleep(0)
        if not self._alive(name):
            return None
        return self.data[name][0]

    async def delete(self, *names: str) -> int:
        self._check()
        await asyncio.sleep(0)
        return self._delete(*names)

    async def ping(self) -> bool:
        self._check()
        return True

    def pipeline(self, transaction: bool = True) -> FakePipeline:
        return FakePipeline(self)

    async def aclose(self) -> None:
        self.closed += 1

    def ttl(self, name: str) -> float | None:
        if not self._alive(name):
            return None
        expires_at = self.data[name][1]
        return None if expires_at is None else expires_at - self.clock()


@pytest.fixture
def clock() -> VirtualClock:
    return VirtualClock(start=1_000_000.0)


@pytest.fixture
def fake_redis(clock: VirtualClock) -> FakeRedis:
    return FakeRedis(clock)


@pytest.fixture
def registry(fake_redis: FakeRedis) -> RegistryClient:
    return RegistryClient(fake_redis, RegistryKeys("agent"))


@pytest.fixture
def provisioner() -> InMemoryProvisioner:
    return InMemoryProvisioner()
