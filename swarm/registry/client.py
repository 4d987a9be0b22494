"""
SWARM Registry - Client

Thin typed accessor over the shared key-value store (Redis).

Every operation is atomic at the key level; no cross-key locking is used.
Connectivity failures surface as RegistryUnavailableError and are never
buffered or retried here: callers own their retry policy.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from redis import asyncio as aioredis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from swarm.registry.records import Lease, RegistryKeys, SessionMapping, StatusRecord
from swarm.shared.errors import RegistryUnavailableError

logger = logging.getLogger("swarm.registry")


class RegistryClient:
    """Registry accessor bound to one Redis connection pool and key prefix."""

    def __init__(self, redis: Any, keys: RegistryKeys | None = None) -> None:
        self.redis = redis
        self.keys = keys or RegistryKeys()
        self._closed = False

    @classmethod
    def from_url(cls, url: str, prefix: str = "agent") -> "RegistryClient":
        redis = aioredis.from_url(url, decode_responses=True)
        return cls(redis, RegistryKeys(prefix))

    @asynccontextmanager
    async def _guard(self, operation: str, key: str = "") -> AsyncIterator[None]:
        try:
            yield
        except (RedisConnectionError, RedisTimeoutError, OSError) as exc:
            raise RegistryUnavailableError(operation, key, str(exc)) from exc

    # =========================================================================
    # Raw key operations
    # =========================================================================
    async def set_with_ttl(self, key: str, value: str, ttl_seconds: int) -> None:
        async with self._guard("set", key):
            await self.redis.set(key, value, ex=int(ttl_seconds))

    async def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        """SET NX EX; True when this call created the key."""
        async with self._guard("set_nx", key):
            created = await self.redis.set(key, value, ex=int(ttl_seconds), nx=True)
        return bool(created)

    async def get(self, key: str) -> str | None:
        async with self._guard("get", key):
            value = await self.redis.get(key)
        if isinstance(value, bytes):
            return value.decode("utf-8")
        return value

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        async with self._guard("delete", ",".join(keys)):
            return int(await self.redis.delete(*keys))

    async def ping(self) -> bool:
        async with self._guard("ping"):
            return bool(await self.redis.ping())

    async def close(self) -> None:
        """Release the connection pool. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        await self.redis.aclose()

    # =========================================================================
    # Lease
    # =========================================================================
    async def put_lease(self, session_id: str, lease: Lease, ttl_seconds: int) -> None:
        await self.set_with_ttl(self.keys.heartbeat(session_id), lease.to_json(), ttl_seconds)

    async def get_lease(self, session_id: str) -> Lease | None:
        raw = await self.get(self.keys.heartbeat(session_id))
        if raw is None:
            return None
        return Lease.from_json(raw)

    # =========================================================================
    # Status record
    # =========================================================================
    async def put_status(self, session_id: str, record: StatusRecord, ttl_seconds: int) -> None:
        await self.set_with_ttl(self.keys.status(session_id), record.to_json(), ttl_seconds)

    async def get_status(self, session_id: str) -> StatusRecord | None:
        raw = await self.get(self.keys.status(session_id))
        if raw is None:
            return None
        return StatusRecord.from_json(raw)

    async def retire_lease(self, session_id: str, record: StatusRecord, ttl_seconds: int) -> None:
        """Delete the lease and write the terminal status in one MULTI/EXEC."""
        heartbeat_key = self.keys.heartbeat(session_id)
        status_key = self.keys.status(session_id)
        async with self._guard("retire_lease", status_key):
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.delete(heartbeat_key)
                pipe.set(status_key, record.to_json(), ex=int(ttl_seconds))
                await pipe.execute()

    # =========================================================================
    # Session → resource mapping
    # =========================================================================
    async def put_mapping(self, mapping: SessionMapping, ttl_seconds: int) -> None:
        await self.set_with_ttl(
            self.keys.resource(mapping.session_id), mapping.to_json(), ttl_seconds
        )

    async def get_mapping(self, session_id: str) -> SessionMapping | None:
        raw = await self.get(self.keys.resource(session_id))
        if raw is None:
            return None
        return SessionMapping.from_json(raw)

    async def claim_mapping(self, mapping: SessionMapping, ttl_seconds: int) -> SessionMapping:
        """
        Write the mapping unless one already exists.

        Returns the mapping that is in the registry afterwards, which is the
        caller's own when it won and the earlier writer's otherwise.
        """
        key = self.keys.resource(mapping.session_id)
        if await self.set_if_absent(key, mapping.to_json(), ttl_seconds):
            return mapping
        existing = await self.get_mapping(mapping.session_id)
        if existing is None:
            # Expired between SET NX and GET; the fresh write is as good as any.
            await self.put_mapping(mapping, ttl_seconds)
            return mapping
        return existing

    # =========================================================================
    # Cleanup
    # =========================================================================
    async def purge_session(self, session_id: str) -> int:
        """Delete lease, status and mapping keys; returns how many existed."""
        deleted = await self.delete(*self.keys.all_for(session_id))
        logger.debug("Purged registry keys (session_id=%s, deleted=%d).", session_id, deleted)
        return deleted
