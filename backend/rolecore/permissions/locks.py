"""
Per-tenant mutual exclusion for role graph and assignment mutations.

Reads never take these locks. Different tenants never share a lock.
"""
import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Protocol

import redis.asyncio as aioredis

from rolecore.core.config import settings


class TenantLocks(Protocol):

    def hold(self, tenant_id: int):
        """Async context manager serializing mutations of one tenant."""
        ...


class LocalTenantLocks:
    """asyncio locks for a single-process deployment."""

    def __init__(self):
        self._locks: dict[int, asyncio.Lock] = {}

    def _lock_for(self, tenant_id: int) -> asyncio.Lock:
        # No await between lookup and insert, so this cannot race.
        lock = self._locks.get(tenant_id)
        if lock is None:
            lock = self._locks[tenant_id] = asyncio.Lock()
        return lock

    @asynccontextmanager
    async def hold(self, tenant_id: int) -> AsyncIterator[None]:
        async with self._lock_for(tenant_id):
            yield


class RedisTenantLocks:
    """Redis locks so several worker processes share one mutation scope per tenant.

    The lease expires after `ttl_seconds` so a crashed holder cannot wedge the
    tenant. The lease is not extended while the block runs: a mutation that
    outlives it may overlap with the next holder, and leaving the block then
    raises redis.exceptions.LockNotOwnedError. Keep TENANT_LOCK_TTL_SECONDS
    well above the slowest mutation. Waiting for the lock has no timeout.
    """

    def __init__(self, client: aioredis.Redis, ttl_seconds: int, prefix: str = "rolecore:tenant-lock:"):
        self._client = client
        self._ttl = ttl_seconds
        self._prefix = prefix

    @asynccontextmanager
    async def hold(self, tenant_id: int) -> AsyncIterator[None]:
        async with self._client.lock(f"{self._prefix}{tenant_id}", timeout=self._ttl):
            yield


def build_tenant_locks() -> TenantLocks:
    if settings.TENANT_LOCK_BACKEND == "redis":
        client = aioredis.Redis(
            host=settings.REDIS_HOST,
            port=settings.REDIS_PORT,
            password=settings.REDIS_PASSWORD or None,
            decode_responses=True,
        )
        return RedisTenantLocks(client, settings.TENANT_LOCK_TTL_SECONDS)
    return LocalTenantLocks()
