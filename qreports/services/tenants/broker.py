from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from sqlalchemy.engine import URL
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from qreports.core.config import Settings, get_settings
from qreports.core.errors import UpstreamError
from qreports.domain.identity import DbCredential, TenantConnectionInfo
from qreports.services.telemetry import increment_counter, set_gauge


logger = logging.getLogger(__name__)

EngineFactory = Callable[[TenantConnectionInfo, DbCredential], Awaitable[AsyncEngine]]


@dataclass(frozen=True)
class PoolKey:
    host: str
    port: int
    database: str
    user: str

    @classmethod
    def build(cls, info: TenantConnectionInfo, credential: DbCredential) -> "PoolKey":
        return cls(host=info.host, port=int(info.port), database=info.database, user=credential.user)

    def __str__(self) -> str:
        return f"{self.host}:{self.port}:{self.database}:{self.user}"


def _connect_args(driver: str, timeout_s: int) -> dict[str, Any]:
    # Each async driver names its connect deadline differently.
    if driver.endswith("aiomysql") or driver.endswith("asyncmy"):
        return {"connect_timeout": timeout_s}
    if driver.endswith("asyncpg"):
        return {"timeout": timeout_s}
    return {}


def build_tenant_url(info: TenantConnectionInfo, credential: DbCredential, settings: Settings) -> URL:
    # Never point a tenant pool at the registry database itself.
    database = info.database if info.database and info.database != settings.tenant_db_excluded_name else None
    return URL.create(
        drivername=settings.tenant_db_driver,
        username=credential.user,
        password=credential.password,
        host=info.host,
        port=int(info.port),
        database=database,
    )


async def create_tenant_engine(info: TenantConnectionInfo, credential: DbCredential) -> AsyncEngine:
    settings = get_settings()
    return create_async_engine(
        build_tenant_url(info, credential, settings),
        pool_size=max(1, settings.tenant_pool_size),
        max_overflow=0,
        pool_timeout=settings.tenant_pool_connect_timeout_s,
        pool_recycle=settings.tenant_pool_recycle_s,
        pool_pre_ping=True,
        connect_args=_connect_args(settings.tenant_db_driver, settings.tenant_pool_connect_timeout_s),
    )


class ConnectionBroker:
    """Keyed cache of tenant connection pools with single-flight creation.

    A pool is keyed by the exact (host, port, database, credential user)
    tuple. Concurrent first requests for a key wait on a per-key lock and
    reuse the pool built by whichever caller got there first. Pools that
    fall out of the LRU window are disposed; everything else lives until
    ``dispose_all`` runs at shutdown.
    """

    def __init__(
        self,
        *,
        engine_factory: EngineFactory | None = None,
        max_entries: int | None = None,
    ) -> None:
        settings = get_settings()
        self._engine_factory = engine_factory or create_tenant_engine
        self._max_entries = max(1, max_entries or settings.tenant_pool_max_entries)
        self._pools: OrderedDict[PoolKey, AsyncEngine] = OrderedDict()
        self._creation_locks: dict[PoolKey, asyncio.Lock] = {}
        self._creation_waiters: dict[PoolKey, int] = {}
        self._lock = asyncio.Lock()

    async def get_pool(self, info: TenantConnectionInfo, credential: DbCredential) -> AsyncEngine:
        key = PoolKey.build(info, credential)
        async with self._lock:
            pool = self._lookup(key)
            if pool is not None:
                return pool
            key_lock = self._creation_locks.setdefault(key, asyncio.Lock())
            self._creation_waiters[key] = self._creation_waiters.get(key, 0) + 1

        try:
            async with key_lock:
                pool, evicted = await self._create(key, info, credential)
        finally:
            async with self._lock:
                self._release_creation_lock(key)

        for old_key, old_pool in evicted:
            increment_counter("tenant_pool_evicted_total")
            logger.info("tenant_pool_evicted key=%s", old_key)
            await old_pool.dispose()
        return pool

    async def _create(
        self, key: PoolKey, info: TenantConnectionInfo, credential: DbCredential
    ) -> tuple[AsyncEngine, list[tuple[PoolKey, AsyncEngine]]]:
        # Another caller may have finished creating the pool while we waited.
        async with self._lock:
            pool = self._lookup(key)
            if pool is not None:
                return pool, []
        try:
            pool = await self._engine_factory(info, credential)
        except Exception as exc:  # noqa: BLE001 - any driver/URL failure is infrastructure
            logger.warning("tenant_pool_create_failed key=%s", key, exc_info=exc)
            raise UpstreamError("Failed to open tenant database pool") from exc
        async with self._lock:
            self._pools[key] = pool
            evicted = self._evict_overflow()
            set_gauge("tenant_pools_live", float(len(self._pools)))
        increment_counter("tenant_pool_created_total")
        logger.info("tenant_pool_created key=%s", key)
        return pool, evicted

    def _release_creation_lock(self, key: PoolKey) -> None:
        # The last caller through drops the key lock; later callers hit the cache or start fresh.
        remaining = self._creation_waiters[key] - 1
        if remaining:
            self._creation_waiters[key] = remaining
            return
        del self._creation_waiters[key]
        del self._creation_locks[key]

    def _lookup(self, key: PoolKey) -> AsyncEngine | None:
        pool = self._pools.get(key)
        if pool is not None:
            self._pools.move_to_end(key)
        return pool

    def _evict_overflow(self) -> list[tuple[PoolKey, AsyncEngine]]:
        evicted: list[tuple[PoolKey, AsyncEngine]] = []
        while len(self._pools) > self._max_entries:
            evicted.append(self._pools.popitem(last=False))
        return evicted

    def keys(self) -> list[PoolKey]:
        return list(self._pools)

    async def dispose_all(self) -> None:
        async with self._lock:
            pools = list(self._pools.items())
            self._pools.clear()
            set_gauge("tenant_pools_live", 0.0)
        for key, pool in pools:
            logger.info("tenant_pool_disposed key=%s", key)
            await pool.dispose()


_broker: ConnectionBroker | None = None


def get_connection_broker() -> ConnectionBroker:
    global _broker
    if _broker is None:
        _broker = ConnectionBroker()
    return _broker


def reset_connection_broker() -> None:
    global _broker
    _broker = None
