from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable

from sqlalchemy.exc import SQLAlchemyError

from qreports.core.config import get_settings
from qreports.core.errors import UnauthorizedTenantError, UpstreamError
from qreports.domain.identity import TenantConnectionInfo, TenantRecord
from qreports.persistence.db import SessionLocal
from qreports.persistence.repos import registry as registry_repo


logger = logging.getLogger(__name__)

TenantLookup = Callable[[int], Awaitable[TenantRecord | None]]


@dataclass(frozen=True)
class CachedTenantConnection:
    value: TenantConnectionInfo
    expires_at: float


async def _registry_lookup(tenant_id: int) -> TenantRecord | None:
    async with SessionLocal() as session:
        return await registry_repo.get_active_tenant(session, tenant_id)


class TenantDirectory:
    """Resolve tenant ids to connection metadata through a short-TTL cache.

    Concurrent misses for the same tenant may both reach the registry; the
    read is idempotent and the last writer wins.
    """

    def __init__(
        self,
        *,
        lookup: TenantLookup | None = None,
        ttl_s: float | None = None,
        host_override: str | None = None,
        time_source: Callable[[], float] | None = None,
    ) -> None:
        settings = get_settings()
        self._lookup = lookup or _registry_lookup
        self._ttl_s = settings.tenant_cache_ttl_s if ttl_s is None else ttl_s
        self._host_override = host_override if host_override is not None else settings.tenant_db_host_override
        self._time = time_source or time.monotonic
        self._cache: dict[int, CachedTenantConnection] = {}
        self._lock = asyncio.Lock()

    async def resolve(self, tenant_id: int) -> TenantConnectionInfo:
        now = self._time()
        async with self._lock:
            entry = self._cache.get(tenant_id)
        if entry is not None and entry.expires_at > now:
            return entry.value

        try:
            record = await self._lookup(tenant_id)
        except SQLAlchemyError as exc:
            logger.warning("tenant_registry_unavailable tenant_id=%s", tenant_id, exc_info=exc)
            raise UpstreamError("Tenant registry unavailable") from exc
        if record is None or not record.active:
            raise UnauthorizedTenantError("Tenant is invalid or inactive")

        info = TenantConnectionInfo(
            host=self._host_override or record.db_host,
            port=record.db_port,
            database=record.db_name,
            slug=record.slug,
        )
        async with self._lock:
            self._cache[tenant_id] = CachedTenantConnection(value=info, expires_at=self._time() + self._ttl_s)
        logger.debug("tenant_cache_refreshed tenant_id=%s slug=%s", tenant_id, record.slug)
        return info

    def cached_tenant_ids(self) -> list[int]:
        return list(self._cache)


_directory: TenantDirectory | None = None


def get_tenant_directory() -> TenantDirectory:
    global _directory
    if _directory is None:
        _directory = TenantDirectory()
    return _directory


def reset_tenant_directory() -> None:
    # Allow tests to drop cached tenant metadata after tweaking settings.
    global _directory
    _directory = None
