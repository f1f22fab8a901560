from __future__ import annotations

import asyncio

import pytest
from sqlalchemy.exc import OperationalError

from qreports.core.config import get_settings
from qreports.core.errors import UnauthorizedTenantError, UpstreamError
from qreports.domain.identity import Role
from qreports.services.tenants.broker import ConnectionBroker, PoolKey, build_tenant_url
from qreports.services.tenants.credentials import select_credential
from qreports.services.tenants.directory import TenantDirectory
from qreports.services.telemetry import counters_snapshot
from qreports.tests.utils.fakes import (
    READ_CREDENTIAL,
    WRITE_CREDENTIAL,
    StaticLookup,
    connection_info,
    tenant_record,
)


class _Clock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


class _FakeEngine:
    def __init__(self, key: str) -> None:
        self.key = key
        self.disposed = False

    async def dispose(self) -> None:
        self.disposed = True


class _CountingFactory:
    def __init__(self, *, delay_s: float = 0.0, fail: bool = False) -> None:
        self.calls = 0
        self.delay_s = delay_s
        self.fail = fail

    async def __call__(self, info, credential) -> _FakeEngine:
        self.calls += 1
        await asyncio.sleep(self.delay_s)
        if self.fail:
            raise OSError("connection refused")
        return _FakeEngine(f"{info.host}:{info.port}:{info.database}:{credential.user}")


@pytest.mark.asyncio
async def test_directory_serves_cached_entries_within_ttl() -> None:
    lookup = StaticLookup({1: tenant_record(1)})
    clock = _Clock()
    directory = TenantDirectory(lookup=lookup, ttl_s=60, time_source=clock, host_override="")

    first = await directory.resolve(1)
    clock.now += 59
    second = await directory.resolve(1)
    assert first == second
    assert lookup.calls == [1]

    clock.now += 2
    await directory.resolve(1)
    assert lookup.calls == [1, 1]


@pytest.mark.asyncio
async def test_directory_applies_jump_host_override() -> None:
    directory = TenantDirectory(lookup=StaticLookup({1: tenant_record(1)}), host_override="jump.internal")
    info = await directory.resolve(1)
    assert info.host == "jump.internal"
    assert info.database == "acme_reports"
    assert info.slug == "tenant-1"


@pytest.mark.asyncio
@pytest.mark.parametrize("records", [{}, {1: tenant_record(1, active=False)}])
async def test_invalid_tenant_fails_before_any_pool_exists(records) -> None:
    directory = TenantDirectory(lookup=StaticLookup(records))
    factory = _CountingFactory()
    broker = ConnectionBroker(engine_factory=factory)

    with pytest.raises(UnauthorizedTenantError):
        info = await directory.resolve(1)
        await broker.get_pool(info, READ_CREDENTIAL)
    assert factory.calls == 0
    assert broker.keys() == []
    assert directory.cached_tenant_ids() == []


@pytest.mark.asyncio
async def test_registry_failures_are_upstream_errors() -> None:
    async def broken_lookup(tenant_id: int):
        raise OperationalError("SELECT 1", {}, Exception("registry down"))

    directory = TenantDirectory(lookup=broken_lookup)
    with pytest.raises(UpstreamError):
        await directory.resolve(1)


def test_credential_selection_by_role() -> None:
    settings = get_settings()
    assert select_credential(Role.ADMIN).user == settings.tenant_db_write_user
    assert select_credential(Role.USER).user == settings.tenant_db_read_user
    assert select_credential(Role.VIEWER).user == settings.tenant_db_read_user


def test_unknown_role_is_a_programming_error() -> None:
    with pytest.raises(AssertionError):
        select_credential("superuser")  # type: ignore[arg-type]


def test_credential_repr_masks_password() -> None:
    assert repr(WRITE_CREDENTIAL) == "DbCredential(user='report_writer', password='***')"


def test_pool_key_format() -> None:
    key = PoolKey.build(connection_info(), READ_CREDENTIAL)
    assert str(key) == "10.0.0.5:3306:acme_reports:report_reader"


def test_tenant_url_never_targets_registry_database() -> None:
    settings = get_settings()
    url = build_tenant_url(connection_info(settings.tenant_db_excluded_name), READ_CREDENTIAL, settings)
    assert url.database is None
    url = build_tenant_url(connection_info("acme_reports"), READ_CREDENTIAL, settings)
    assert url.database == "acme_reports"
    assert url.username == "report_reader"


@pytest.mark.asyncio
async def test_concurrent_first_requests_create_one_pool() -> None:
    factory = _CountingFactory(delay_s=0.05)
    broker = ConnectionBroker(engine_factory=factory)

    pools = await asyncio.gather(*[broker.get_pool(connection_info(), READ_CREDENTIAL) for _ in range(20)])

    assert factory.calls == 1
    assert all(pool is pools[0] for pool in pools)
    assert counters_snapshot()["tenant_pool_created_total"] == 1


@pytest.mark.asyncio
async def test_distinct_keys_get_distinct_pools() -> None:
    factory = _CountingFactory()
    broker = ConnectionBroker(engine_factory=factory)

    read_pool = await broker.get_pool(connection_info(), READ_CREDENTIAL)
    write_pool = await broker.get_pool(connection_info(), WRITE_CREDENTIAL)
    other_db = await broker.get_pool(connection_info("archive"), READ_CREDENTIAL)

    assert factory.calls == 3
    assert len({id(read_pool), id(write_pool), id(other_db)}) == 3


@pytest.mark.asyncio
async def test_switching_database_keeps_previous_pool() -> None:
    broker = ConnectionBroker(engine_factory=_CountingFactory())
    original = await broker.get_pool(connection_info("acme_reports"), READ_CREDENTIAL)
    await broker.get_pool(connection_info("archive"), READ_CREDENTIAL)

    assert not original.disposed
    assert await broker.get_pool(connection_info("acme_reports"), READ_CREDENTIAL) is original


@pytest.mark.asyncio
async def test_least_recently_used_pool_is_disposed_past_the_bound() -> None:
    broker = ConnectionBroker(engine_factory=_CountingFactory(), max_entries=2)
    first = await broker.get_pool(connection_info("a"), READ_CREDENTIAL)
    second = await broker.get_pool(connection_info("b"), READ_CREDENTIAL)
    # Touch "a" so "b" becomes the eviction candidate.
    await broker.get_pool(connection_info("a"), READ_CREDENTIAL)
    await broker.get_pool(connection_info("c"), READ_CREDENTIAL)

    assert second.disposed
    assert not first.disposed
    assert [key.database for key in broker.keys()] == ["a", "c"]
    assert counters_snapshot()["tenant_pool_evicted_total"] == 1


@pytest.mark.asyncio
async def test_pool_creation_failure_is_upstream_and_retryable() -> None:
    factory = _CountingFactory(fail=True)
    broker = ConnectionBroker(engine_factory=factory)
    with pytest.raises(UpstreamError):
        await broker.get_pool(connection_info(), READ_CREDENTIAL)
    assert broker.keys() == []

    factory.fail = False
    assert await broker.get_pool(connection_info(), READ_CREDENTIAL) is not None
    assert factory.calls == 2


@pytest.mark.asyncio
async def test_creation_locks_do_not_outlive_creation() -> None:
    factory = _CountingFactory(delay_s=0.01)
    broker = ConnectionBroker(engine_factory=factory, max_entries=2)

    await asyncio.gather(*[broker.get_pool(connection_info("a"), READ_CREDENTIAL) for _ in range(5)])
    assert broker._creation_locks == {}

    # Churn past the LRU bound; evicted keys leave nothing behind either.
    for name in ("b", "c", "d", "e"):
        await broker.get_pool(connection_info(name), READ_CREDENTIAL)
    assert broker._creation_locks == {}
    assert broker._creation_waiters == {}

    factory.fail = True
    results = await asyncio.gather(
        *[broker.get_pool(connection_info("f"), READ_CREDENTIAL) for _ in range(3)],
        return_exceptions=True,
    )
    assert all(isinstance(result, UpstreamError) for result in results)
    assert broker._creation_locks == {}


@pytest.mark.asyncio
async def test_dispose_all_closes_every_pool() -> None:
    broker = ConnectionBroker(engine_factory=_CountingFactory())
    pools = [await broker.get_pool(connection_info(name), READ_CREDENTIAL) for name in ("a", "b")]
    await broker.dispose_all()
    assert all(pool.disposed for pool in pools)
    assert broker.keys() == []
