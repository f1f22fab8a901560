from __future__ import annotations

import pytest

from qreports.core.errors import ValidationError
from qreports.services import db_admin
from qreports.services.tenants.broker import ConnectionBroker
from qreports.tests.utils.fakes import READ_CREDENTIAL, connection_info, sqlite_engine


@pytest.fixture
async def tenant_engine(tmp_path):
    engine = sqlite_engine(tmp_path / "tenant.db")
    yield engine
    await engine.dispose()


@pytest.mark.asyncio
async def test_connection_test_reports_success(tenant_engine) -> None:
    result = await db_admin.test_connection(tenant_engine)
    assert result.success
    assert result.message == "Connection successful"
    assert result.duration_ms >= 0


@pytest.mark.asyncio
async def test_connection_test_reports_failure_as_data(tmp_path) -> None:
    # SQLite cannot open a database file inside a missing directory.
    engine = sqlite_engine(tmp_path / "missing" / "tenant.db")
    result = await db_admin.test_connection(engine)
    await engine.dispose()
    assert not result.success
    assert result.message == "Connection failed"


@pytest.mark.asyncio
async def test_list_databases_hides_system_schemas(tenant_engine) -> None:
    names = await db_admin.list_databases(tenant_engine)
    assert names == ["main"]
    assert not set(names) & db_admin.SYSTEM_DATABASES


def test_connection_info_reports_user_and_target() -> None:
    info = db_admin.connection_info(connection_info("archive"), READ_CREDENTIAL)
    assert info.database == "archive"
    assert info.user == "report_reader"
    assert info.tenant_slug == "tenant-1"


@pytest.mark.asyncio
async def test_switch_to_existing_database(tenant_engine) -> None:
    created: list[str] = []

    async def factory(info, credential):
        created.append(info.database)
        return tenant_engine

    broker = ConnectionBroker(engine_factory=factory)
    result = await db_admin.switch_database(broker, connection_info("acme_reports"), READ_CREDENTIAL, "main")
    assert result.database == "main"
    assert created == ["acme_reports", "main"]


@pytest.mark.asyncio
async def test_switch_to_unknown_database_creates_no_pool(tenant_engine) -> None:
    created: list[str] = []

    async def factory(info, credential):
        created.append(info.database)
        return tenant_engine

    broker = ConnectionBroker(engine_factory=factory)
    with pytest.raises(ValidationError) as excinfo:
        await db_admin.switch_database(broker, connection_info("acme_reports"), READ_CREDENTIAL, "nope")
    assert "does not exist" in excinfo.value.message
    assert created == ["acme_reports"]


@pytest.mark.asyncio
async def test_switch_to_registry_database_is_refused(tenant_engine) -> None:
    async def factory(info, credential):
        raise AssertionError("no pool expected")

    broker = ConnectionBroker(engine_factory=factory)
    with pytest.raises(ValidationError) as excinfo:
        await db_admin.switch_database(broker, connection_info(), READ_CREDENTIAL, "relatorios")
    assert "cannot be selected" in excinfo.value.message
