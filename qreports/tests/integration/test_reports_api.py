from __future__ import annotations

import asyncio
import base64

import pytest
from httpx import ASGITransport, AsyncClient

from qreports.apps.api.main import create_app
from qreports.domain.identity import Role
from qreports.services.render.jobs import InMemoryRenderJobStore
from qreports.services.render.pool import RendererPool
from qreports.services.render.queue import InlineRenderRunner, RenderQueue, get_render_queue
from qreports.services.tenants.broker import ConnectionBroker, get_connection_broker
from qreports.services.tenants.directory import TenantDirectory, get_tenant_directory
from qreports.tests.utils.fakes import (
    FakeRendererFactory,
    StaticLookup,
    auth_headers,
    fake_render,
    seed_report_table,
    sqlite_engine,
    tenant_record,
)


@pytest.fixture
async def tenant_engine(tmp_path):
    engine = sqlite_engine(tmp_path / "tenant.db")
    await seed_report_table(engine, rows=15)
    yield engine
    await engine.dispose()


@pytest.fixture
async def harness(tenant_engine):
    created_pools: list[str] = []

    async def engine_factory(info, credential):
        created_pools.append(f"{info.database}:{credential.user}")
        return tenant_engine

    lookup = StaticLookup({1: tenant_record(1), 2: tenant_record(2, active=False)})
    directory = TenantDirectory(lookup=lookup)
    broker = ConnectionBroker(engine_factory=engine_factory)
    factory = FakeRendererFactory()
    store = InMemoryRenderJobStore(retention_s=60)
    runner = InlineRenderRunner(
        store=store,
        pool=RendererPool(factory, max_size=5, min_size=1, evict_interval_s=0),
        render_fn=fake_render,
        concurrency=2,
        timeout_s=1,
    )
    render_queue = RenderQueue(store, inline_runner=runner)

    app = create_app()
    app.dependency_overrides[get_tenant_directory] = lambda: directory
    app.dependency_overrides[get_connection_broker] = lambda: broker
    app.dependency_overrides[get_render_queue] = lambda: render_queue
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client, created_pools, render_queue
    await render_queue.close()


@pytest.mark.asyncio
async def test_execute_returns_paged_result_in_envelope(harness) -> None:
    client, _pools, _queue = harness
    response = await client.post(
        "/reports/execute",
        json={"query": "SELECT id, name FROM t WHERE id = 1", "page": 1, "pageSize": 10},
        headers=auth_headers(),
    )
    assert response.status_code == 200
    body = response.json()
    data = body["data"]
    assert data["columns"] == ["id", "name"]
    assert data["rowCount"] == 10
    assert data["totalRows"] == 15
    assert data["totalPages"] == 2
    assert body["meta"]["api_version"] == "v1"
    assert response.headers["X-Request-Id"] == body["meta"]["request_id"]


@pytest.mark.asyncio
async def test_validation_errors_use_the_error_envelope(harness) -> None:
    client, _pools, _queue = harness
    response = await client.post("/reports/execute", json={"page": 1}, headers=auth_headers())
    assert response.status_code == 422
    body = response.json()
    assert body["error"]["code"] == "REQUEST_VALIDATION_ERROR"
    assert body["error"]["details"]["errors"][0]["loc"] == ["body", "query"]
    assert body["meta"]["request_id"]
    assert "Deprecation" not in response.headers


@pytest.mark.asyncio
async def test_unhandled_errors_are_coded_without_internals() -> None:
    def broken_directory():
        raise RuntimeError("registry password=hunter2")

    app = create_app()
    app.dependency_overrides[get_tenant_directory] = broken_directory
    transport = ASGITransport(app=app, raise_app_exceptions=False)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        response = await client.post("/reports/execute", json={"query": "SELECT 1"}, headers=auth_headers())
    assert response.status_code == 500
    error = response.json()["error"]
    assert error["code"] == "INTERNAL_ERROR"
    assert "hunter2" not in response.text


@pytest.mark.asyncio
async def test_write_statement_is_rejected_with_hint(harness) -> None:
    client, _pools, _queue = harness
    response = await client.post(
        "/reports/execute",
        json={"query": "DROP TABLE users"},
        headers=auth_headers(),
    )
    assert response.status_code == 400
    error = response.json()["error"]
    assert error["code"] == "SQL_REJECTED"
    assert "Only read statements are allowed" in error["message"]
    assert error["details"]["hint"]


@pytest.mark.asyncio
async def test_oversized_page_is_a_validation_error(harness) -> None:
    client, _pools, _queue = harness
    response = await client.post(
        "/reports/execute",
        json={"query": "SELECT id FROM t", "pageSize": 1001},
        headers=auth_headers(),
    )
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "VALIDATION_ERROR"


@pytest.mark.asyncio
async def test_missing_token_is_unauthorized(harness) -> None:
    client, _pools, _queue = harness
    response = await client.post("/reports/execute", json={"query": "SELECT 1"})
    assert response.status_code == 401
    assert response.json()["error"]["code"] == "AUTH_UNAUTHORIZED"
    assert response.headers["WWW-Authenticate"] == "Bearer"


@pytest.mark.asyncio
async def test_token_cookie_is_accepted(harness) -> None:
    client, _pools, _queue = harness
    token = auth_headers()["Authorization"].split()[1]
    client.cookies.set("token", token)
    response = await client.post("/reports/execute", json={"query": "SELECT id FROM t"})
    client.cookies.clear()
    assert response.status_code == 200


@pytest.mark.asyncio
async def test_inactive_tenant_is_rejected_before_any_pool(harness) -> None:
    client, created_pools, _queue = harness
    response = await client.post(
        "/reports/execute",
        json={"query": "SELECT id FROM t"},
        headers=auth_headers(tenant_id=2),
    )
    assert response.status_code == 401
    assert response.json()["error"]["code"] == "TENANT_UNAUTHORIZED"
    assert created_pools == []


@pytest.mark.asyncio
async def test_role_selects_the_credential(harness) -> None:
    client, created_pools, _queue = harness
    await client.post("/reports/execute", json={"query": "SELECT id FROM t"}, headers=auth_headers(role=Role.VIEWER))
    await client.post("/reports/execute", json={"query": "SELECT id FROM t"}, headers=auth_headers(role=Role.USER))
    await client.post("/reports/execute", json={"query": "SELECT id FROM t"}, headers=auth_headers(role=Role.ADMIN))
    assert created_pools == ["acme_reports:report_reader", "acme_reports:report_writer"]


@pytest.mark.asyncio
async def test_database_override_requires_privileged_role(harness) -> None:
    client, created_pools, _queue = harness
    headers = {**auth_headers(role=Role.USER), "X-Database": "archive"}
    response = await client.post("/reports/execute", json={"query": "SELECT id FROM t"}, headers=headers)
    assert response.status_code == 403
    assert created_pools == []

    headers = {**auth_headers(role=Role.ADMIN), "X-Database": "archive"}
    response = await client.post("/reports/execute", json={"query": "SELECT id FROM t"}, headers=headers)
    assert response.status_code == 200
    assert created_pools == ["archive:report_writer"]


@pytest.mark.asyncio
async def test_export_pdf_completes_with_pdf_payload(harness) -> None:
    client, _pools, _queue = harness
    headers = auth_headers()
    response = await client.post(
        "/reports/export-pdf",
        json={"htmlContent": "<html><body><h1>Report</h1></body></html>"},
        headers=headers,
    )
    assert response.status_code == 202
    job_id = response.json()["data"]["jobId"]

    observed: list[int] = []
    status = {}
    for _ in range(100):
        status_response = await client.get(f"/reports/export-pdf/{job_id}/status", headers=headers)
        assert status_response.status_code == 200
        status = status_response.json()["data"]
        observed.append(status["progress"])
        if status["state"] in {"completed", "failed"}:
            break
        await asyncio.sleep(0.01)

    assert status["state"] == "completed"
    assert status["progress"] == 100
    assert observed == sorted(observed)
    pdf = base64.b64decode(status["pdfData"])
    assert pdf.startswith(b"%PDF")


@pytest.mark.asyncio
async def test_job_status_is_hidden_from_other_tenants(harness) -> None:
    client, _pools, _queue = harness
    response = await client.post(
        "/reports/export-pdf",
        json={"htmlContent": "<p>x</p>"},
        headers=auth_headers(tenant_id=1),
    )
    job_id = response.json()["data"]["jobId"]
    other = await client.get(f"/reports/export-pdf/{job_id}/status", headers=auth_headers(tenant_id=3))
    assert other.status_code == 404
    assert other.json()["error"]["code"] == "NOT_FOUND"


@pytest.mark.asyncio
async def test_empty_html_is_a_request_validation_error(harness) -> None:
    client, _pools, _queue = harness
    response = await client.post("/reports/export-pdf", json={"htmlContent": ""}, headers=auth_headers())
    assert response.status_code == 422
    assert response.json()["error"]["code"] == "REQUEST_VALIDATION_ERROR"


@pytest.mark.asyncio
async def test_db_status_and_database_listing(harness) -> None:
    client, _pools, _queue = harness
    status = await client.get("/db/status", headers=auth_headers())
    assert status.status_code == 200
    data = status.json()["data"]
    assert data["connection"]["user"] == "report_reader"
    assert data["connection"]["tenantSlug"] == "tenant-1"
    assert data["test"]["success"] is True

    listing = await client.get("/db/databases", headers=auth_headers())
    assert listing.json()["data"] == {"current": "acme_reports", "databases": ["main"]}


@pytest.mark.asyncio
async def test_db_switch_is_admin_only(harness) -> None:
    client, created_pools, _queue = harness
    denied = await client.post("/db/switch", json={"database": "main"}, headers=auth_headers(role=Role.USER))
    assert denied.status_code == 403

    switched = await client.post("/db/switch", json={"database": "main"}, headers=auth_headers(role=Role.ADMIN))
    assert switched.status_code == 200
    data = switched.json()["data"]
    assert data["connection"]["database"] == "main"
    assert data["header"] == "X-Database"
    assert created_pools == ["acme_reports:report_writer", "main:report_writer"]

    unknown = await client.post("/db/switch", json={"database": "ghost"}, headers=auth_headers(role=Role.ADMIN))
    assert unknown.status_code == 400
    assert "does not exist" in unknown.json()["error"]["message"]
