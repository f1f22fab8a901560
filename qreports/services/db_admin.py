from __future__ import annotations

import logging
import time

from pydantic import BaseModel
from sqlalchemy import inspect, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from qreports.core.config import get_settings
from qreports.core.errors import QReportsError, UpstreamError, ValidationError
from qreports.domain.identity import DbCredential, TenantConnectionInfo
from qreports.services.tenants.broker import ConnectionBroker


logger = logging.getLogger(__name__)

SYSTEM_DATABASES = frozenset(
    {"information_schema", "mysql", "performance_schema", "sys", "pg_catalog", "pg_toast"}
)


class ConnectionTestResult(BaseModel):
    success: bool
    message: str
    duration_ms: int


class ConnectionInfo(BaseModel):
    host: str
    port: int
    database: str
    user: str
    tenant_slug: str


async def test_connection(engine: AsyncEngine) -> ConnectionTestResult:
    # Report failures as data; callers decide whether they are fatal.
    started = time.monotonic()
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except (SQLAlchemyError, OSError) as exc:
        duration_ms = int((time.monotonic() - started) * 1000)
        logger.info("tenant_connection_test_failed error=%s", type(exc).__name__)
        return ConnectionTestResult(success=False, message="Connection failed", duration_ms=duration_ms)
    duration_ms = int((time.monotonic() - started) * 1000)
    return ConnectionTestResult(success=True, message="Connection successful", duration_ms=duration_ms)


async def list_databases(engine: AsyncEngine) -> list[str]:
    try:
        async with engine.connect() as conn:
            names = await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_schema_names())
    except SQLAlchemyError as exc:
        logger.warning("tenant_database_list_failed", exc_info=exc)
        raise UpstreamError("Failed to list databases") from exc
    return sorted(name for name in names if name.lower() not in SYSTEM_DATABASES)


def connection_info(info: TenantConnectionInfo, credential: DbCredential) -> ConnectionInfo:
    return ConnectionInfo(
        host=info.host,
        port=info.port,
        database=info.database,
        user=credential.user,
        tenant_slug=info.slug,
    )


async def switch_database(
    broker: ConnectionBroker,
    info: TenantConnectionInfo,
    credential: DbCredential,
    database: str,
) -> ConnectionInfo:
    """Open (or reuse) the pool for ``database`` on the tenant host and prove it answers.

    The previous pool stays cached; it may still serve callers that address
    the registered database.
    """
    if database == get_settings().tenant_db_excluded_name:
        raise ValidationError(f"Database '{database}' cannot be selected")
    target = info.with_database(database)
    try:
        # Check existence through the current pool so unknown names never get a pool.
        current = await broker.get_pool(info, credential)
        available = await list_databases(current)
        if database not in available:
            raise ValidationError(
                f"Database '{database}' does not exist on the tenant host",
                hint="Use GET /db/databases to list available databases",
            )
        result = await test_connection(await broker.get_pool(target, credential))
    except ValidationError:
        raise
    except QReportsError as exc:
        raise ValidationError("Failed to switch database", hint="Check the database name and try again") from exc
    if not result.success:
        raise ValidationError("Failed to switch database", hint="Check the database name and try again")
    logger.info("tenant_database_switched slug=%s database=%s", info.slug, database)
    return connection_info(target, credential)
