from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from pydantic import Field

from qreports.apps.api.deps import TenantContext, get_tenant_context, require_privileged
from qreports.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from qreports.apps.api.response import ApiModel, SuccessEnvelope, success_response
from qreports.core.config import get_settings
from qreports.domain.identity import CallerIdentity
from qreports.services import db_admin
from qreports.services.tenants.broker import ConnectionBroker, get_connection_broker


router = APIRouter(prefix="/db", tags=["db"], responses=DEFAULT_ERROR_RESPONSES)


class ConnectionPayload(ApiModel):
    host: str
    port: int
    database: str
    user: str
    tenant_slug: str


class ConnectionTestPayload(ApiModel):
    success: bool
    message: str
    duration_ms: int


class DbStatusResponse(ApiModel):
    connection: ConnectionPayload
    test: ConnectionTestPayload


class DatabaseListResponse(ApiModel):
    current: str
    databases: list[str]


class SwitchDatabaseRequest(ApiModel):
    database: str = Field(min_length=1, max_length=64)


class SwitchDatabaseResponse(ApiModel):
    connection: ConnectionPayload
    # Clients keep sending this header to stay on the selected database.
    header: str


@router.get("/status", response_model=SuccessEnvelope[DbStatusResponse])
async def db_status(request: Request, context: TenantContext = Depends(get_tenant_context)) -> dict:
    info = db_admin.connection_info(context.info, context.credential)
    result = await db_admin.test_connection(context.pool)
    payload = DbStatusResponse(
        connection=ConnectionPayload(**info.model_dump()),
        test=ConnectionTestPayload(**result.model_dump()),
    )
    return success_response(request=request, data=payload.model_dump(by_alias=True))


@router.get("/databases", response_model=SuccessEnvelope[DatabaseListResponse])
async def db_databases(request: Request, context: TenantContext = Depends(get_tenant_context)) -> dict:
    databases = await db_admin.list_databases(context.pool)
    payload = DatabaseListResponse(current=context.info.database, databases=databases)
    return success_response(request=request, data=payload.model_dump(by_alias=True))


@router.post("/test", response_model=SuccessEnvelope[ConnectionTestPayload])
async def db_test(request: Request, context: TenantContext = Depends(get_tenant_context)) -> dict:
    result = await db_admin.test_connection(context.pool)
    payload = ConnectionTestPayload(**result.model_dump())
    return success_response(request=request, data=payload.model_dump(by_alias=True))


@router.post("/switch", response_model=SuccessEnvelope[SwitchDatabaseResponse])
async def db_switch(
    request: Request,
    body: SwitchDatabaseRequest,
    _caller: CallerIdentity = Depends(require_privileged),
    context: TenantContext = Depends(get_tenant_context),
    broker: ConnectionBroker = Depends(get_connection_broker),
) -> dict:
    info = await db_admin.switch_database(broker, context.info, context.credential, body.database)
    payload = SwitchDatabaseResponse(
        connection=ConnectionPayload(**info.model_dump()),
        header=get_settings().database_override_header,
    )
    return success_response(request=request, data=payload.model_dump(by_alias=True))
