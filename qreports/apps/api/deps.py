from __future__ import annotations

from dataclasses import dataclass
from typing import AsyncGenerator

from fastapi import Depends, Request, Response
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

from qreports.apps.api.rate_limit import enforce_rate_limit
from qreports.core.config import get_settings
from qreports.core.errors import AuthenticationError, AuthorizationError, ValidationError
from qreports.domain.identity import CallerIdentity, DbCredential, TenantConnectionInfo
from qreports.persistence.db import get_session
from qreports.services.auth.tokens import verify_token
from qreports.services.tenants.broker import ConnectionBroker, get_connection_broker
from qreports.services.tenants.credentials import select_credential
from qreports.services.tenants.directory import TenantDirectory, get_tenant_directory


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


def _parse_bearer_token(header_value: str | None) -> str | None:
    if not header_value:
        return None
    parts = header_value.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise AuthenticationError("Missing or invalid bearer token")
    return parts[1]


def _extract_token(request: Request) -> str | None:
    # Browser clients send the cookie; API clients send a bearer header.
    settings = get_settings()
    cookie_token = request.cookies.get(settings.auth_cookie_name)
    if cookie_token:
        return cookie_token
    return _parse_bearer_token(request.headers.get(settings.auth_header))


async def get_caller(request: Request) -> CallerIdentity:
    token = _extract_token(request)
    if not token:
        raise AuthenticationError("Authentication required")
    caller = verify_token(token)
    request.state.caller = caller
    return caller


async def get_rate_limited_caller(
    request: Request,
    response: Response,
    caller: CallerIdentity = Depends(get_caller),
) -> CallerIdentity:
    await enforce_rate_limit(request=request, response=response, caller=caller)
    return caller


async def require_privileged(caller: CallerIdentity = Depends(get_rate_limited_caller)) -> CallerIdentity:
    if not caller.is_privileged:
        raise AuthorizationError("Insufficient role for this operation")
    return caller


@dataclass(frozen=True)
class TenantContext:
    caller: CallerIdentity
    info: TenantConnectionInfo
    credential: DbCredential
    pool: AsyncEngine


def _database_override(request: Request, caller: CallerIdentity, info: TenantConnectionInfo) -> TenantConnectionInfo:
    settings = get_settings()
    requested = (request.headers.get(settings.database_override_header) or "").strip()
    if not requested or requested == info.database:
        return info
    # Standard and read-only callers stay pinned to the registered database.
    if not caller.is_privileged:
        raise AuthorizationError("Only administrators may select another database")
    if requested == settings.tenant_db_excluded_name:
        raise ValidationError(f"Database '{requested}' cannot be selected")
    return info.with_database(requested)


async def get_tenant_context(
    request: Request,
    caller: CallerIdentity = Depends(get_rate_limited_caller),
    directory: TenantDirectory = Depends(get_tenant_directory),
    broker: ConnectionBroker = Depends(get_connection_broker),
) -> TenantContext:
    # Directory first: an invalid tenant must fail before any pool exists for it.
    info = await directory.resolve(caller.tenant_id)
    info = _database_override(request, caller, info)
    credential = select_credential(caller.role)
    pool = await broker.get_pool(info, credential)
    return TenantContext(caller=caller, info=info, credential=credential, pool=pool)
