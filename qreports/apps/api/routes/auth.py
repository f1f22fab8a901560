from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Request, Response
from pydantic import Field
from sqlalchemy.ext.asyncio import AsyncSession

from qreports.apps.api.deps import get_caller, get_db
from qreports.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from qreports.apps.api.response import ApiModel, SuccessEnvelope, success_response
from qreports.core.config import get_settings
from qreports.domain.identity import CallerIdentity
from qreports.services.auth.login import authenticate


router = APIRouter(prefix="/auth", tags=["auth"], responses=DEFAULT_ERROR_RESPONSES)


class LoginRequest(ApiModel):
    email: str = Field(min_length=3, max_length=320)
    password: str = Field(min_length=1, max_length=1024)


class LoginUserPayload(ApiModel):
    id: int
    email: str
    role: str


class LoginTenantPayload(ApiModel):
    id: int
    slug: str


class LoginResponse(ApiModel):
    token: str
    expires_in: int
    user: LoginUserPayload
    tenant: LoginTenantPayload


class MeResponse(ApiModel):
    user_id: int
    email: str
    role: str
    tenant_id: int
    tenant_slug: str
    expires_at: datetime


@router.post("/login", response_model=SuccessEnvelope[LoginResponse])
async def login(
    request: Request,
    response: Response,
    body: LoginRequest,
    db: AsyncSession = Depends(get_db),
) -> dict:
    result = await authenticate(db, body.email, body.password)
    settings = get_settings()
    # Browser clients authenticate with the cookie; API clients use the returned token.
    response.set_cookie(
        settings.auth_cookie_name,
        result.token,
        max_age=result.expires_in,
        httponly=True,
        samesite="lax",
    )
    payload = LoginResponse(
        token=result.token,
        expires_in=result.expires_in,
        user=LoginUserPayload(**result.user.model_dump()),
        tenant=LoginTenantPayload(**result.tenant.model_dump()),
    )
    return success_response(request=request, data=payload.model_dump(by_alias=True))


@router.get("/me", response_model=SuccessEnvelope[MeResponse])
async def me(request: Request, caller: CallerIdentity = Depends(get_caller)) -> dict:
    payload = MeResponse(
        user_id=caller.user_id,
        email=caller.email,
        role=caller.role.value,
        tenant_id=caller.tenant_id,
        tenant_slug=caller.tenant_slug,
        expires_at=caller.expires_at,
    )
    return success_response(request=request, data=payload.model_dump(by_alias=True, mode="json"))
