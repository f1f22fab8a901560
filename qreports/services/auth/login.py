from __future__ import annotations

import logging

from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from qreports.core.errors import AuthenticationError, UpstreamError
from qreports.persistence.repos import registry as registry_repo
from qreports.services.auth.passwords import normalize_email, verify_password
from qreports.services.auth.tokens import issue_token


logger = logging.getLogger(__name__)

# One message for unknown email, wrong password and inactive accounts.
_INVALID_CREDENTIALS = "Invalid email or password"


class UserSummary(BaseModel):
    id: int
    email: str
    role: str


class TenantSummary(BaseModel):
    id: int
    slug: str


class LoginResult(BaseModel):
    token: str
    expires_in: int
    user: UserSummary
    tenant: TenantSummary


async def authenticate(session: AsyncSession, email: str, password: str) -> LoginResult:
    normalized = normalize_email(email)
    try:
        user = await registry_repo.find_login_user(session, normalized)
    except SQLAlchemyError as exc:
        logger.warning("login_registry_unavailable", exc_info=exc)
        raise UpstreamError("User registry unavailable") from exc
    if user is None or not verify_password(password, user.password_hash):
        logger.info("login_rejected")
        raise AuthenticationError(_INVALID_CREDENTIALS)

    token, expires_in = issue_token(
        user_id=user.id,
        email=user.email,
        role=user.role,
        tenant_id=user.tenant_id,
        tenant_slug=user.tenant_slug,
    )
    logger.info("login_succeeded user_id=%s tenant_id=%s", user.id, user.tenant_id)
    return LoginResult(
        token=token,
        expires_in=expires_in,
        user=UserSummary(id=user.id, email=user.email, role=user.role),
        tenant=TenantSummary(id=user.tenant_id, slug=user.tenant_slug),
    )
