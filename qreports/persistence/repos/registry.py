from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from qreports.domain.identity import TenantRecord
from qreports.domain.models import Tenant, User


@dataclass(frozen=True)
class LoginUser:
    id: int
    email: str
    password_hash: str
    role: str
    tenant_id: int
    tenant_slug: str


async def get_active_tenant(session: AsyncSession, tenant_id: int) -> TenantRecord | None:
    # Inactive rows are treated exactly like missing ones.
    result = await session.execute(
        select(Tenant).where(Tenant.id == tenant_id, Tenant.active.is_(True)).limit(1)
    )
    row = result.scalar_one_or_none()
    if row is None:
        return None
    return TenantRecord(
        id=row.id,
        slug=row.slug,
        db_host=row.db_host,
        db_port=row.db_port,
        db_name=row.db_name,
        active=row.active,
    )


async def find_login_user(session: AsyncSession, email: str) -> LoginUser | None:
    # Both the user and its tenant must be active to log in.
    result = await session.execute(
        select(User, Tenant)
        .join(Tenant, Tenant.id == User.client_id)
        .where(User.email == email)
        .limit(1)
    )
    row = result.first()
    if row is None:
        return None
    user, tenant = row
    if not user.active or not tenant.active:
        return None
    return LoginUser(
        id=user.id,
        email=user.email,
        password_hash=user.password_hash,
        role=user.role,
        tenant_id=tenant.id,
        tenant_slug=tenant.slug,
    )
