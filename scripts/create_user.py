from __future__ import annotations

import argparse
import asyncio
import getpass
import sys

from sqlalchemy import select

from qreports.domain.identity import normalize_role
from qreports.domain.models import Tenant, User
from qreports.persistence.db import SessionLocal, engine
from qreports.services.auth.passwords import hash_password, normalize_email


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Create or reset a registry user for a tenant")
    parser.add_argument("--tenant", required=True, help="Tenant slug")
    parser.add_argument("--email", required=True)
    parser.add_argument("--role", required=True, help="Role: admin|user|viewer")
    parser.add_argument("--password", default=None, help="Prompted when omitted")
    return parser


async def _create_user(args: argparse.Namespace) -> int:
    role = normalize_role(args.role)
    email = normalize_email(args.email)
    password = args.password or getpass.getpass("Password: ")
    if not password:
        raise ValueError("Password must not be empty")

    async with SessionLocal() as session:
        tenant = (await session.execute(select(Tenant).where(Tenant.slug == args.tenant))).scalar_one_or_none()
        if tenant is None:
            raise ValueError(f"Unknown tenant slug: {args.tenant}")
        user = (await session.execute(select(User).where(User.email == email))).scalar_one_or_none()
        if user is None:
            user = User(client_id=tenant.id, email=email, role=role.value, active=True)
            session.add(user)
        elif user.client_id != tenant.id:
            # Users stay bound to the tenant they were created for.
            raise ValueError("User belongs to another tenant")
        user.role = role.value
        user.password_hash = hash_password(password)
        user.active = True
        await session.commit()
        user_id = user.id
    await engine.dispose()

    print("User saved:")
    print(f"  user_id: {user_id}")
    print(f"  tenant: {args.tenant}")
    print(f"  role: {role.value}")
    return 0


def main() -> int:
    args = _build_parser().parse_args()
    try:
        return asyncio.run(_create_user(args))
    except Exception as exc:  # noqa: BLE001 - surface provisioning failures clearly
        print(f"create_user failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
