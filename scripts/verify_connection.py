from __future__ import annotations

import argparse
import asyncio
import sys

from qreports.core.logging import configure_logging
from qreports.domain.identity import normalize_role
from qreports.services.db_admin import connection_info, list_databases, test_connection
from qreports.services.tenants.broker import get_connection_broker
from qreports.services.tenants.credentials import select_credential
from qreports.services.tenants.directory import get_tenant_directory


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Resolve a tenant and test its database pool")
    parser.add_argument("--tenant-id", required=True, type=int)
    parser.add_argument("--role", default="viewer", help="Role whose credential is used: admin|user|viewer")
    parser.add_argument("--database", default=None, help="Test another database on the tenant host")
    parser.add_argument("--list", action="store_true", help="Also list databases on the tenant host")
    return parser


async def _verify(args: argparse.Namespace) -> int:
    info = await get_tenant_directory().resolve(args.tenant_id)
    if args.database:
        info = info.with_database(args.database)
    credential = select_credential(normalize_role(args.role))
    broker = get_connection_broker()
    try:
        pool = await broker.get_pool(info, credential)
        result = await test_connection(pool)
        details = connection_info(info, credential)
        print(f"pool_key={details.host}:{details.port}:{details.database}:{details.user}")
        print(f"success={str(result.success).lower()} duration_ms={result.duration_ms}")
        if args.list and result.success:
            for name in await list_databases(pool):
                print(f"database={name}")
    finally:
        await broker.dispose_all()
    return 0 if result.success else 2


def main() -> int:
    configure_logging()
    args = _build_parser().parse_args()
    try:
        return asyncio.run(_verify(args))
    except Exception as exc:  # noqa: BLE001 - surface connectivity failures clearly
        print(f"verify_connection failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
