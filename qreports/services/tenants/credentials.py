from __future__ import annotations

from typing import NoReturn

from qreports.core.config import Settings, get_settings
from qreports.domain.identity import DbCredential, Role


def _unreachable(role: object) -> NoReturn:
    raise AssertionError(f"Unhandled role: {role!r}")


def select_credential(role: Role, settings: Settings | None = None) -> DbCredential:
    # Privileged callers get the write pair; everyone else gets the read-only pair.
    settings = settings or get_settings()
    if role is Role.ADMIN:
        return DbCredential(user=settings.tenant_db_write_user, password=settings.tenant_db_write_password)
    if role is Role.USER or role is Role.VIEWER:
        return DbCredential(user=settings.tenant_db_read_user, password=settings.tenant_db_read_password)
    _unreachable(role)
