from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict


class Role(str, Enum):
    # Registry values; ADMIN is the privileged role, VIEWER is read-only.
    ADMIN = "admin"
    USER = "user"
    VIEWER = "viewer"


def normalize_role(role: str) -> Role:
    # Enforce a closed, lowercased role vocabulary.
    try:
        return Role(role.strip().lower())
    except ValueError as exc:
        raise ValueError(f"Unsupported role: {role}") from exc


class CallerIdentity(BaseModel):
    # Built once per request from a verified token; never mutated.
    model_config = ConfigDict(frozen=True)

    user_id: int
    email: str
    role: Role
    tenant_id: int
    tenant_slug: str
    issued_at: datetime
    expires_at: datetime

    @property
    def is_privileged(self) -> bool:
        return self.role is Role.ADMIN


@dataclass(frozen=True)
class TenantRecord:
    id: int
    slug: str
    db_host: str
    db_port: int
    db_name: str
    active: bool


@dataclass(frozen=True)
class TenantConnectionInfo:
    host: str
    port: int
    database: str
    slug: str

    def with_database(self, database: str) -> "TenantConnectionInfo":
        return TenantConnectionInfo(host=self.host, port=self.port, database=database, slug=self.slug)


@dataclass(frozen=True)
class DbCredential:
    user: str
    password: str

    def __repr__(self) -> str:
        # Keep secrets out of logs and tracebacks.
        return f"DbCredential(user={self.user!r}, password='***')"
