from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any

import jwt

from qreports.core.config import get_settings
from qreports.core.errors import AuthenticationError
from qreports.domain.identity import CallerIdentity, normalize_role


logger = logging.getLogger(__name__)

_REQUIRED_CLAIMS = ["sub", "email", "role", "tenant_id", "tenant_slug", "iat", "exp"]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def issue_token(
    *,
    user_id: int,
    email: str,
    role: str,
    tenant_id: int,
    tenant_slug: str,
    now: datetime | None = None,
) -> tuple[str, int]:
    """Sign a claim set for a logged-in user and return ``(token, expires_in_s)``."""
    settings = get_settings()
    issued_at = now or _utc_now()
    claims: dict[str, Any] = {
        # PyJWT requires a string subject.
        "sub": str(user_id),
        "email": email,
        "role": normalize_role(role).value,
        "tenant_id": tenant_id,
        "tenant_slug": tenant_slug,
        "iat": issued_at,
        "exp": issued_at + timedelta(seconds=settings.jwt_ttl_s),
    }
    token = jwt.encode(claims, settings.jwt_secret, algorithm=settings.jwt_algorithm)
    return token, settings.jwt_ttl_s


def verify_token(token: str) -> CallerIdentity:
    settings = get_settings()
    try:
        claims = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=[settings.jwt_algorithm],
            options={"require": _REQUIRED_CLAIMS},
        )
    except jwt.ExpiredSignatureError as exc:
        raise AuthenticationError("Token has expired") from exc
    except jwt.InvalidTokenError as exc:
        logger.info("auth_token_rejected reason=%s", type(exc).__name__)
        raise AuthenticationError("Invalid token") from exc

    try:
        return CallerIdentity(
            user_id=int(claims["sub"]),
            email=claims["email"],
            role=normalize_role(str(claims["role"])),
            tenant_id=int(claims["tenant_id"]),
            tenant_slug=claims["tenant_slug"],
            issued_at=datetime.fromtimestamp(claims["iat"], tz=timezone.utc),
            expires_at=datetime.fromtimestamp(claims["exp"], tz=timezone.utc),
        )
    except (TypeError, ValueError) as exc:
        # Signed but malformed claims are still an authentication failure.
        raise AuthenticationError("Invalid token claims") from exc
