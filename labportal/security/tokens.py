"""Helpers for issuing access tokens consumed by the portal and operator UI."""

from __future__ import annotations

import datetime as dt
from typing import Any

import jwt

from labportal.core.auth import JWTSettings, get_jwt_settings, reset_jwt_settings_cache
from labportal.models import User


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def create_access_token(
    user: User, *, settings: JWTSettings | None = None
) -> tuple[str, dt.datetime]:
    """Issue a signed JWT access token for ``user``."""

    settings = settings or get_jwt_settings()
    now = _utcnow()
    expires_at = now + dt.timedelta(seconds=settings.access_token_ttl_seconds)
    payload: dict[str, Any] = {
        "user_id": str(user.id),
        "email": user.email,
        "name": user.full_name,
        "roles": [user.role] if user.role else [],
        "iss": settings.issuer,
        "aud": settings.audience,
        "iat": int(now.timestamp()),
        "exp": int(expires_at.timestamp()),
        "type": "access",
    }
    token = jwt.encode(payload, settings.secret, algorithm=settings.algorithm)
    return str(token), expires_at


__all__ = [
    "JWTSettings",
    "create_access_token",
    "get_jwt_settings",
    "reset_jwt_settings_cache",
]
