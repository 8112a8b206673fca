"""Bearer token decoding shared by REST dependencies and the chat gateway."""

from __future__ import annotations

import dataclasses
import os
from functools import lru_cache
from typing import TypedDict, cast

import jwt
from fastapi import Request
from jwt import ExpiredSignatureError, InvalidTokenError

from labportal.core.errors import InternalError, NotAuthenticated

__all__ = [
    "AccessTokenPayload",
    "JWTSettings",
    "TokenConfigurationError",
    "TokenValidationError",
    "decode_access_token",
    "get_jwt_settings",
    "get_optional_token_payload",
    "get_token_payload",
    "reset_jwt_settings_cache",
]


@dataclasses.dataclass(frozen=True)
class JWTSettings:
    """Runtime configuration for signing and validating access tokens."""

    secret: str
    issuer: str
    audience: str
    algorithm: str = "HS256"
    access_token_ttl_seconds: int = 900  # 15 minutes


@lru_cache(maxsize=1)
def get_jwt_settings() -> JWTSettings:
    """Load token settings from the environment."""

    secret = os.getenv("ACCESS_TOKEN_SECRET")
    issuer = os.getenv("ACCESS_TOKEN_ISSUER")
    audience = os.getenv("ACCESS_TOKEN_AUDIENCE")
    algorithm = os.getenv("ACCESS_TOKEN_ALGORITHM", "HS256")
    if not secret or not issuer or not audience:
        raise RuntimeError(
            "ACCESS_TOKEN_SECRET, ACCESS_TOKEN_ISSUER and ACCESS_TOKEN_AUDIENCE must be set.",
        )
    access_ttl = int(os.getenv("ACCESS_TOKEN_TTL_SECONDS", "900"))
    return JWTSettings(
        secret=secret,
        issuer=issuer,
        audience=audience,
        algorithm=algorithm,
        access_token_ttl_seconds=access_ttl,
    )


def reset_jwt_settings_cache() -> None:
    """Clear cached JWT settings; useful in tests when env vars change."""

    get_jwt_settings.cache_clear()


class TokenConfigurationError(RuntimeError):
    """Raised when token validation settings are missing."""


class TokenValidationError(ValueError):
    """Raised when the provided token cannot be validated."""


class _AccessTokenRequiredClaims(TypedDict):
    user_id: str


class AccessTokenPayload(_AccessTokenRequiredClaims, total=False):
    """Decoded JWT payload for portal and operator users."""

    aud: str | list[str]
    email: str
    exp: int
    iat: int
    iss: str
    name: str
    roles: list[str]
    type: str


def decode_access_token(token: str) -> AccessTokenPayload:
    """Decode and validate an access token.

    Args:
        token: Encoded JWT, either from the ``Authorization`` header or from a
            gateway ``register_operator`` frame.

    Returns:
        AccessTokenPayload: Parsed payload containing the user identifier.

    Raises:
        TokenConfigurationError: If mandatory environment configuration is missing.
        TokenValidationError: If signature, claims or expiry are invalid.
    """

    try:
        settings = get_jwt_settings()
    except RuntimeError as exc:
        raise TokenConfigurationError(str(exc)) from exc

    try:
        payload = jwt.decode(
            token,
            settings.secret,
            algorithms=[settings.algorithm],
            audience=settings.audience,
            issuer=settings.issuer,
            options={"require": ["exp", "aud", "iss"]},
        )
    except ExpiredSignatureError as exc:
        raise TokenValidationError("Access token has expired.") from exc
    except InvalidTokenError as exc:
        raise TokenValidationError("Access token is invalid.") from exc

    if "user_id" not in payload:
        raise TokenValidationError("Access token payload must include 'user_id'.")
    type_claim = payload.get("type")
    if type_claim and type_claim != "access":
        raise TokenValidationError("Token must be an access token.")

    return cast(AccessTokenPayload, payload)


def _bearer_token(request: Request) -> str | None:
    authorization = request.headers.get("Authorization")
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise NotAuthenticated("Authorization header must use the Bearer scheme.")
    return token.strip()


def _decode_or_raise(token: str) -> AccessTokenPayload:
    try:
        return decode_access_token(token)
    except TokenConfigurationError as exc:
        raise InternalError("Token validation is not configured.") from exc
    except TokenValidationError as exc:
        raise NotAuthenticated(str(exc)) from exc


async def get_token_payload(request: Request) -> AccessTokenPayload:
    """Extract and validate the bearer token from the ``Authorization`` header."""

    token = _bearer_token(request)
    if token is None:
        raise NotAuthenticated("Authorization header missing.")
    return _decode_or_raise(token)


async def get_optional_token_payload(request: Request) -> AccessTokenPayload | None:
    """Like :func:`get_token_payload` but lets anonymous callers through.

    A header that is present must still carry a valid bearer token.
    """

    token = _bearer_token(request)
    if token is None:
        return None
    return _decode_or_raise(token)
