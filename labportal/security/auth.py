"""JWT-backed authentication dependencies for FastAPI routers."""

from __future__ import annotations

from collections.abc import Iterator
from typing import Callable

from fastapi import Depends
from sqlalchemy.orm import Session

from labportal.core.auth import (
    AccessTokenPayload,
    get_optional_token_payload,
    get_token_payload,
)
from labportal.core.errors import NotAuthenticated, NotAuthorized
from labportal.dependencies import get_session_factory
from labportal.models import User


_ROLE_LEVELS = {"patient": 0, "operator": 1, "admin": 2}


def get_db_session() -> Iterator[Session]:
    """Yield a SQLAlchemy session for request-scoped dependencies."""

    session = get_session_factory()()
    try:
        yield session
    finally:
        session.close()


def _load_user(payload: AccessTokenPayload, session: Session) -> User:
    try:
        user_id = int(payload["user_id"])
    except (KeyError, ValueError) as exc:
        raise NotAuthenticated("Invalid user identifier in token.") from exc

    user = session.get(User, user_id)
    if user is None or not user.is_active:
        raise NotAuthenticated("User is inactive or no longer exists.")
    return user


async def get_current_user(
    payload: AccessTokenPayload = Depends(get_token_payload),
    session: Session = Depends(get_db_session),
) -> User:
    """Resolve the authenticated :class:`~labportal.models.User` from the token payload."""

    return _load_user(payload, session)


async def get_optional_user(
    payload: AccessTokenPayload | None = Depends(get_optional_token_payload),
    session: Session = Depends(get_db_session),
) -> User | None:
    """Resolve the caller when a bearer token is sent, ``None`` for anonymous visitors."""

    if payload is None:
        return None
    return _load_user(payload, session)


def has_role(user: User, min_role: str) -> bool:
    highest = _highest_role([user.role])
    return highest is not None and _ROLE_LEVELS[highest] >= _ROLE_LEVELS[min_role]


def _highest_role(roles: list[str]) -> str | None:
    ranked = sorted({role for role in roles if role in _ROLE_LEVELS}, key=_ROLE_LEVELS.get)
    return ranked[-1] if ranked else None


def require_role(min_role: str) -> Callable[..., User]:
    """Create a dependency ensuring the caller has at least ``min_role`` privileges.

    The stored user role is authoritative; token ``roles`` are ignored when
    they claim more than the database grants.
    """

    if min_role not in _ROLE_LEVELS:
        raise ValueError(f"Unknown role: {min_role}")

    async def dependency(user: User = Depends(get_current_user)) -> User:
        if _highest_role([user.role]) is None:
            raise NotAuthorized("No roles assigned to user.")
        if not has_role(user, min_role):
            raise NotAuthorized(
                "You are not registered as an operator."
                if min_role == "operator"
                else "Your account does not have the required role."
            )
        return user

    return dependency


__all__ = [
    "get_current_user",
    "get_db_session",
    "get_optional_user",
    "has_role",
    "require_role",
]
