"""Security utilities exposed for convenience."""

from .auth import (
    get_current_user,
    get_db_session,
    get_optional_user,
    has_role,
    require_role,
)
from .tokens import (
    JWTSettings,
    create_access_token,
    get_jwt_settings,
    reset_jwt_settings_cache,
)

__all__ = [
    "JWTSettings",
    "create_access_token",
    "get_current_user",
    "get_db_session",
    "get_jwt_settings",
    "get_optional_user",
    "has_role",
    "require_role",
    "reset_jwt_settings_cache",
]
