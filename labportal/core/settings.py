"""Runtime configuration loaded from the environment."""

from __future__ import annotations

import dataclasses
import os
from functools import lru_cache

__all__ = ["Settings", "get_settings", "reset_settings_cache"]


def _to_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "y", "on"}


@dataclasses.dataclass(frozen=True)
class Settings:
    """Application settings shared by routers, services and the gateway."""

    database_url: str | None
    allow_time_fallback: bool = True
    restore_capacity_on_cancel: bool = True
    reservation_rate_limit: str = "10/minute"
    chat_max_message_length: int = 2000
    admin_ui_origins: tuple[str, ...] = ()


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Load settings from environment variables with development defaults."""

    origins = os.getenv("ADMIN_UI_ORIGINS", "")
    return Settings(
        database_url=os.getenv("DATABASE_URL"),
        allow_time_fallback=_to_bool(os.getenv("AGENDA_ALLOW_TIME_FALLBACK"), True),
        restore_capacity_on_cancel=_to_bool(
            os.getenv("AGENDA_RESTORE_CAPACITY_ON_CANCEL"), True
        ),
        reservation_rate_limit=os.getenv("RESERVATION_RATE_LIMIT", "10/minute"),
        chat_max_message_length=int(os.getenv("CHAT_MAX_MESSAGE_LENGTH", "2000")),
        admin_ui_origins=tuple(o.strip() for o in origins.split(",") if o.strip()),
    )


def reset_settings_cache() -> None:
    """Clear cached settings; useful in tests when env vars change."""

    get_settings.cache_clear()
