"""Process-wide singletons shared by routers and the WebSocket endpoint.

The session factory, the session cache and the chat gateway are created
lazily from :func:`get_settings` so tests can point ``DATABASE_URL`` at a
temporary database and call :func:`reset_dependencies`.
"""

from __future__ import annotations

from sqlalchemy.orm import Session, sessionmaker

from .agenda.service import ReservationService
from .core.settings import get_settings
from .livechat.gateway import ChatGateway
from .livechat.service import LiveChatService
from .livechat.session_cache import SessionCache
from .models.session import get_sessionmaker

_SESSION_FACTORY: sessionmaker[Session] | None = None
_SESSION_CACHE: SessionCache | None = None
_GATEWAY: ChatGateway | None = None


def get_session_factory() -> sessionmaker[Session]:
    global _SESSION_FACTORY
    if _SESSION_FACTORY is None:
        _SESSION_FACTORY = get_sessionmaker(get_settings().database_url)
    return _SESSION_FACTORY


def get_session_cache() -> SessionCache:
    global _SESSION_CACHE
    if _SESSION_CACHE is None:
        _SESSION_CACHE = SessionCache()
    return _SESSION_CACHE


def get_reservation_service() -> ReservationService:
    return ReservationService(get_session_factory(), settings=get_settings())


def get_livechat_service() -> LiveChatService:
    return LiveChatService(
        get_session_factory(), get_session_cache(), settings=get_settings()
    )


def get_gateway() -> ChatGateway:
    global _GATEWAY
    if _GATEWAY is None:
        _GATEWAY = ChatGateway(get_livechat_service())
    return _GATEWAY


def reset_dependencies() -> None:
    """Forget cached singletons; the next call rebuilds them from settings."""

    global _SESSION_FACTORY, _SESSION_CACHE, _GATEWAY
    if _SESSION_FACTORY is not None:
        engine = _SESSION_FACTORY.kw.get("bind")
        if engine is not None:
            engine.dispose()
    if _SESSION_CACHE is not None:
        _SESSION_CACHE.clear()
    _SESSION_FACTORY = None
    _SESSION_CACHE = None
    _GATEWAY = None


__all__ = [
    "get_gateway",
    "get_livechat_service",
    "get_reservation_service",
    "get_session_cache",
    "get_session_factory",
    "reset_dependencies",
]
