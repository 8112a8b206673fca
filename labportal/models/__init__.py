"""SQLAlchemy declarative base and laboratory portal models.

This package hosts the SQLAlchemy models shared by the agenda and live-chat
cores. It exposes a single declarative ``Base`` class used when creating
tables in tests and in ``seed.py``. Individual models live in dedicated
modules within this package.
"""

from __future__ import annotations

from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy declarative models."""


# Re-export models so callers can import them via ``from labportal.models import
# Slot`` instead of touching private modules.
from .clinic import (  # noqa: E402
    Appointment,
    AppointmentStatus,
    Holiday,
    Location,
    Service,
    Slot,
    User,
    UserRole,
)
from .chat import ChatMessage, Conversation, ConversationState, SenderRole  # noqa: E402


__all__ = [
    "Appointment",
    "AppointmentStatus",
    "Base",
    "ChatMessage",
    "Conversation",
    "ConversationState",
    "Holiday",
    "Location",
    "SenderRole",
    "Service",
    "Slot",
    "User",
    "UserRole",
]
