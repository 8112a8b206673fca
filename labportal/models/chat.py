"""Conversation and message models backing the live-chat handoff queue."""

from __future__ import annotations

import datetime as dt
import enum
from typing import List

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from . import Base
from .clinic import User


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


class ConversationState(str, enum.Enum):
    ACTIVE = "ACTIVE"
    WAITING_FOR_OPERATOR = "WAITING_FOR_OPERATOR"
    ASSIGNED = "ASSIGNED"
    CLOSED = "CLOSED"


# At most one conversation per session (anonymous) or per user is in these states.
LIVE_STATES = (
    ConversationState.ACTIVE,
    ConversationState.WAITING_FOR_OPERATOR,
    ConversationState.ASSIGNED,
)


class SenderRole(str, enum.Enum):
    USER = "USER"
    OPERATOR = "OPERATOR"
    BOT = "BOT"
    SYSTEM = "SYSTEM"


class Conversation(Base):
    """A chat session that may be handed off to a human operator.

    Attributes:
        id: Monotonic integer key; lower ids were enqueued first.
        session_id: Client session the conversation was opened from.
        user_id: Registered user, ``None`` for anonymous visitors.
        visitor_name: Display name supplied by an anonymous visitor.
        state: Lifecycle state, see :class:`ConversationState`.
        operator_id: Assigned operator, set only while ``ASSIGNED`` or after.
        handoff_at: When the conversation entered the waiting queue.
        assigned_at: When an operator claimed it.
        closed_at: When it was closed.
    """

    __tablename__ = "conversations"
    __table_args__ = (
        CheckConstraint(
            "state <> 'WAITING_FOR_OPERATOR' OR operator_id IS NULL",
            name="ck_conversations_waiting_unassigned",
        ),
        CheckConstraint(
            "state <> 'ASSIGNED' OR operator_id IS NOT NULL",
            name="ck_conversations_assigned_has_operator",
        ),
        Index("ix_conversations_state", "state"),
        Index("ix_conversations_session_id", "session_id"),
        Index(
            "ux_conversations_session_live",
            "session_id",
            unique=True,
            sqlite_where=text("user_id IS NULL AND state <> 'CLOSED'"),
            postgresql_where=text("user_id IS NULL AND state <> 'CLOSED'"),
        ),
        Index(
            "ux_conversations_user_live",
            "user_id",
            unique=True,
            sqlite_where=text("user_id IS NOT NULL AND state <> 'CLOSED'"),
            postgresql_where=text("user_id IS NOT NULL AND state <> 'CLOSED'"),
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[str] = mapped_column(String(length=128), nullable=False)
    user_id: Mapped[int | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    kind: Mapped[str] = mapped_column(String(length=16), nullable=False, default="CHAT")
    visitor_name: Mapped[str | None] = mapped_column(String(length=255), nullable=True)
    state: Mapped[ConversationState] = mapped_column(
        Enum(ConversationState, native_enum=False, length=32),
        nullable=False,
        default=ConversationState.ACTIVE,
    )
    operator_id: Mapped[int | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    handoff_at: Mapped[dt.datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    assigned_at: Mapped[dt.datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    closed_at: Mapped[dt.datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    user: Mapped[User | None] = relationship(foreign_keys=[user_id], lazy="joined")
    operator: Mapped[User | None] = relationship(foreign_keys=[operator_id], lazy="joined")
    messages: Mapped[List["ChatMessage"]] = relationship(
        back_populates="conversation",
        order_by="ChatMessage.id",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class ChatMessage(Base):
    """Append-only message inside a conversation."""

    __tablename__ = "chat_messages"
    __table_args__ = (Index("ix_chat_messages_conversation_id", "conversation_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    conversation_id: Mapped[int] = mapped_column(
        ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False
    )
    sender_role: Mapped[SenderRole] = mapped_column(
        Enum(SenderRole, native_enum=False, length=16), nullable=False
    )
    sender_id: Mapped[int | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    content: Mapped[str] = mapped_column(Text, nullable=False)
    is_read: Mapped[bool] = mapped_column(nullable=False, default=False)
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    conversation: Mapped[Conversation] = relationship(back_populates="messages")
    sender: Mapped[User | None] = relationship(lazy="joined")


__all__ = [
    "ChatMessage",
    "Conversation",
    "ConversationState",
    "LIVE_STATES",
    "SenderRole",
]
