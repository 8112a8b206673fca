"""Pydantic schemas for the live-chat handoff APIs and gateway payloads."""

from __future__ import annotations

import datetime as dt

from pydantic import BaseModel, ConfigDict, Field


class HandoffRequest(BaseModel):
    """Webhook-style request to move a chatbot session to a human."""

    session_id: str = Field(min_length=1, max_length=128)
    user_id: int | None = None
    user_name: str | None = Field(default=None, max_length=255)
    reason: str | None = Field(default=None, max_length=500)


class HandoffResult(BaseModel):
    success: bool = True
    conversation_id: int
    queue_position: int | None
    state: str
    message: str


class ChatMessageOut(BaseModel):
    """A persisted chat line with its resolved sender display name."""

    id: int
    conversation_id: int
    sender_role: str
    sender_id: int | None = None
    sender_name: str
    content: str
    is_read: bool = False
    created_at: dt.datetime


class ConversationSummary(BaseModel):
    id: int
    session_id: str
    user_id: int | None = None
    user_name: str
    state: str
    operator_id: int | None = None
    operator_name: str | None = None
    created_at: dt.datetime
    handoff_at: dt.datetime | None = None
    assigned_at: dt.datetime | None = None
    closed_at: dt.datetime | None = None


class ClaimResult(BaseModel):
    success: bool = True
    conversation: ConversationSummary
    operator_name: str
    messages: list[ChatMessageOut] = Field(default_factory=list)


class CloseResult(BaseModel):
    success: bool = True
    conversation_id: int
    state: str
    closed_at: dt.datetime
    message: str
    released_sessions: list[str] = Field(default_factory=list)


class PendingConversation(BaseModel):
    """One waiting conversation as shown in the operator queue."""

    conversation_id: int
    queue_position: int
    session_id: str
    user_id: int | None = None
    user_name: str
    waiting_since: dt.datetime | None = None
    last_message: str | None = None


class PendingList(BaseModel):
    success: bool = True
    items: list[PendingConversation]
    total: int


class ConversationList(BaseModel):
    success: bool = True
    items: list[ConversationSummary]
    total: int


class MessageList(BaseModel):
    success: bool = True
    conversation_id: int
    items: list[ChatMessageOut]


class PostMessageRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    content: str = Field(min_length=1)


class PostMessageResult(BaseModel):
    success: bool = True
    message: ChatMessageOut


class ChatStats(BaseModel):
    success: bool = True
    pending: int
    assigned: int
    closed_today: int
    average_wait_minutes: float | None = None
