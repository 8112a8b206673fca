"""Service layer for the live-chat handoff queue.

Conversation state lives in the database; every transition that can race
(claiming a waiting conversation, closing an open one) is a single
conditional ``UPDATE`` whose affected-row count decides the winner. The
:class:`SessionCache` is refreshed after each committed change.
"""

from __future__ import annotations

import datetime as dt
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Callable

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from ..core.errors import (
    AlreadyAssigned,
    ConversationClosed,
    ConversationNotFound,
    InternalError,
    NotAuthorized,
)
from ..core.metrics import handoff_events
from ..core.settings import Settings, get_settings
from ..models import ChatMessage, Conversation, ConversationState, SenderRole, User, UserRole
from ..models.chat import LIVE_STATES
from ..models.session import is_unique_violation
from . import schemas
from .session_cache import ConversationMode, SessionBinding, SessionCache

logger = logging.getLogger(__name__)

DEFAULT_HANDOFF_REASON = "User asked to talk to an operator"

_ROLE_LABELS = {
    SenderRole.USER: "User",
    SenderRole.OPERATOR: "Operator",
    SenderRole.BOT: "Assistant",
    SenderRole.SYSTEM: "System",
}
_OPERATOR_ROLES = (UserRole.operator.value, UserRole.admin.value)


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def _as_utc(value: dt.datetime | None) -> dt.datetime | None:
    """Attach UTC to naive timestamps read back from SQLite."""

    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=dt.timezone.utc)


def sender_display_name(
    role: SenderRole, sender: User | None, visitor_name: str | None = None
) -> str:
    """Resolve the name shown next to a message.

    Users and operators show their real name when known, anonymous visitors
    the name they registered with. Bot and system lines always use the role
    label.
    """

    if role in (SenderRole.USER, SenderRole.OPERATOR) and sender is not None:
        return sender.full_name or _ROLE_LABELS[role]
    if role == SenderRole.USER and visitor_name:
        return visitor_name
    return _ROLE_LABELS[role]


def conversation_user_name(conversation: Conversation) -> str:
    if conversation.user is not None and conversation.user.full_name:
        return conversation.user.full_name
    return conversation.visitor_name or _ROLE_LABELS[SenderRole.USER]


def _message_out(
    message: ChatMessage, visitor_name: str | None = None
) -> schemas.ChatMessageOut:
    return schemas.ChatMessageOut(
        id=message.id,
        conversation_id=message.conversation_id,
        sender_role=message.sender_role.value,
        sender_id=message.sender_id,
        sender_name=sender_display_name(message.sender_role, message.sender, visitor_name),
        content=message.content,
        is_read=message.is_read,
        created_at=_as_utc(message.created_at),
    )


def _summary(conversation: Conversation) -> schemas.ConversationSummary:
    return schemas.ConversationSummary(
        id=conversation.id,
        session_id=conversation.session_id,
        user_id=conversation.user_id,
        user_name=conversation_user_name(conversation),
        state=conversation.state.value,
        operator_id=conversation.operator_id,
        operator_name=conversation.operator.full_name if conversation.operator else None,
        created_at=_as_utc(conversation.created_at),
        handoff_at=_as_utc(conversation.handoff_at),
        assigned_at=_as_utc(conversation.assigned_at),
        closed_at=_as_utc(conversation.closed_at),
    )


def _is_duplicate_live_conversation(exc: IntegrityError) -> bool:
    return is_unique_violation(
        exc, "ux_conversations_session_live", "conversations", ("session_id",)
    ) or is_unique_violation(exc, "ux_conversations_user_live", "conversations", ("user_id",))


class LiveChatService:
    """Handoff queue operations shared by the REST routers and the gateway."""

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        cache: SessionCache,
        *,
        settings: Settings | None = None,
        clock: Callable[[], dt.datetime] = _utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._cache = cache
        self._settings = settings or get_settings()
        self._clock = clock

    @property
    def cache(self) -> SessionCache:
        return self._cache

    @contextmanager
    def _transaction(self, operation: str) -> Iterator[Session]:
        try:
            with self._session_factory.begin() as session:
                yield session
        except SQLAlchemyError as exc:
            logger.exception("Database error during %s", operation)
            raise InternalError() from exc

    @contextmanager
    def _read_session(self, operation: str) -> Iterator[Session]:
        session = self._session_factory()
        try:
            yield session
        except SQLAlchemyError as exc:
            logger.exception("Database error during %s", operation)
            raise InternalError() from exc
        finally:
            session.close()

    @staticmethod
    def _position(session: Session, conversation_id: int) -> int:
        ahead = session.scalar(
            select(func.count())
            .select_from(Conversation)
            .where(
                Conversation.state == ConversationState.WAITING_FOR_OPERATOR,
                Conversation.id < conversation_id,
            )
        )
        return int(ahead or 0) + 1

    def _clip(self, content: str) -> str:
        text = (content or "").strip()
        if not text:
            raise ValueError("Message content must not be empty.")
        return text[: self._settings.chat_max_message_length]

    # Lookups -----------------------------------------------------------------

    def resolve_user(self, user_id: int | None) -> User | None:
        """Return the active user with ``user_id`` or ``None``."""

        if user_id is None:
            return None
        with self._read_session("user lookup") as session:
            user = session.get(User, user_id)
            if user is None or not user.is_active:
                return None
            return user

    def resolve_operator(self, user_id: int | None) -> User | None:
        """Return the active operator or admin with ``user_id`` or ``None``."""

        user = self.resolve_user(user_id)
        if user is None or user.role not in _OPERATOR_ROLES:
            return None
        return user

    def queue_position(self, conversation_id: int) -> int | None:
        """Point-in-time FIFO position, ``None`` when not waiting."""

        with self._read_session("queue position") as session:
            state = session.scalar(
                select(Conversation.state).where(Conversation.id == conversation_id)
            )
            if state is None:
                raise ConversationNotFound()
            if state != ConversationState.WAITING_FOR_OPERATOR:
                return None
            return self._position(session, conversation_id)

    # Transitions ---------------------------------------------------------------

    def request_handoff(
        self,
        session_id: str,
        user_id: int | None = None,
        user_name: str | None = None,
        reason: str | None = None,
    ) -> schemas.HandoffResult:
        """Put the session's open conversation (or a new one) in the queue.

        A conversation that is already with an operator is returned as is.
        Concurrent requests for the same session or user meet on the partial
        unique indexes over non-closed conversations; the loser re-reads the
        winner's row and queues it instead of creating a second one.
        """

        now = self._clock()
        try:
            with self._session_factory.begin() as session:
                binding, position = self._enqueue(
                    session, session_id, user_id, user_name, reason, now
                )
        except IntegrityError as exc:
            if not _is_duplicate_live_conversation(exc):
                logger.exception("Database error during handoff request")
                raise InternalError() from exc
            logger.info("Concurrent handoff for session %s; reusing its conversation", session_id)
            with self._transaction("handoff request retry") as session:
                binding, position = self._enqueue(
                    session, session_id, user_id, user_name, reason, now
                )
        except SQLAlchemyError as exc:
            logger.exception("Database error during handoff request")
            raise InternalError() from exc

        self._cache.set(binding)
        if binding.state == ConversationState.ASSIGNED:
            logger.info(
                "Conversation %s is already assigned to operator %s",
                binding.conversation_id,
                binding.operator_id,
            )
            return schemas.HandoffResult(
                conversation_id=binding.conversation_id,
                queue_position=None,
                state=ConversationState.ASSIGNED.value,
                message=(
                    f"You are already talking with {binding.operator_name or 'an operator'}."
                ),
            )

        handoff_events.labels(event="requested").inc()
        logger.info(
            "Conversation %s waiting for operator at position %s",
            binding.conversation_id,
            position,
        )
        return schemas.HandoffResult(
            conversation_id=binding.conversation_id,
            queue_position=position,
            state=ConversationState.WAITING_FOR_OPERATOR.value,
            message=(
                "An operator will be with you shortly. "
                f"You are number {position} in the queue."
            ),
        )

    def _enqueue(
        self,
        session: Session,
        session_id: str,
        user_id: int | None,
        user_name: str | None,
        reason: str | None,
        now: dt.datetime,
    ) -> tuple[SessionBinding, int | None]:
        user = session.get(User, user_id) if user_id is not None else None
        if user is not None and not user.is_active:
            user = None

        stmt = select(Conversation).where(Conversation.state.in_(LIVE_STATES))
        if user is not None:
            stmt = stmt.where(Conversation.user_id == user.id)
        else:
            stmt = stmt.where(
                Conversation.session_id == session_id,
                Conversation.user_id.is_(None),
            )
        conversation = session.scalar(stmt.order_by(Conversation.id.desc()).limit(1))

        if conversation is not None and conversation.state == ConversationState.ASSIGNED:
            binding = SessionBinding(
                session_id=session_id,
                conversation_id=conversation.id,
                mode=ConversationMode.HANDOFF,
                state=ConversationState.ASSIGNED,
                user_id=conversation.user_id,
                user_name=conversation_user_name(conversation),
                operator_id=conversation.operator_id,
                operator_name=(
                    conversation.operator.full_name if conversation.operator else None
                ),
            )
            return binding, None

        if conversation is None:
            conversation = Conversation(
                session_id=session_id,
                user_id=user.id if user is not None else None,
                kind="CHAT",
                state=ConversationState.ACTIVE,
                created_at=now,
            )
            session.add(conversation)
            session.flush()

        if conversation.state != ConversationState.WAITING_FOR_OPERATOR:
            conversation.state = ConversationState.WAITING_FOR_OPERATOR
            conversation.handoff_at = now
        conversation.operator_id = None
        conversation.session_id = session_id
        if user is None and user_name:
            conversation.visitor_name = user_name

        session.add(
            ChatMessage(
                conversation_id=conversation.id,
                sender_role=SenderRole.SYSTEM,
                content=f"Handoff requested: {reason or DEFAULT_HANDOFF_REASON}",
                created_at=now,
            )
        )
        session.flush()

        binding = SessionBinding(
            session_id=session_id,
            conversation_id=conversation.id,
            mode=ConversationMode.HANDOFF,
            state=ConversationState.WAITING_FOR_OPERATOR,
            user_id=user.id if user is not None else None,
            user_name=user.full_name if user is not None else (user_name or "User"),
        )
        return binding, self._position(session, conversation.id)

    def claim_conversation(
        self, conversation_id: int, operator_id: int
    ) -> schemas.ClaimResult:
        """Assign a waiting conversation to ``operator_id``.

        Exactly one of several concurrent claims succeeds; the others raise
        :class:`AlreadyAssigned`. A closed conversation raises
        :class:`ConversationClosed`.
        """

        operator = self.resolve_operator(operator_id)
        if operator is None:
            raise NotAuthorized()
        operator_name = operator.full_name or _ROLE_LABELS[SenderRole.OPERATOR]

        now = self._clock()
        with self._transaction("conversation claim") as session:
            result = session.execute(
                update(Conversation)
                .where(
                    Conversation.id == conversation_id,
                    Conversation.state == ConversationState.WAITING_FOR_OPERATOR,
                )
                .values(
                    state=ConversationState.ASSIGNED,
                    operator_id=operator.id,
                    assigned_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                state = session.scalar(
                    select(Conversation.state).where(Conversation.id == conversation_id)
                )
                if state is None:
                    raise ConversationNotFound()
                if state == ConversationState.CLOSED:
                    raise ConversationClosed()
                handoff_events.labels(event="claim_lost").inc()
                raise AlreadyAssigned()

            session.add(
                ChatMessage(
                    conversation_id=conversation_id,
                    sender_role=SenderRole.SYSTEM,
                    content=f"{operator_name} joined the conversation.",
                    created_at=now,
                )
            )

        with self._read_session("claimed conversation load") as session:
            conversation = session.get(Conversation, conversation_id)
            summary = _summary(conversation)
            messages = self._load_messages(session, conversation_id, limit=50)

        self._cache.bind_conversation(
            conversation_id,
            mode=ConversationMode.HANDOFF,
            state=ConversationState.ASSIGNED,
            operator_id=operator.id,
            operator_name=operator_name,
        )
        handoff_events.labels(event="claimed").inc()
        logger.info("Operator %s claimed conversation %s", operator.id, conversation_id)
        return schemas.ClaimResult(
            conversation=summary, operator_name=operator_name, messages=messages
        )

    def close_conversation(
        self, conversation_id: int, closed_by: int | None = None
    ) -> schemas.CloseResult:
        """Close any non-closed conversation and release its sessions."""

        closer = self.resolve_user(closed_by) if closed_by is not None else None
        if closer is not None:
            text = f"{closer.full_name} closed the conversation."
        else:
            text = "The conversation has been closed."
        result = self._close(conversation_id, text)
        logger.info("Conversation %s closed by %s", conversation_id, closed_by)
        return result

    def _close(self, conversation_id: int, text: str) -> schemas.CloseResult:
        now = self._clock()
        with self._transaction("conversation close") as session:
            result = session.execute(
                update(Conversation)
                .where(
                    Conversation.id == conversation_id,
                    Conversation.state != ConversationState.CLOSED,
                )
                .values(state=ConversationState.CLOSED, closed_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                exists = session.scalar(
                    select(Conversation.id).where(Conversation.id == conversation_id)
                )
                if exists is None:
                    raise ConversationNotFound()
                raise ConversationClosed()
            session.add(
                ChatMessage(
                    conversation_id=conversation_id,
                    sender_role=SenderRole.SYSTEM,
                    content=text,
                    created_at=now,
                )
            )

        released = self._cache.remove_conversation(conversation_id)
        handoff_events.labels(event="closed").inc()
        return schemas.CloseResult(
            conversation_id=conversation_id,
            state=ConversationState.CLOSED.value,
            closed_at=now,
            message=text,
            released_sessions=released,
        )

    def cancel_handoff(self, session_id: str) -> schemas.CloseResult | None:
        """Return the session to the assistant, closing its queued conversation.

        Returns ``None`` when the session had no open handoff.
        """

        binding = self._cache.get(session_id)
        conversation_id = binding.conversation_id if binding else None
        if conversation_id is None:
            with self._read_session("handoff lookup") as session:
                conversation_id = session.scalar(
                    select(Conversation.id)
                    .where(
                        Conversation.session_id == session_id,
                        Conversation.state.in_(
                            (
                                ConversationState.WAITING_FOR_OPERATOR,
                                ConversationState.ASSIGNED,
                            )
                        ),
                    )
                    .order_by(Conversation.id.desc())
                    .limit(1)
                )
        self._cache.remove(session_id)
        if conversation_id is None:
            return None
        try:
            result = self._close(conversation_id, "The user returned to the virtual assistant.")
        except (ConversationClosed, ConversationNotFound):
            return None
        handoff_events.labels(event="cancelled").inc()
        logger.info("Session %s cancelled handoff of conversation %s", session_id, conversation_id)
        return result

    # Messages ------------------------------------------------------------------

    def post_message(
        self,
        conversation_id: int,
        sender_role: SenderRole,
        sender_id: int | None,
        content: str,
    ) -> schemas.ChatMessageOut:
        """Append a message; closed conversations reject new lines.

        Raises:
            ValueError: If ``content`` is blank.
        """

        text = self._clip(content)
        sender_role = SenderRole(sender_role)
        with self._transaction("message post") as session:
            conversation = session.get(Conversation, conversation_id)
            if conversation is None:
                raise ConversationNotFound()
            if conversation.state == ConversationState.CLOSED:
                raise ConversationClosed()
            sender = session.get(User, sender_id) if sender_id is not None else None
            message = ChatMessage(
                conversation_id=conversation_id,
                sender_role=sender_role,
                sender_id=sender.id if sender is not None else None,
                content=text,
                created_at=self._clock(),
            )
            message.sender = sender
            session.add(message)
            session.flush()
            out = _message_out(message, conversation.visitor_name)

        self._cache.bind_conversation(conversation_id)
        return out

    @staticmethod
    def _load_messages(
        session: Session, conversation_id: int, limit: int
    ) -> list[schemas.ChatMessageOut]:
        visitor_name = session.scalar(
            select(Conversation.visitor_name).where(Conversation.id == conversation_id)
        )
        rows = session.scalars(
            select(ChatMessage)
            .where(ChatMessage.conversation_id == conversation_id)
            .order_by(ChatMessage.id.desc())
            .limit(limit)
        ).all()
        return [_message_out(message, visitor_name) for message in reversed(rows)]

    def get_messages(
        self, conversation_id: int, limit: int = 50
    ) -> list[schemas.ChatMessageOut]:
        """Return the latest ``limit`` messages in chronological order."""

        with self._read_session("message history") as session:
            if session.get(Conversation, conversation_id) is None:
                raise ConversationNotFound()
            return self._load_messages(session, conversation_id, limit)

    def mark_messages_read(self, conversation_id: int, reader_role: SenderRole) -> int:
        """Mark messages from the other side as read; returns how many changed."""

        reader_role = SenderRole(reader_role)
        with self._transaction("mark read") as session:
            if session.get(Conversation, conversation_id) is None:
                raise ConversationNotFound()
            result = session.execute(
                update(ChatMessage)
                .where(
                    ChatMessage.conversation_id == conversation_id,
                    ChatMessage.sender_role != reader_role,
                    ChatMessage.is_read.is_(False),
                )
                .values(is_read=True)
                .execution_options(synchronize_session=False)
            )
            return int(result.rowcount or 0)

    # Queries -------------------------------------------------------------------

    def list_pending(self) -> list[schemas.PendingConversation]:
        """Waiting conversations in FIFO order with their queue positions."""

        with self._read_session("pending list") as session:
            conversations = session.scalars(
                select(Conversation)
                .where(Conversation.state == ConversationState.WAITING_FOR_OPERATOR)
                .order_by(Conversation.id)
            ).all()
            items = []
            for index, conversation in enumerate(conversations, start=1):
                last_message = session.scalar(
                    select(ChatMessage.content)
                    .where(ChatMessage.conversation_id == conversation.id)
                    .order_by(ChatMessage.id.desc())
                    .limit(1)
                )
                items.append(
                    schemas.PendingConversation(
                        conversation_id=conversation.id,
                        queue_position=index,
                        session_id=conversation.session_id,
                        user_id=conversation.user_id,
                        user_name=conversation_user_name(conversation),
                        waiting_since=_as_utc(conversation.handoff_at),
                        last_message=last_message[:120] if last_message else None,
                    )
                )
        return items

    def list_operator_conversations(
        self, operator_id: int
    ) -> list[schemas.ConversationSummary]:
        with self._read_session("operator conversations") as session:
            conversations = session.scalars(
                select(Conversation)
                .where(
                    Conversation.operator_id == operator_id,
                    Conversation.state == ConversationState.ASSIGNED,
                )
                .order_by(Conversation.assigned_at, Conversation.id)
            ).all()
            return [_summary(conversation) for conversation in conversations]

    def get_conversation(self, conversation_id: int) -> schemas.ConversationSummary:
        with self._read_session("conversation load") as session:
            conversation = session.get(Conversation, conversation_id)
            if conversation is None:
                raise ConversationNotFound()
            return _summary(conversation)

    def stats(self) -> schemas.ChatStats:
        """Queue counters and today's average wait from handoff to claim."""

        start_of_day = self._clock().replace(hour=0, minute=0, second=0, microsecond=0)
        with self._read_session("chat stats") as session:
            counts = dict(
                session.execute(
                    select(Conversation.state, func.count())
                    .where(
                        Conversation.state.in_(
                            (
                                ConversationState.WAITING_FOR_OPERATOR,
                                ConversationState.ASSIGNED,
                            )
                        )
                    )
                    .group_by(Conversation.state)
                ).all()
            )
            closed_today = session.scalar(
                select(func.count())
                .select_from(Conversation)
                .where(
                    Conversation.state == ConversationState.CLOSED,
                    Conversation.closed_at >= start_of_day,
                )
            )
            claims = session.execute(
                select(Conversation.handoff_at, Conversation.assigned_at).where(
                    Conversation.assigned_at >= start_of_day,
                    Conversation.handoff_at.is_not(None),
                )
            ).all()

        waits = [
            (_as_utc(assigned) - _as_utc(handoff)).total_seconds() / 60
            for handoff, assigned in claims
        ]
        average = round(sum(waits) / len(waits), 1) if waits else None
        return schemas.ChatStats(
            pending=int(counts.get(ConversationState.WAITING_FOR_OPERATOR, 0)),
            assigned=int(counts.get(ConversationState.ASSIGNED, 0)),
            closed_today=int(closed_today or 0),
            average_wait_minutes=average,
        )

    def restore_session(
        self, session_id: str, user_id: int | None = None
    ) -> SessionBinding | None:
        """Rebuild the cache binding for a reconnecting session.

        The persisted conversation state wins over whatever the cache held.
        Returns ``None`` (and drops any stale binding) when the session has no
        conversation in the queue or with an operator.
        """

        handoff_states = (ConversationState.WAITING_FOR_OPERATOR, ConversationState.ASSIGNED)
        with self._read_session("session restore") as session:
            stmt = select(Conversation).where(Conversation.state.in_(handoff_states))
            if user_id is not None:
                stmt = stmt.where(Conversation.user_id == user_id)
            else:
                stmt = stmt.where(Conversation.session_id == session_id)
            conversation = session.scalar(stmt.order_by(Conversation.id.desc()).limit(1))
            if conversation is None:
                self._cache.remove(session_id)
                return None
            binding = SessionBinding(
                session_id=session_id,
                conversation_id=conversation.id,
                mode=ConversationMode.HANDOFF,
                state=conversation.state,
                user_id=conversation.user_id,
                user_name=conversation_user_name(conversation),
                operator_id=conversation.operator_id,
                operator_name=(
                    conversation.operator.full_name if conversation.operator else None
                ),
            )
        self._cache.set(binding)
        return binding


__all__ = [
    "DEFAULT_HANDOFF_REASON",
    "LiveChatService",
    "conversation_user_name",
    "sender_display_name",
]
