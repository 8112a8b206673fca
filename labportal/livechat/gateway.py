"""WebSocket gateway fanning handoff events out to users and operators.

Frames are JSON objects ``{"event": <name>, "data": {...}}`` in both
directions. The gateway keeps a process-local registry of connections and
rooms: ``operators`` holds every registered operator connection and
``conversation:<id>`` holds the user and the assigned operator of one
conversation. Registries are routing tables only; on reconnect a client
registers again and its membership is rebuilt from the database.
"""

from __future__ import annotations

import dataclasses
import datetime as dt
import json
import logging
from typing import Any, Awaitable, Callable
from uuid import uuid4

from fastapi import WebSocket, WebSocketDisconnect
from starlette.concurrency import run_in_threadpool

from ..core.auth import TokenConfigurationError, TokenValidationError, decode_access_token
from ..core.errors import LabPortalError, NotAuthorized
from ..models import SenderRole
from . import schemas
from .service import LiveChatService, sender_display_name
from .session_cache import ConversationMode

logger = logging.getLogger(__name__)

OPERATORS_ROOM = "operators"
BOT_PROMPT = (
    "I am the laboratory virtual assistant. I can help you book an appointment, "
    "check your results or talk to an operator. Type \"operator\" or use the "
    "handoff button to reach a person."
)


def conversation_room(conversation_id: int) -> str:
    return f"conversation:{conversation_id}"


@dataclasses.dataclass
class Connection:
    """State tracked for one open WebSocket."""

    connection_id: str
    websocket: WebSocket
    session_id: str | None = None
    user_id: int | None = None
    user_name: str | None = None
    operator_id: int | None = None
    operator_name: str | None = None
    rooms: set[str] = dataclasses.field(default_factory=set)
    connected_at: dt.datetime = dataclasses.field(
        default_factory=lambda: dt.datetime.now(dt.timezone.utc)
    )

    @property
    def is_operator(self) -> bool:
        return self.operator_id is not None


Handler = Callable[[Connection, dict[str, Any]], Awaitable[None]]


class ChatGateway:
    """Routes gateway events to :class:`LiveChatService` and fans out results."""

    def __init__(self, service: LiveChatService) -> None:
        self._service = service
        self._connections: dict[str, Connection] = {}
        self._rooms: dict[str, set[str]] = {}
        self._handlers: dict[str, Handler] = {
            "register": self._on_register,
            "request_handoff": self._on_request_handoff,
            "cancel_handoff": self._on_cancel_handoff,
            "message": self._on_message,
            "register_operator": self._on_register_operator,
            "take_conversation": self._on_take_conversation,
            "operator_message": self._on_operator_message,
            "close_conversation": self._on_close_conversation,
            "get_pending": self._on_get_pending,
        }

    # Connection registry -------------------------------------------------------

    async def connect(self, websocket: WebSocket) -> Connection:
        await websocket.accept()
        connection = Connection(connection_id=uuid4().hex, websocket=websocket)
        self._connections[connection.connection_id] = connection
        logger.info("WebSocket connected: %s", connection.connection_id)
        return connection

    async def disconnect(self, connection: Connection) -> None:
        self._connections.pop(connection.connection_id, None)
        for room in list(connection.rooms):
            self._leave(connection, room)

        if connection.session_id and not connection.is_operator:
            binding = self._service.cache.get(connection.session_id)
            if binding and binding.mode == ConversationMode.HANDOFF and binding.conversation_id:
                await self.emit_room(
                    conversation_room(binding.conversation_id),
                    "user_disconnected",
                    {
                        "conversation_id": binding.conversation_id,
                        "session_id": connection.session_id,
                    },
                )
        logger.info("WebSocket disconnected: %s", connection.connection_id)

    def _join(self, connection: Connection, room: str) -> None:
        self._rooms.setdefault(room, set()).add(connection.connection_id)
        connection.rooms.add(room)

    def _leave(self, connection: Connection, room: str) -> None:
        members = self._rooms.get(room)
        if members is not None:
            members.discard(connection.connection_id)
            if not members:
                del self._rooms[room]
        connection.rooms.discard(room)

    def _drop_room(self, room: str) -> None:
        for connection_id in self._rooms.pop(room, set()):
            connection = self._connections.get(connection_id)
            if connection is not None:
                connection.rooms.discard(room)

    def room_members(self, room: str) -> set[str]:
        return set(self._rooms.get(room, set()))

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    # Sending -------------------------------------------------------------------

    @staticmethod
    def _encode(payload: Any) -> Any:
        if hasattr(payload, "model_dump"):
            return payload.model_dump(mode="json")
        return payload

    async def send(self, connection: Connection, event: str, data: Any) -> None:
        try:
            await connection.websocket.send_json({"event": event, "data": self._encode(data)})
        except (WebSocketDisconnect, RuntimeError) as exc:
            logger.warning(
                "Dropping %s for closed connection %s: %s",
                event,
                connection.connection_id,
                exc,
            )

    async def emit_room(self, room: str, event: str, data: Any) -> None:
        payload = self._encode(data)
        for connection_id in self.room_members(room):
            connection = self._connections.get(connection_id)
            if connection is not None:
                await self.send(connection, event, payload)

    async def send_error(self, connection: Connection, code: str, message: str) -> None:
        await self.send(connection, "error", {"code": code, "message": message})

    # Fan-out shared with the REST routers ----------------------------------------

    async def broadcast_pending(self) -> None:
        """Push the current waiting set to every registered operator."""

        pending = await run_in_threadpool(self._service.list_pending)
        await self.emit_room(
            OPERATORS_ROOM,
            "pending_conversations",
            {"items": [item.model_dump(mode="json") for item in pending], "total": len(pending)},
        )

    async def notify_assigned(self, result: schemas.ClaimResult) -> None:
        conversation = result.conversation
        room = conversation_room(conversation.id)
        for connection in list(self._connections.values()):
            if connection.operator_id == conversation.operator_id:
                self._join(connection, room)
        await self.emit_room(
            room,
            "conversation_assigned",
            {
                "conversation_id": conversation.id,
                "operator_id": conversation.operator_id,
                "operator_name": result.operator_name,
                "conversation": conversation.model_dump(mode="json"),
                "messages": [m.model_dump(mode="json") for m in result.messages],
            },
        )
        await self.broadcast_pending()

    async def notify_closed(self, result: schemas.CloseResult, reason: str = "closed") -> None:
        room = conversation_room(result.conversation_id)
        await self.emit_room(
            room,
            "conversation_closed",
            {
                "conversation_id": result.conversation_id,
                "reason": reason,
                "message": result.message,
                "closed_at": result.closed_at.isoformat(),
            },
        )
        self._drop_room(room)
        await self.broadcast_pending()

    async def notify_message(self, message: schemas.ChatMessageOut) -> None:
        await self.emit_room(
            conversation_room(message.conversation_id), "new_message", message
        )

    # Dispatch ------------------------------------------------------------------

    async def serve(self, websocket: WebSocket) -> None:
        """Run the receive loop for one client until it disconnects."""

        connection = await self.connect(websocket)
        try:
            while True:
                raw = await websocket.receive_text()
                try:
                    frame = json.loads(raw)
                except ValueError:
                    await self.send_error(connection, "InvalidFrame", "Frames must be JSON objects.")
                    continue
                await self.dispatch(connection, frame)
        except WebSocketDisconnect:
            pass
        finally:
            await self.disconnect(connection)

    async def dispatch(self, connection: Connection, frame: Any) -> None:
        if not isinstance(frame, dict) or not isinstance(frame.get("event"), str):
            await self.send_error(
                connection, "InvalidFrame", "Frames must look like {\"event\": ..., \"data\": {...}}."
            )
            return
        event = frame["event"]
        data = frame.get("data") or {}
        handler = self._handlers.get(event)
        if handler is None:
            await self.send_error(connection, "UnknownEvent", f"Unknown event '{event}'.")
            return
        if not isinstance(data, dict):
            await self.send_error(connection, "InvalidFrame", "Event data must be an object.")
            return
        try:
            await handler(connection, data)
        except LabPortalError as exc:
            logger.info("[%s] %s | event=%s", exc.code, exc.message, event)
            await self.send_error(connection, exc.code, exc.message)
        except ValueError as exc:
            await self.send_error(connection, "InvalidMessage", str(exc))

    # Helpers -------------------------------------------------------------------

    @staticmethod
    def _user_id_from_token(token: str) -> int:
        try:
            payload = decode_access_token(token)
        except (TokenConfigurationError, TokenValidationError) as exc:
            raise NotAuthorized(str(exc)) from exc
        try:
            return int(payload["user_id"])
        except (KeyError, ValueError) as exc:
            raise NotAuthorized("Invalid user identifier in token.") from exc

    @staticmethod
    def _conversation_id(data: dict[str, Any]) -> int:
        try:
            return int(data["conversation_id"])
        except (KeyError, TypeError, ValueError) as exc:
            raise ValueError("conversation_id must be an integer.") from exc

    @staticmethod
    def _require_session(connection: Connection) -> str:
        if not connection.session_id:
            raise NotAuthorized("Register the chat session before sending events.")
        return connection.session_id

    @staticmethod
    def _require_operator(connection: Connection) -> int:
        if connection.operator_id is None:
            raise NotAuthorized()
        return connection.operator_id

    # Client events -------------------------------------------------------------

    async def _on_register(self, connection: Connection, data: dict[str, Any]) -> None:
        session_id = str(data.get("session_id") or uuid4().hex)[:128]
        user_id = None
        user_name = data.get("name")
        token = data.get("token")
        if token:
            user_id = self._user_id_from_token(str(token))
            user = await run_in_threadpool(self._service.resolve_user, user_id)
            if user is None:
                raise NotAuthorized("User is inactive or no longer exists.")
            user_name = user.full_name

        connection.session_id = session_id
        connection.user_id = user_id
        connection.user_name = user_name

        binding = await run_in_threadpool(self._service.restore_session, session_id, user_id)
        payload: dict[str, Any] = {
            "session_id": session_id,
            "mode": ConversationMode.BOT.value,
            "conversation_id": None,
            "state": None,
            "queue_position": None,
        }
        if binding is not None and binding.conversation_id is not None:
            self._join(connection, conversation_room(binding.conversation_id))
            payload.update(
                mode=binding.mode.value,
                conversation_id=binding.conversation_id,
                state=binding.state.value,
                operator_name=binding.operator_name,
                queue_position=await run_in_threadpool(
                    self._service.queue_position, binding.conversation_id
                ),
            )
        await self.send(connection, "registered", payload)

    async def _on_request_handoff(self, connection: Connection, data: dict[str, Any]) -> None:
        session_id = self._require_session(connection)
        result = await run_in_threadpool(
            self._service.request_handoff,
            session_id,
            connection.user_id,
            connection.user_name,
            data.get("reason"),
        )
        self._join(connection, conversation_room(result.conversation_id))
        await self.send(connection, "handoff_started", result)
        await self.broadcast_pending()

    async def _on_cancel_handoff(self, connection: Connection, data: dict[str, Any]) -> None:
        session_id = self._require_session(connection)
        result = await run_in_threadpool(self._service.cancel_handoff, session_id)
        if result is None:
            await self.send(
                connection,
                "handoff_cancelled",
                {"conversation_id": None, "message": "You are chatting with the virtual assistant."},
            )
            return
        room = conversation_room(result.conversation_id)
        self._leave(connection, room)
        await self.send(
            connection,
            "handoff_cancelled",
            {"conversation_id": result.conversation_id, "message": result.message},
        )
        await self.notify_closed(result, reason="user_cancelled")

    async def _on_message(self, connection: Connection, data: dict[str, Any]) -> None:
        session_id = self._require_session(connection)
        content = str(data.get("content") or "")
        binding = self._service.cache.get(session_id)
        if binding is None or binding.mode != ConversationMode.HANDOFF or not binding.conversation_id:
            if not content.strip():
                raise ValueError("Message content must not be empty.")
            await self.send(
                connection,
                "new_message",
                {
                    "conversation_id": None,
                    "sender_role": SenderRole.BOT.value,
                    "sender_name": sender_display_name(SenderRole.BOT, None),
                    "content": BOT_PROMPT,
                    "created_at": dt.datetime.now(dt.timezone.utc).isoformat(),
                },
            )
            return
        message = await run_in_threadpool(
            self._service.post_message,
            binding.conversation_id,
            SenderRole.USER,
            connection.user_id,
            content,
        )
        await self.notify_message(message)

    # Operator events -----------------------------------------------------------

    async def _on_register_operator(self, connection: Connection, data: dict[str, Any]) -> None:
        token = data.get("token")
        if not token:
            raise NotAuthorized("An operator token is required.")
        user_id = self._user_id_from_token(str(token))
        operator = await run_in_threadpool(self._service.resolve_operator, user_id)
        if operator is None:
            raise NotAuthorized()

        connection.operator_id = operator.id
        connection.operator_name = operator.full_name
        self._join(connection, OPERATORS_ROOM)

        mine = await run_in_threadpool(self._service.list_operator_conversations, operator.id)
        for conversation in mine:
            self._join(connection, conversation_room(conversation.id))
        await self.send(
            connection,
            "operator_registered",
            {
                "operator_id": operator.id,
                "name": operator.full_name,
                "conversations": [c.model_dump(mode="json") for c in mine],
            },
        )
        pending = await run_in_threadpool(self._service.list_pending)
        await self.send(
            connection,
            "pending_conversations",
            {"items": [item.model_dump(mode="json") for item in pending], "total": len(pending)},
        )

    async def _on_take_conversation(self, connection: Connection, data: dict[str, Any]) -> None:
        operator_id = self._require_operator(connection)
        conversation_id = self._conversation_id(data)
        result = await run_in_threadpool(
            self._service.claim_conversation, conversation_id, operator_id
        )
        self._join(connection, conversation_room(conversation_id))
        await self.notify_assigned(result)

    async def _on_operator_message(self, connection: Connection, data: dict[str, Any]) -> None:
        operator_id = self._require_operator(connection)
        conversation_id = self._conversation_id(data)
        conversation = await run_in_threadpool(self._service.get_conversation, conversation_id)
        if conversation.operator_id != operator_id:
            raise NotAuthorized("This conversation is not assigned to you.")
        message = await run_in_threadpool(
            self._service.post_message,
            conversation_id,
            SenderRole.OPERATOR,
            operator_id,
            str(data.get("content") or ""),
        )
        await self.notify_message(message)

    async def _on_close_conversation(self, connection: Connection, data: dict[str, Any]) -> None:
        operator_id = self._require_operator(connection)
        conversation_id = self._conversation_id(data)
        result = await run_in_threadpool(
            self._service.close_conversation, conversation_id, operator_id
        )
        await self.notify_closed(result)

    async def _on_get_pending(self, connection: Connection, data: dict[str, Any]) -> None:
        self._require_operator(connection)
        pending = await run_in_threadpool(self._service.list_pending)
        await self.send(
            connection,
            "pending_conversations",
            {"items": [item.model_dump(mode="json") for item in pending], "total": len(pending)},
        )


__all__ = ["BOT_PROMPT", "ChatGateway", "Connection", "OPERATORS_ROOM", "conversation_room"]
