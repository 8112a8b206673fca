"""Process-local mapping of client sessions to conversation bindings.

The cache mirrors the ``conversations`` table for fast routing decisions in
the gateway. It is never the source of truth: after a restart or reconnect
the binding is rebuilt with :meth:`LiveChatService.restore_session`. A
multi-process deployment needs sticky sessions or an external store.
"""

from __future__ import annotations

import dataclasses
import enum
import threading
import time

from ..models import ConversationState


class ConversationMode(str, enum.Enum):
    BOT = "BOT"
    HANDOFF = "HANDOFF"


@dataclasses.dataclass
class SessionBinding:
    """Current routing state of one client session."""

    session_id: str
    conversation_id: int | None = None
    mode: ConversationMode = ConversationMode.BOT
    state: ConversationState = ConversationState.ACTIVE
    user_id: int | None = None
    user_name: str | None = None
    operator_id: int | None = None
    operator_name: str | None = None
    last_activity: float = dataclasses.field(default_factory=time.time)


class SessionCache:
    """Thread-safe dictionary of :class:`SessionBinding` keyed by session id."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._bindings: dict[str, SessionBinding] = {}

    def get(self, session_id: str) -> SessionBinding | None:
        with self._lock:
            binding = self._bindings.get(session_id)
            return dataclasses.replace(binding) if binding else None

    def set(self, binding: SessionBinding) -> None:
        binding.last_activity = time.time()
        with self._lock:
            self._bindings[binding.session_id] = dataclasses.replace(binding)

    def bind_conversation(self, conversation_id: int, **changes: object) -> list[str]:
        """Apply ``changes`` to every session bound to ``conversation_id``."""

        now = time.time()
        touched: list[str] = []
        with self._lock:
            for session_id, binding in list(self._bindings.items()):
                if binding.conversation_id == conversation_id:
                    self._bindings[session_id] = dataclasses.replace(
                        binding, last_activity=now, **changes
                    )
                    touched.append(session_id)
        return touched

    def remove(self, session_id: str) -> SessionBinding | None:
        with self._lock:
            return self._bindings.pop(session_id, None)

    def remove_conversation(self, conversation_id: int) -> list[str]:
        """Drop every binding pointing at ``conversation_id``."""

        with self._lock:
            removed = [
                sid
                for sid, binding in self._bindings.items()
                if binding.conversation_id == conversation_id
            ]
            for sid in removed:
                del self._bindings[sid]
        return removed

    def clear(self) -> None:
        with self._lock:
            self._bindings.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._bindings)


__all__ = ["ConversationMode", "SessionBinding", "SessionCache"]
