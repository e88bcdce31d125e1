"""Collaborator interfaces consumed by the realtime components.

The coordinator never talks to the database directly. These protocols describe
the few persisted operations it needs; ``app.services.stores`` provides the
SQLAlchemy implementations and tests provide in-memory fakes. Implementations
raise :class:`~beacon.errors.PersistenceError` when storage fails.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol, Sequence

from app.models.enums import PresenceStatus

if TYPE_CHECKING:  # pragma: no cover - typing helpers only
    from .calls import CallSession
    from .events import MessageDraft


@dataclass(slots=True, frozen=True)
class Principal:
    """Authenticated identity attached to a connection."""

    user_id: int
    login: str
    display_name: str | None = None
    avatar_url: str | None = None

    def to_public(self) -> dict[str, Any]:
        return {
            "userId": self.user_id,
            "username": self.login,
            "displayName": self.display_name or self.login,
            "avatarUrl": self.avatar_url,
        }


@dataclass(slots=True, frozen=True)
class ChatInfo:
    chat_id: int
    participant_ids: tuple[int, ...] = field(default_factory=tuple)
    is_direct: bool = True

    def has_participant(self, user_id: int) -> bool:
        return user_id in self.participant_ids

    def others(self, user_id: int) -> list[int]:
        return [participant for participant in self.participant_ids if participant != user_id]


class Authenticator(Protocol):
    async def verify(self, token: str) -> Principal: ...


class ChatStore(Protocol):
    async def get_chat(self, chat_id: int) -> ChatInfo | None: ...

    async def set_active_call(self, chat_id: int, call_id: str) -> None: ...

    async def clear_active_call(self, chat_id: int, call_id: str) -> None: ...


class MessageStore(Protocol):
    async def create_message(self, sender_id: int, draft: "MessageDraft") -> dict[str, Any]: ...

    async def mark_chat_read(self, chat_id: int, user_id: int) -> int: ...

    async def increment_unread(self, chat_id: int, user_id: int) -> None: ...


class CallStore(Protocol):
    async def create(self, session: "CallSession") -> None: ...

    async def save(self, session: "CallSession") -> None: ...

    async def get(self, call_id: str) -> "CallSession | None": ...

    async def find_active(self, chat_id: int) -> "CallSession | None": ...

    async def list_for_chat(self, chat_id: int, limit: int) -> Sequence["CallSession"]: ...


class UserStatusStore(Protocol):
    async def set_online(self, user_id: int) -> None: ...

    async def set_offline(self, user_id: int) -> None: ...

    async def touch(self, user_id: int) -> None: ...

    async def set_status(self, user_id: int, status: PresenceStatus) -> None: ...


__all__ = [
    "Authenticator",
    "CallStore",
    "ChatInfo",
    "ChatStore",
    "MessageStore",
    "Principal",
    "UserStatusStore",
]
