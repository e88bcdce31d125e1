"""Per-chat live rooms, typing indicators and new message fan-out."""

from __future__ import annotations

import logging
import time
from collections import defaultdict
from typing import Any, Dict, Iterable

from ..errors import Forbidden, InternalError, NotFound, PersistenceError
from .events import MessageDraft
from .registry import ConnectionHandle, ConnectionRegistry, utcnow_iso
from .stores import ChatInfo, ChatStore, MessageStore


logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Typing indicators
# ---------------------------------------------------------------------------


class TypingStatusStore:
    """Transient ``(chat, user) -> started typing`` entries with a TTL."""

    def __init__(self, ttl_seconds: float) -> None:
        self._ttl = ttl_seconds
        self._entries: Dict[int, Dict[int, float]] = defaultdict(dict)

    @property
    def ttl(self) -> float:
        return self._ttl

    def set_status(self, chat_id: int, user_id: int, is_typing: bool, *, now: float | None = None) -> bool:
        """Record the indicator and report whether it changed."""

        now = time.monotonic() if now is None else now
        bucket = self._entries[chat_id]
        if is_typing:
            changed = user_id not in bucket
            bucket[user_id] = now
        else:
            changed = bucket.pop(user_id, None) is not None
        if not bucket:
            self._entries.pop(chat_id, None)
        return changed

    def clear_user(self, user_id: int) -> list[int]:
        chats = []
        for chat_id, bucket in list(self._entries.items()):
            if bucket.pop(user_id, None) is not None:
                chats.append(chat_id)
            if not bucket:
                self._entries.pop(chat_id, None)
        return chats

    def typing_users(self, chat_id: int) -> list[int]:
        return sorted(self._entries.get(chat_id, {}))

    def expire(self, *, now: float | None = None) -> list[tuple[int, int]]:
        now = time.monotonic() if now is None else now
        expired: list[tuple[int, int]] = []
        for chat_id, bucket in list(self._entries.items()):
            for user_id, started in list(bucket.items()):
                if now - started > self._ttl:
                    bucket.pop(user_id, None)
                    expired.append((chat_id, user_id))
            if not bucket:
                self._entries.pop(chat_id, None)
        return expired


# ---------------------------------------------------------------------------
# Room broker
# ---------------------------------------------------------------------------


class ChatRoomBroker:
    """Track which live connections are viewing which chat.

    Subscriptions remember the connection id they were made from. When the user
    reconnects, the old subscriptions no longer match the registered handle and
    are treated as absent, so rooms are rebuilt from scratch by the new
    connection.
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        chats: ChatStore,
        messages: MessageStore,
        *,
        typing_ttl_seconds: float = 5.0,
    ) -> None:
        self._registry = registry
        self._chats = chats
        self._messages = messages
        self._rooms: Dict[int, Dict[int, str]] = defaultdict(dict)
        self._typing = TypingStatusStore(typing_ttl_seconds)

    @property
    def typing(self) -> TypingStatusStore:
        return self._typing

    # -- membership --------------------------------------------------------

    async def join(self, chat_id: int, user_id: int, handle: ConnectionHandle) -> Dict[str, Any]:
        chat = await self._participant_chat(chat_id, user_id)
        if not self._registry.is_current(handle):
            # The connection was replaced while the chat was loading.
            logger.debug("Ignoring join from superseded connection %s", handle.connection_id)
            return {"chatId": chat_id, "unreadCleared": 0}

        self._rooms[chat_id][user_id] = handle.connection_id

        cleared = 0
        try:
            cleared = await self._messages.mark_chat_read(chat_id, user_id)
        except PersistenceError:
            logger.warning(
                "Failed to mark chat %s as read for user %s", chat_id, user_id,
                exc_info=logger.isEnabledFor(logging.DEBUG),
            )

        await self.broadcast_to_chat(
            chat_id,
            "user_joined_chat",
            {"chatId": chat_id, "userId": user_id, "timestamp": utcnow_iso()},
            exclude={user_id},
        )
        payload = {
            "chatId": chat_id,
            "participants": list(chat.participant_ids),
            "subscribers": self.subscribers(chat_id),
            "typing": [uid for uid in self._typing.typing_users(chat_id) if uid != user_id],
            "unreadCleared": cleared,
        }
        await handle.send("chat_joined", payload)
        return payload

    async def leave(self, chat_id: int, user_id: int) -> bool:
        room = self._rooms.get(chat_id)
        removed = bool(room) and room.pop(user_id, None) is not None
        if room is not None and not room:
            self._rooms.pop(chat_id, None)
        if self._typing.set_status(chat_id, user_id, False):
            await self._announce_typing(chat_id, user_id, False)
        if removed:
            await self.broadcast_to_chat(
                chat_id,
                "user_left_chat",
                {"chatId": chat_id, "userId": user_id, "timestamp": utcnow_iso()},
            )
        return removed

    async def drop_connection(self, user_id: int, connection_id: str) -> list[int]:
        """Remove every room subscription made from *connection_id*."""

        dropped: list[int] = []
        for chat_id, room in list(self._rooms.items()):
            if room.get(user_id) == connection_id:
                room.pop(user_id, None)
                dropped.append(chat_id)
            if not room:
                self._rooms.pop(chat_id, None)
        if self._registry.resolve(user_id) is None:
            for chat_id in self._typing.clear_user(user_id):
                await self._announce_typing(chat_id, user_id, False)
        return dropped

    def subscribers(self, chat_id: int) -> list[int]:
        """Users whose current connection is subscribed to *chat_id*."""

        room = self._rooms.get(chat_id)
        if not room:
            return []
        live: list[int] = []
        for user_id, connection_id in list(room.items()):
            handle = self._registry.resolve(user_id)
            if handle is None or handle.connection_id != connection_id:
                room.pop(user_id, None)
                continue
            live.append(user_id)
        if not room:
            self._rooms.pop(chat_id, None)
        return sorted(live)

    def is_subscribed(self, chat_id: int, user_id: int) -> bool:
        return user_id in self.subscribers(chat_id)

    # -- delivery ----------------------------------------------------------

    async def broadcast_to_chat(
        self,
        chat_id: int,
        event: str,
        data: Any,
        *,
        exclude: Iterable[int] | None = None,
    ) -> int:
        excluded = set(exclude or ())
        delivered = 0
        for user_id in self.subscribers(chat_id):
            if user_id in excluded:
                continue
            if await self._registry.send_to(user_id, event, data):
                delivered += 1
        return delivered

    async def notify_typing(self, chat_id: int, user_id: int, is_typing: bool) -> None:
        self._typing.set_status(chat_id, user_id, is_typing)
        await self._announce_typing(chat_id, user_id, is_typing)

    async def post_message(self, chat_id: int, sender_id: int, draft: MessageDraft) -> Dict[str, Any]:
        """Persist a message from *sender_id* and fan it out."""

        chat = await self._participant_chat(chat_id, sender_id)
        if draft.chat_id != chat_id:
            draft = draft.model_copy(update={"chat_id": chat_id})
        try:
            message = await self._messages.create_message(sender_id, draft)
        except PersistenceError as exc:
            logger.error(
                "Failed to store message in chat %s", chat_id, exc_info=logger.isEnabledFor(logging.DEBUG)
            )
            raise InternalError("Failed to send message") from exc

        if self._typing.set_status(chat_id, sender_id, False):
            await self._announce_typing(chat_id, sender_id, False)
        await self.deliver_new_message(chat_id, message, sender_id=sender_id, chat=chat)
        return message

    async def deliver_new_message(
        self,
        chat_id: int,
        message: Dict[str, Any],
        *,
        sender_id: int | None = None,
        chat: ChatInfo | None = None,
    ) -> int:
        """Broadcast *message* and bump unread counters of absent participants.

        Returns the number of participants whose unread counter was incremented.
        """

        if chat is None:
            try:
                chat = await self._chats.get_chat(chat_id)
            except PersistenceError as exc:
                raise InternalError("Failed to load chat") from exc
            if chat is None:
                raise NotFound("Chat not found")

        await self.broadcast_to_chat(chat_id, "message_received", message)

        viewing = set(self.subscribers(chat_id))
        incremented = 0
        for participant in chat.participant_ids:
            if participant == sender_id or participant in viewing:
                continue
            try:
                await self._messages.increment_unread(chat_id, participant)
            except PersistenceError:
                logger.warning(
                    "Failed to increment unread count for user %s in chat %s", participant, chat_id,
                    exc_info=logger.isEnabledFor(logging.DEBUG),
                )
                continue
            incremented += 1
            await self._registry.send_to(
                participant,
                "new_message_notification",
                {"chatId": chat_id, "message": message, "timestamp": utcnow_iso()},
            )
        return incremented

    async def expire_typing(self, *, now: float | None = None) -> int:
        expired = self._typing.expire(now=now)
        for chat_id, user_id in expired:
            await self._announce_typing(chat_id, user_id, False)
        return len(expired)

    # -- internals ---------------------------------------------------------

    async def _announce_typing(self, chat_id: int, user_id: int, is_typing: bool) -> None:
        await self.broadcast_to_chat(
            chat_id,
            "user_typing",
            {"chatId": chat_id, "userId": user_id, "isTyping": is_typing, "timestamp": utcnow_iso()},
            exclude={user_id},
        )

    async def _participant_chat(self, chat_id: int, user_id: int) -> ChatInfo:
        try:
            chat = await self._chats.get_chat(chat_id)
        except PersistenceError as exc:
            raise InternalError("Failed to load chat") from exc
        if chat is None:
            raise NotFound("Chat not found")
        if not chat.has_participant(user_id):
            raise Forbidden("Access denied to this chat")
        return chat


__all__ = ["ChatRoomBroker", "TypingStatusStore"]
