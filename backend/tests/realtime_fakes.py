"""In-memory collaborators used by the realtime unit tests."""

from __future__ import annotations

import asyncio
from collections import Counter
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from typing import Any

from fastapi.websockets import WebSocketState

from beacon.errors import PersistenceError, Unauthenticated
from beacon.realtime import RealtimeServices, build_realtime
from beacon.realtime.calls import CallSession
from beacon.realtime.stores import ChatInfo, Principal


class DummyWebSocket:
    def __init__(self, *, fail_sends: bool = False, close_gate: asyncio.Event | None = None) -> None:
        self.application_state = WebSocketState.CONNECTED
        self.client_state = WebSocketState.CONNECTED
        self.sent: list[dict[str, Any]] = []
        self.closed_with: tuple[int, str | None] | None = None
        self.fail_sends = fail_sends
        self.close_gate = close_gate

    async def send_json(self, payload: dict[str, Any]) -> None:
        if self.fail_sends:
            raise RuntimeError("socket is gone")
        self.sent.append(payload)

    async def close(self, code: int = 1000, reason: str | None = None) -> None:
        if self.close_gate is not None:
            await self.close_gate.wait()
        self.closed_with = (code, reason)
        self.application_state = WebSocketState.DISCONNECTED
        self.client_state = WebSocketState.DISCONNECTED

    def events(self, name: str | None = None) -> list[dict[str, Any]]:
        return [frame for frame in self.sent if name is None or frame["event"] == name]

    def last(self, name: str) -> dict[str, Any]:
        matching = self.events(name)
        assert matching, f"no {name} event was sent; got {[frame['event'] for frame in self.sent]}"
        return matching[-1]["data"]


class FakeClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


class FakeChatStore:
    def __init__(self) -> None:
        self.chats: dict[int, ChatInfo] = {}
        self.active: dict[int, str] = {}
        self.fail = False

    def add(self, chat_id: int, participants: tuple[int, ...], *, is_direct: bool = True) -> ChatInfo:
        chat = ChatInfo(chat_id=chat_id, participant_ids=participants, is_direct=is_direct)
        self.chats[chat_id] = chat
        return chat

    async def get_chat(self, chat_id: int) -> ChatInfo | None:
        if self.fail:
            raise PersistenceError("chat store unavailable")
        return self.chats.get(chat_id)

    async def set_active_call(self, chat_id: int, call_id: str) -> None:
        self.active[chat_id] = call_id

    async def clear_active_call(self, chat_id: int, call_id: str) -> None:
        if self.active.get(chat_id) == call_id:
            del self.active[chat_id]


class FakeMessageStore:
    def __init__(self) -> None:
        self.messages: list[dict[str, Any]] = []
        self.unread: Counter[tuple[int, int]] = Counter()
        self.read_marks: list[tuple[int, int]] = []
        self.fail_create = False
        self.fail_read = False

    async def create_message(self, sender_id: int, draft: Any) -> dict[str, Any]:
        if self.fail_create:
            raise PersistenceError("message store unavailable")
        message = {
            "id": len(self.messages) + 1,
            "chatId": draft.chat_id,
            "senderId": sender_id,
            "content": draft.content,
            "type": draft.type.value,
            "status": "sent",
        }
        self.messages.append(message)
        return message

    async def mark_chat_read(self, chat_id: int, user_id: int) -> int:
        if self.fail_read:
            raise PersistenceError("message store unavailable")
        self.read_marks.append((chat_id, user_id))
        return self.unread.pop((chat_id, user_id), 0)

    async def increment_unread(self, chat_id: int, user_id: int) -> None:
        self.unread[(chat_id, user_id)] += 1


class FakeCallStore:
    def __init__(self) -> None:
        self.records: dict[str, CallSession] = {}
        self.writes: list[tuple[str, str]] = []
        self.fail_writes = False
        self.fail_reads = False

    async def create(self, session: CallSession) -> None:
        await self._write("create", session)

    async def save(self, session: CallSession) -> None:
        await self._write("save", session)

    async def _write(self, operation: str, session: CallSession) -> None:
        if self.fail_writes:
            raise PersistenceError("call store unavailable")
        self.writes.append((operation, session.status.value))
        self.records[session.call_id] = session.evolve()

    async def get(self, call_id: str) -> CallSession | None:
        if self.fail_reads:
            raise PersistenceError("call store unavailable")
        stored = self.records.get(call_id)
        return stored.evolve() if stored is not None else None

    async def find_active(self, chat_id: int) -> CallSession | None:
        if self.fail_reads:
            raise PersistenceError("call store unavailable")
        for session in sorted(self.records.values(), key=lambda item: item.started_at, reverse=True):
            if session.chat_id == chat_id and not session.is_terminal:
                return session.evolve()
        return None

    async def list_for_chat(self, chat_id: int, limit: int) -> list[CallSession]:
        matching = [session for session in self.records.values() if session.chat_id == chat_id]
        matching.sort(key=lambda item: item.started_at, reverse=True)
        return [session.evolve() for session in matching[:limit]]


class FakeStatusStore:
    def __init__(self) -> None:
        self.calls: list[tuple[Any, ...]] = []
        self.fail = False

    async def _record(self, *entry: Any) -> None:
        if self.fail:
            raise PersistenceError("status store unavailable")
        self.calls.append(entry)

    async def set_online(self, user_id: int) -> None:
        await self._record("online", user_id)

    async def set_offline(self, user_id: int) -> None:
        await self._record("offline", user_id)

    async def touch(self, user_id: int) -> None:
        await self._record("touch", user_id)

    async def set_status(self, user_id: int, status: Any) -> None:
        await self._record("status", user_id, status.value)


class FakeAuthenticator:
    def __init__(self) -> None:
        self.tokens: dict[str, Principal] = {}

    def issue(self, user_id: int, login: str | None = None) -> str:
        token = f"token-{user_id}"
        self.tokens[token] = Principal(user_id=user_id, login=login or f"user{user_id}")
        return token

    async def verify(self, token: str) -> Principal:
        principal = self.tokens.get(token)
        if principal is None:
            raise Unauthenticated("Authentication failed")
        return principal


def realtime_settings(**overrides: Any) -> SimpleNamespace:
    values = {
        "realtime_typing_ttl_seconds": 5.0,
        "call_join_stale_seconds": 300,
        "realtime_call_stale_seconds": 600,
        "call_rate_limit_count": 5,
        "call_rate_limit_window_seconds": 60,
        "realtime_reaper_interval_seconds": 30,
        "realtime_connection_stale_seconds": 300,
    }
    values.update(overrides)
    return SimpleNamespace(**values)


class RealtimeHarness:
    """A full set of realtime components wired to in-memory stores."""

    def __init__(self, *, clock: FakeClock | None = None, **settings: Any) -> None:
        self.clock = clock or FakeClock()
        self.chats = FakeChatStore()
        self.messages = FakeMessageStore()
        self.calls = FakeCallStore()
        self.statuses = FakeStatusStore()
        self.auth = FakeAuthenticator()
        self.services: RealtimeServices = build_realtime(
            realtime_settings(**settings),
            chats=self.chats,
            messages=self.messages,
            calls=self.calls,
            statuses=self.statuses,
            authenticator=self.auth,
            clock=self.clock,
        )

    @property
    def gateway(self):
        return self.services.gateway

    @property
    def coordinator(self):
        return self.services.calls

    async def connect(self, user_id: int, websocket: DummyWebSocket | None = None):
        websocket = websocket or DummyWebSocket()
        principal = await self.gateway.authenticate(self.auth.issue(user_id))
        handle = await self.gateway.connect(principal, websocket)
        return handle, websocket
