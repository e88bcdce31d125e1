"""Direct call lifecycle and WebRTC signalling relay.

A :class:`CallSession` moves ``ringing -> connected -> ended`` or
``ringing -> rejected``; any non-terminal session may be ended. Transitions of
one call are serialized by a per-call :class:`asyncio.Lock` and always persist
the next snapshot through the :class:`~beacon.realtime.stores.CallStore`
before it replaces the in-memory copy, so a failed write leaves the tracked
session untouched. Initiation is serialized per chat to keep at most one
non-terminal session for each chat.

Terminal sessions are dropped from memory; lookups fall back to the call store
so late operations on them fail with :class:`InvalidState`.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import uuid
from collections import deque
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncIterator, Callable, Deque, Dict, Hashable, Mapping, Sequence

from app.models.enums import CallEndReason, CallStatus, CallType
from app.monitoring.metrics import call_transitions_total, realtime_active_calls

from ..errors import (
    Forbidden,
    InternalError,
    InvalidChatTopology,
    InvalidState,
    NotFound,
    PersistenceError,
    RateLimited,
)
from ..voice.signaling import (
    SessionDescription,
    SignalingBuffer,
    SignalType,
    build_signal_envelope,
    parse_signal,
    parse_signal_type,
)
from .registry import ConnectionRegistry
from .stores import CallStore, ChatInfo, ChatStore


logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_call_id(now: datetime) -> str:
    return f"call_{int(now.timestamp() * 1000)}_{uuid.uuid4().hex[:8]}"


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


# ---------------------------------------------------------------------------
# Session state
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class CallSettings:
    """Media flags a participant reports during a call."""

    muted: bool = False
    video_enabled: bool = True
    screen_sharing: bool = False
    speaker_enabled: bool = True

    def to_public(self) -> Dict[str, bool]:
        return {
            "isMuted": self.muted,
            "isVideoEnabled": self.video_enabled,
            "isScreenSharing": self.screen_sharing,
            "isSpeakerEnabled": self.speaker_enabled,
        }

    @classmethod
    def from_public(cls, payload: Mapping[str, Any]) -> "CallSettings":
        return cls(
            muted=bool(payload.get("isMuted", False)),
            video_enabled=bool(payload.get("isVideoEnabled", True)),
            screen_sharing=bool(payload.get("isScreenSharing", False)),
            speaker_enabled=bool(payload.get("isSpeakerEnabled", True)),
        )


@dataclass(slots=True)
class CallSession:
    call_id: str
    chat_id: int
    initiator_id: int
    participant_ids: tuple[int, int]
    media_type: CallType
    status: CallStatus
    started_at: datetime
    answered_at: datetime | None = None
    ended_at: datetime | None = None
    end_reason: str | None = None
    rejection_reason: str | None = None
    duration: int = 0
    signaling: SignalingBuffer = field(default_factory=SignalingBuffer)
    settings: Dict[int, CallSettings] = field(default_factory=dict)
    last_activity_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def has_participant(self, user_id: int) -> bool:
        return user_id in self.participant_ids

    def other_participant(self, user_id: int) -> int:
        first, second = self.participant_ids
        return second if user_id == first else first

    def activity_at(self) -> datetime:
        return self.last_activity_at or self.started_at

    def evolve(self, **changes: Any) -> "CallSession":
        """Return a detached copy with *changes* applied."""

        changes.setdefault("signaling", self.signaling.copy())
        changes.setdefault("settings", {user: replace(flags) for user, flags in self.settings.items()})
        return replace(self, **changes)

    def to_public(self, *, include_signaling: bool = False) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "callId": self.call_id,
            "chatId": self.chat_id,
            "initiatorId": self.initiator_id,
            "participants": list(self.participant_ids),
            "type": self.media_type.value,
            "status": self.status.value,
            "startedAt": _iso(self.started_at),
            "answeredAt": _iso(self.answered_at),
            "endedAt": _iso(self.ended_at),
            "endReason": self.end_reason,
            "rejectionReason": self.rejection_reason,
            "duration": self.duration,
            "settings": {str(user): flags.to_public() for user, flags in self.settings.items()},
        }
        if include_signaling:
            payload["webrtc"] = self.signaling.to_public()
        return payload


@dataclass(slots=True)
class CallInitiation:
    session: CallSession
    existing: bool = False

    def to_public(self) -> Dict[str, Any]:
        return {**self.session.to_public(), "isExistingCall": self.existing}


def talk_time(answered_at: datetime | None, ended_at: datetime) -> int:
    """Whole seconds between answer and hang up; unanswered calls last zero."""

    if answered_at is None:
        return 0
    return max(int((ended_at - answered_at).total_seconds()), 0)


class KeyedLocks:
    """One :class:`asyncio.Lock` per key, kept only while someone holds or awaits it."""

    def __init__(self) -> None:
        self._locks: Dict[Hashable, asyncio.Lock] = {}
        self._holders: Dict[Hashable, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    @contextlib.asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._holders[key] = self._holders.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._holders[key] -= 1
            if not self._holders[key]:
                del self._holders[key]
                del self._locks[key]


# ---------------------------------------------------------------------------
# Coordinator
# ---------------------------------------------------------------------------


class CallCoordinator:
    """Own every non-terminal call session of this process."""

    def __init__(
        self,
        registry: ConnectionRegistry,
        chats: ChatStore,
        calls: CallStore,
        *,
        join_stale_seconds: float = 300,
        call_stale_seconds: float = 600,
        rate_limit_count: int = 5,
        rate_limit_window_seconds: float = 60,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._registry = registry
        self._chats = chats
        self._calls = calls
        self._join_stale = timedelta(seconds=join_stale_seconds)
        self._call_stale = timedelta(seconds=call_stale_seconds)
        self._rate_limit_count = rate_limit_count
        self._rate_limit_window = timedelta(seconds=rate_limit_window_seconds)
        self._clock = clock
        self._sessions: Dict[str, CallSession] = {}
        self._by_chat: Dict[int, str] = {}
        self._initiations: Dict[int, Deque[datetime]] = {}
        self._chat_locks = KeyedLocks()
        self._call_locks = KeyedLocks()

    # -- read side ---------------------------------------------------------

    def active_count(self) -> int:
        return len(self._sessions)

    def sessions(self) -> list[CallSession]:
        return list(self._sessions.values())

    async def get_call(self, call_id: str, user_id: int) -> CallSession:
        session = await self._load(call_id)
        self._ensure_participant(session, user_id)
        return session

    async def get_active_call(self, chat_id: int, user_id: int) -> CallSession | None:
        await self._participant_chat(chat_id, user_id)
        return await self._active_for_chat(chat_id)

    async def call_history(self, chat_id: int, user_id: int, *, limit: int = 20) -> list[CallSession]:
        await self._participant_chat(chat_id, user_id)
        try:
            return list(await self._calls.list_for_chat(chat_id, limit))
        except PersistenceError as exc:
            raise InternalError("Failed to load call history") from exc

    # -- transitions -------------------------------------------------------

    async def initiate_call(
        self,
        chat_id: int,
        initiator_id: int,
        media_type: CallType,
        *,
        target_user_id: int | None = None,
    ) -> CallInitiation:
        """Start a call in *chat_id*, or join the one already in progress.

        A *target_user_id*, when given, must name the other participant and
        that participant must be connected.
        """

        async with self._chat_locks.hold(chat_id):
            chat = await self._participant_chat(chat_id, initiator_id)
            if target_user_id is not None:
                if target_user_id == initiator_id or not chat.has_participant(target_user_id):
                    raise InvalidChatTopology("Target user is not the other participant of this chat")
                if self._registry.resolve(target_user_id) is None:
                    raise InvalidState("User is not available for calls")

            existing = await self._active_for_chat(chat_id)
            if existing is not None:
                if self._clock() - existing.started_at <= self._join_stale:
                    logger.info(
                        "Joining existing call %s on chat %s", existing.call_id, chat_id,
                        extra={"user_id": initiator_id},
                    )
                    return CallInitiation(existing, existing=True)
                logger.info("Ending stale call %s before starting a new one", existing.call_id)
                await self._end_if_active(existing.call_id, CallEndReason.TIMEOUT.value)

            self._check_rate_limit(initiator_id)

            if not chat.is_direct or len(chat.participant_ids) != 2:
                raise InvalidChatTopology("Calls are only supported in direct chats")
            others = chat.others(initiator_id)
            if len(others) != 1:
                raise InvalidChatTopology("No other participant found in chat")
            callee_id = others[0]

            now = self._clock()
            session = CallSession(
                call_id=generate_call_id(now),
                chat_id=chat_id,
                initiator_id=initiator_id,
                participant_ids=(initiator_id, callee_id),
                media_type=CallType(media_type),
                status=CallStatus.RINGING,
                started_at=now,
                settings={initiator_id: CallSettings(), callee_id: CallSettings()},
                last_activity_at=now,
            )
            await self._persist(session, create=True)
            self._initiations.setdefault(initiator_id, deque()).append(now)
            self._apply(session)
            await self._mirror_active(chat_id, session.call_id)

        await self._registry.send_to(
            callee_id, "call:incoming", {**session.to_public(), "from": initiator_id}
        )
        return CallInitiation(session, existing=False)

    async def accept_call(
        self, call_id: str, user_id: int, answer: Mapping[str, Any] | None = None
    ) -> CallSession:
        async with self._call_locks.hold(call_id):
            session = await self._load(call_id)
            self._ensure_participant(session, user_id)
            if user_id == session.initiator_id:
                raise Forbidden("Cannot accept your own call")
            self._ensure_ringing(session)

            now = self._clock()
            updated = session.evolve(status=CallStatus.CONNECTED, answered_at=now, last_activity_at=now)
            if answer:
                updated.signaling.record(
                    SignalType.ANSWER, SessionDescription.from_payload(answer, kind=SignalType.ANSWER)
                )
            await self._persist(updated)
            self._apply(updated)

        payload = {**updated.to_public(), "acceptedBy": user_id}
        for participant in updated.participant_ids:
            await self._registry.send_to(participant, "call:accepted", payload)
        return updated

    async def reject_call(self, call_id: str, user_id: int, reason: str | None = None) -> CallSession:
        async with self._call_locks.hold(call_id):
            session = await self._load(call_id)
            self._ensure_participant(session, user_id)
            if user_id == session.initiator_id:
                raise Forbidden("Cannot reject your own call")
            self._ensure_ringing(session)

            now = self._clock()
            updated = session.evolve(
                status=CallStatus.REJECTED,
                ended_at=now,
                end_reason=CallEndReason.USER_REJECTED.value,
                rejection_reason=reason or "Call rejected",
                duration=0,
                last_activity_at=now,
            )
            await self._persist(updated)
            self._apply(updated)
            await self._mirror_cleared(updated)

        await self._registry.send_to(
            updated.initiator_id,
            "call:rejected",
            {"callId": call_id, "rejectedBy": user_id, "reason": updated.rejection_reason},
        )
        return updated

    async def end_call(self, call_id: str, user_id: int, reason: str | None = None) -> CallSession:
        async with self._call_locks.hold(call_id):
            session = await self._load(call_id)
            self._ensure_participant(session, user_id)
            if session.is_terminal:
                raise InvalidState(f"Call has already finished. Current status: {session.status.value}")
            updated = await self._finish(session, reason or CallEndReason.USER_ENDED.value)

        await self._notify_ended(updated, ended_by=user_id)
        return updated

    async def relay_signal(self, call_id: str, user_id: int, signal_type: Any, payload: Any) -> bool:
        """Buffer a signalling message and forward it to the other peer.

        Returns whether the other participant had a live connection; an
        unreachable peer is not an error.
        """

        kind = parse_signal_type(signal_type)
        signal = parse_signal(kind, payload)

        async with self._call_locks.hold(call_id):
            session = await self._load(call_id)
            self._ensure_participant(session, user_id)
            if session.is_terminal:
                raise InvalidState(f"Call has already finished. Current status: {session.status.value}")
            updated = session.evolve(last_activity_at=self._clock())
            updated.signaling.record(kind, signal)
            await self._persist(updated)
            self._apply(updated)

        target = updated.other_participant(user_id)
        envelope = build_signal_envelope(call_id, user_id, kind, signal)
        return await self._registry.send_to(target, kind.event_name, envelope)

    async def update_settings(self, call_id: str, user_id: int, changes: Mapping[str, Any]) -> CallSession:
        async with self._call_locks.hold(call_id):
            session = await self._load(call_id)
            self._ensure_participant(session, user_id)
            if session.is_terminal:
                raise InvalidState(f"Call has already finished. Current status: {session.status.value}")
            updated = session.evolve(last_activity_at=self._clock())
            current = updated.settings.get(user_id, CallSettings()).to_public()
            current.update({key: value for key, value in changes.items() if key in current})
            updated.settings[user_id] = CallSettings.from_public(current)
            await self._persist(updated)
            self._apply(updated)

        await self._registry.send_to(
            updated.other_participant(user_id),
            "call:settings_updated",
            {"callId": call_id, "userId": user_id, "settings": updated.settings[user_id].to_public()},
        )
        return updated

    async def force_cleanup(self, chat_id: int, user_id: int) -> int:
        await self._participant_chat(chat_id, user_id)
        await self._active_for_chat(chat_id)
        targets = [session.call_id for session in self.sessions() if session.chat_id == chat_id]
        cleaned = 0
        for call_id in targets:
            if await self._end_if_active(call_id, CallEndReason.FORCE_CLEANUP.value, ended_by=user_id):
                cleaned += 1
        if cleaned:
            logger.info("Force cleaned %s call(s) in chat %s", cleaned, chat_id, extra={"user_id": user_id})
        return cleaned

    # -- hooks used by the gateway and the reaper ---------------------------

    def touch_user_calls(self, user_id: int) -> None:
        now = self._clock()
        for session in self._sessions.values():
            if session.has_participant(user_id):
                session.last_activity_at = now

    async def end_user_calls(self, user_id: int, reason: str) -> int:
        targets = [session.call_id for session in self.sessions() if session.has_participant(user_id)]
        ended = 0
        for call_id in targets:
            try:
                if await self._end_if_active(call_id, reason):
                    ended += 1
            except InternalError:
                logger.warning(
                    "Failed to end call %s for user %s", call_id, user_id,
                    exc_info=logger.isEnabledFor(logging.DEBUG),
                )
        return ended

    async def expire_stale(self, now: datetime | None = None) -> int:
        """End every non-terminal session idle for longer than the call threshold."""

        now = now or self._clock()
        self._prune_initiations(now)
        cutoff = now - self._call_stale
        candidates = [
            session.call_id for session in self.sessions() if session.activity_at() < cutoff
        ]
        expired = 0
        for call_id in candidates:
            try:
                if await self._end_if_active(call_id, CallEndReason.TIMEOUT.value, idle_before=cutoff):
                    expired += 1
            except InternalError:
                logger.warning(
                    "Failed to expire call %s", call_id, exc_info=logger.isEnabledFor(logging.DEBUG)
                )
        return expired

    # -- internals ---------------------------------------------------------

    async def _end_if_active(
        self,
        call_id: str,
        reason: str,
        *,
        ended_by: int | None = None,
        idle_before: datetime | None = None,
    ) -> bool:
        async with self._call_locks.hold(call_id):
            session = self._sessions.get(call_id)
            if session is None or session.is_terminal:
                return False
            if idle_before is not None and session.activity_at() >= idle_before:
                return False
            updated = await self._finish(session, reason)
        await self._notify_ended(updated, ended_by=ended_by)
        return True

    async def _finish(self, session: CallSession, reason: str) -> CallSession:
        now = self._clock()
        updated = session.evolve(
            status=CallStatus.ENDED,
            ended_at=now,
            end_reason=reason,
            duration=talk_time(session.answered_at, now),
            last_activity_at=now,
        )
        await self._persist(updated)
        self._apply(updated)
        await self._mirror_cleared(updated)
        return updated

    async def _notify_ended(self, session: CallSession, *, ended_by: int | None) -> None:
        payload = {
            "callId": session.call_id,
            "reason": session.end_reason,
            "duration": session.duration,
            "endedBy": ended_by,
        }
        for participant in session.participant_ids:
            await self._registry.send_to(participant, "call:ended", payload)

    def _apply(self, session: CallSession) -> None:
        call_transitions_total.labels(session.status.value).inc()
        if session.is_terminal:
            self._sessions.pop(session.call_id, None)
            if self._by_chat.get(session.chat_id) == session.call_id:
                self._by_chat.pop(session.chat_id, None)
        else:
            self._sessions[session.call_id] = session
            self._by_chat[session.chat_id] = session.call_id
        realtime_active_calls.set(len(self._sessions))

    async def _persist(self, session: CallSession, *, create: bool = False) -> None:
        try:
            if create:
                await self._calls.create(session)
            else:
                await self._calls.save(session)
        except PersistenceError as exc:
            logger.error(
                "Failed to persist call %s transition to %s",
                session.call_id,
                session.status.value,
                exc_info=logger.isEnabledFor(logging.DEBUG),
            )
            raise InternalError("Failed to save call state") from exc

    async def _load(self, call_id: str) -> CallSession:
        session = self._sessions.get(call_id)
        if session is not None:
            return session
        try:
            stored = await self._calls.get(call_id)
        except PersistenceError as exc:
            raise InternalError("Failed to load call") from exc
        if stored is None:
            raise NotFound("Call not found")
        if not stored.is_terminal:
            return self._adopt(stored)
        return stored

    async def _active_for_chat(self, chat_id: int) -> CallSession | None:
        call_id = self._by_chat.get(chat_id)
        if call_id is not None and call_id in self._sessions:
            return self._sessions[call_id]
        try:
            stored = await self._calls.find_active(chat_id)
        except PersistenceError as exc:
            raise InternalError("Failed to load active call") from exc
        if stored is None or stored.is_terminal:
            return None
        return self._adopt(stored)

    def _adopt(self, session: CallSession) -> CallSession:
        """Track a non-terminal persisted call this process does not know yet."""

        current = self._by_chat.get(session.chat_id)
        if current is not None and current != session.call_id:
            return session
        if session.call_id not in self._sessions:
            logger.info("Adopting persisted call %s", session.call_id)
            session.last_activity_at = session.last_activity_at or self._clock()
            self._sessions[session.call_id] = session
            self._by_chat[session.chat_id] = session.call_id
            realtime_active_calls.set(len(self._sessions))
        return self._sessions[session.call_id]

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

    def _recent_initiations(self, user_id: int, now: datetime) -> int:
        history = self._initiations.get(user_id)
        if history is None:
            return 0
        while history and now - history[0] >= self._rate_limit_window:
            history.popleft()
        if not history:
            del self._initiations[user_id]
        return len(history)

    def _prune_initiations(self, now: datetime) -> None:
        for user_id in list(self._initiations):
            self._recent_initiations(user_id, now)

    def _check_rate_limit(self, user_id: int) -> None:
        if self._recent_initiations(user_id, self._clock()) >= self._rate_limit_count:
            raise RateLimited(
                f"Rate limit exceeded. Maximum {self._rate_limit_count} calls per minute."
            )

    @staticmethod
    def _ensure_participant(session: CallSession, user_id: int) -> None:
        if not session.has_participant(user_id):
            raise Forbidden("You are not a participant in this call")

    @staticmethod
    def _ensure_ringing(session: CallSession) -> None:
        if session.status is not CallStatus.RINGING:
            raise InvalidState(f"Call is not in ringing state. Current status: {session.status.value}")

    async def _mirror_active(self, chat_id: int, call_id: str) -> None:
        try:
            await self._chats.set_active_call(chat_id, call_id)
        except PersistenceError:
            logger.warning(
                "Failed to mirror active call %s on chat %s", call_id, chat_id,
                exc_info=logger.isEnabledFor(logging.DEBUG),
            )

    async def _mirror_cleared(self, session: CallSession) -> None:
        try:
            await self._chats.clear_active_call(session.chat_id, session.call_id)
        except PersistenceError:
            logger.warning(
                "Failed to clear active call %s on chat %s", session.call_id, session.chat_id,
                exc_info=logger.isEnabledFor(logging.DEBUG),
            )


__all__ = [
    "CallCoordinator",
    "CallInitiation",
    "CallSession",
    "CallSettings",
    "generate_call_id",
    "talk_time",
]
