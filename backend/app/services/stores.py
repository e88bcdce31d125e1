"""SQLAlchemy implementations of the realtime collaborator stores.

Every call opens a short-lived session so no database connection is held for
the lifetime of a websocket. Database failures surface as
:class:`~beacon.errors.PersistenceError`.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterator, Sequence

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from beacon.realtime.calls import CallSession, CallSettings
from beacon.errors import NotFound, PersistenceError
from beacon.realtime.events import MessageDraft
from beacon.realtime.stores import ChatInfo
from beacon.voice.signaling import SignalingBuffer

from app.database import session_scope
from app.models import Call, CallStatus, Chat, ChatParticipant, Message, MessageStatus, PresenceStatus, User
from app.schemas.messages import MessageRead

logger = logging.getLogger(__name__)

ACTIVE_CALL_STATUSES = (CallStatus.RINGING, CallStatus.CONNECTED)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _aware(value: datetime | None) -> datetime | None:
    # SQLite drops the offset of timezone-aware columns.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class _SqlStore:
    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    @contextmanager
    def _scope(self) -> Iterator[Session]:
        try:
            with session_scope(self._session_factory) as db:
                yield db
        except SQLAlchemyError as exc:
            logger.warning("Database operation failed in %s", type(self).__name__, exc_info=True)
            raise PersistenceError(str(exc)) from exc


# ---------------------------------------------------------------------------
# Chats and messages
# ---------------------------------------------------------------------------


class SqlChatStore(_SqlStore):
    async def get_chat(self, chat_id: int) -> ChatInfo | None:
        with self._scope() as db:
            chat = db.get(Chat, chat_id)
            if chat is None:
                return None
            stmt = (
                select(ChatParticipant.user_id)
                .where(ChatParticipant.chat_id == chat_id)
                .order_by(ChatParticipant.id)
            )
            participants = tuple(db.execute(stmt).scalars())
            return ChatInfo(chat_id=chat.id, participant_ids=participants, is_direct=chat.is_direct)

    async def set_active_call(self, chat_id: int, call_id: str) -> None:
        with self._scope() as db:
            db.execute(update(Chat).where(Chat.id == chat_id).values(active_call_id=call_id))

    async def clear_active_call(self, chat_id: int, call_id: str) -> None:
        with self._scope() as db:
            db.execute(
                update(Chat)
                .where(Chat.id == chat_id, Chat.active_call_id == call_id)
                .values(active_call_id=None)
            )


def serialize_message(message: Message) -> dict[str, Any]:
    return MessageRead.model_validate(message).model_dump(mode="json", by_alias=True)


class SqlMessageStore(_SqlStore):
    async def create_message(self, sender_id: int, draft: MessageDraft) -> dict[str, Any]:
        with self._scope() as db:
            for reference in (draft.reply_to, draft.forwarded_from):
                if reference is None:
                    continue
                target = db.get(Message, reference)
                if target is None or (reference == draft.reply_to and target.chat_id != draft.chat_id):
                    raise NotFound("Referenced message not found")

            message = Message(
                chat_id=draft.chat_id,
                sender_id=sender_id,
                content=draft.content,
                type=draft.type,
                status=MessageStatus.SENT,
                reply_to_id=draft.reply_to,
                forwarded_from_id=draft.forwarded_from,
                created_at=_now(),
            )
            db.add(message)
            db.flush()
            db.execute(
                update(Chat)
                .where(Chat.id == draft.chat_id)
                .values(last_message_id=message.id, last_message_at=message.created_at)
            )
            db.refresh(message, ["sender"])
            return serialize_message(message)

    async def mark_chat_read(self, chat_id: int, user_id: int) -> int:
        now = _now()
        with self._scope() as db:
            result = db.execute(
                update(Message)
                .where(
                    Message.chat_id == chat_id,
                    Message.sender_id != user_id,
                    Message.status == MessageStatus.SENT,
                )
                .values(status=MessageStatus.READ, read_at=now)
            )
            db.execute(
                update(ChatParticipant)
                .where(ChatParticipant.chat_id == chat_id, ChatParticipant.user_id == user_id)
                .values(unread_count=0, last_read_at=now)
            )
            return result.rowcount or 0

    async def increment_unread(self, chat_id: int, user_id: int) -> None:
        with self._scope() as db:
            db.execute(
                update(ChatParticipant)
                .where(ChatParticipant.chat_id == chat_id, ChatParticipant.user_id == user_id)
                .values(unread_count=ChatParticipant.unread_count + 1)
            )


# ---------------------------------------------------------------------------
# Calls
# ---------------------------------------------------------------------------


def _call_values(session: CallSession) -> dict[str, Any]:
    return {
        "call_id": session.call_id,
        "chat_id": session.chat_id,
        "initiator_id": session.initiator_id,
        "callee_id": session.other_participant(session.initiator_id),
        "type": session.media_type,
        "status": session.status,
        "started_at": session.started_at,
        "answered_at": session.answered_at,
        "ended_at": session.ended_at,
        "end_reason": session.end_reason,
        "rejection_reason": session.rejection_reason,
        "duration": session.duration,
        "webrtc_data": session.signaling.to_public(),
        "settings": {str(user): flags.to_public() for user, flags in session.settings.items()},
    }


def _to_session(row: Call) -> CallSession:
    return CallSession(
        call_id=row.call_id,
        chat_id=row.chat_id,
        initiator_id=row.initiator_id,
        participant_ids=(row.initiator_id, row.callee_id),
        media_type=row.type,
        status=row.status,
        started_at=_aware(row.started_at),
        answered_at=_aware(row.answered_at),
        ended_at=_aware(row.ended_at),
        end_reason=row.end_reason,
        rejection_reason=row.rejection_reason,
        duration=row.duration,
        signaling=SignalingBuffer.from_public(row.webrtc_data),
        settings={int(user): CallSettings.from_public(flags) for user, flags in (row.settings or {}).items()},
    )


class SqlCallStore(_SqlStore):
    async def create(self, session: CallSession) -> None:
        with self._scope() as db:
            db.add(Call(**_call_values(session)))

    async def save(self, session: CallSession) -> None:
        with self._scope() as db:
            row = db.execute(select(Call).where(Call.call_id == session.call_id)).scalar_one_or_none()
            if row is None:
                db.add(Call(**_call_values(session)))
                return
            for key, value in _call_values(session).items():
                setattr(row, key, value)

    async def get(self, call_id: str) -> CallSession | None:
        with self._scope() as db:
            row = db.execute(select(Call).where(Call.call_id == call_id)).scalar_one_or_none()
            return _to_session(row) if row is not None else None

    async def find_active(self, chat_id: int) -> CallSession | None:
        with self._scope() as db:
            stmt = (
                select(Call)
                .where(Call.chat_id == chat_id, Call.status.in_(ACTIVE_CALL_STATUSES))
                .order_by(Call.started_at.desc())
                .limit(1)
            )
            row = db.execute(stmt).scalar_one_or_none()
            return _to_session(row) if row is not None else None

    async def list_for_chat(self, chat_id: int, limit: int) -> Sequence[CallSession]:
        with self._scope() as db:
            stmt = (
                select(Call)
                .where(Call.chat_id == chat_id)
                .order_by(Call.started_at.desc(), Call.id.desc())
                .limit(limit)
            )
            return [_to_session(row) for row in db.execute(stmt).scalars()]


# ---------------------------------------------------------------------------
# Presence
# ---------------------------------------------------------------------------


class SqlUserStatusStore(_SqlStore):
    async def set_online(self, user_id: int) -> None:
        with self._scope() as db:
            user = db.get(User, user_id)
            if user is None:
                return
            user.is_online = True
            user.last_seen_at = _now()
            if user.presence_status == PresenceStatus.OFFLINE:
                user.presence_status = PresenceStatus.ONLINE

    async def set_offline(self, user_id: int) -> None:
        with self._scope() as db:
            db.execute(
                update(User)
                .where(User.id == user_id)
                .values(is_online=False, last_seen_at=_now(), presence_status=PresenceStatus.OFFLINE)
            )

    async def touch(self, user_id: int) -> None:
        with self._scope() as db:
            db.execute(update(User).where(User.id == user_id).values(last_seen_at=_now()))

    async def set_status(self, user_id: int, status: PresenceStatus) -> None:
        with self._scope() as db:
            db.execute(update(User).where(User.id == user_id).values(presence_status=status))


__all__ = [
    "SqlCallStore",
    "SqlChatStore",
    "SqlMessageStore",
    "SqlUserStatusStore",
    "serialize_message",
]
