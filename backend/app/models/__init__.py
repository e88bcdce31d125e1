"""Database models package."""

from .base import Base
from .chat import Call, Chat, ChatParticipant, Message, User
from .enums import CallEndReason, CallStatus, CallType, MessageStatus, MessageType, PresenceStatus

__all__ = [
    "Base",
    "User",
    "Chat",
    "ChatParticipant",
    "Message",
    "Call",
    "CallEndReason",
    "CallStatus",
    "CallType",
    "MessageStatus",
    "MessageType",
    "PresenceStatus",
]
