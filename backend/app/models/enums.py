from __future__ import annotations

from enum import Enum


class PresenceStatus(str, Enum):
    """User-configurable presence indicator."""

    ONLINE = "online"
    IDLE = "idle"
    DND = "dnd"
    OFFLINE = "offline"


class MessageType(str, Enum):
    """Kinds of chat messages."""

    TEXT = "text"
    IMAGE = "image"
    FILE = "file"
    AUDIO = "audio"
    VIDEO = "video"
    SYSTEM = "system"


class MessageStatus(str, Enum):
    SENT = "sent"
    READ = "read"


class CallType(str, Enum):
    """Media carried by a direct call."""

    AUDIO = "audio"
    VIDEO = "video"


class CallStatus(str, Enum):
    """Lifecycle states of a call session."""

    RINGING = "ringing"
    CONNECTED = "connected"
    ENDED = "ended"
    REJECTED = "rejected"

    @property
    def is_terminal(self) -> bool:
        return self in (CallStatus.ENDED, CallStatus.REJECTED)


class CallEndReason(str, Enum):
    """Why a call reached a terminal state."""

    USER_ENDED = "user_ended"
    USER_REJECTED = "user_rejected"
    TIMEOUT = "timeout"
    FORCE_CLEANUP = "force_cleanup"
