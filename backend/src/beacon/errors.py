"""Error taxonomy shared by the realtime components.

Every error carries a human readable ``message`` that is safe to forward to
clients. The gateway turns them into ``error``/``call:error`` events and the
HTTP layer maps them onto status codes.
"""

from __future__ import annotations


class RealtimeError(Exception):
    """Base class for failures reported back to the acting client."""

    code = "internal_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class Unauthenticated(RealtimeError):
    code = "unauthenticated"


class Forbidden(RealtimeError):
    code = "forbidden"


class NotFound(RealtimeError):
    code = "not_found"


class InvalidState(RealtimeError):
    code = "invalid_state"


class InvalidSignalingPayload(RealtimeError):
    code = "invalid_signaling_payload"


class RateLimited(RealtimeError):
    code = "rate_limited"


class InvalidChatTopology(RealtimeError):
    code = "invalid_chat_topology"


class InternalError(RealtimeError):
    code = "internal_error"


class PersistenceError(Exception):
    """Raised by store implementations when the backing database fails."""


__all__ = [
    "RealtimeError",
    "Unauthenticated",
    "Forbidden",
    "NotFound",
    "InvalidState",
    "InvalidSignalingPayload",
    "RateLimited",
    "InvalidChatTopology",
    "InternalError",
    "PersistenceError",
]
