"""Realtime presence, chat rooms and call signalling."""

from .calls import CallCoordinator, CallInitiation, CallSession  # noqa: F401
from .gateway import RealtimeGateway  # noqa: F401
from .presence import PresenceTracker  # noqa: F401
from .reaper import StaleStateReaper  # noqa: F401
from .registry import ConnectionHandle, ConnectionRegistry  # noqa: F401
from .rooms import ChatRoomBroker  # noqa: F401
from .services import RealtimeServices, build_realtime  # noqa: F401

__all__ = [
    "build_realtime",
    "RealtimeServices",
    "RealtimeGateway",
    "ConnectionRegistry",
    "ConnectionHandle",
    "PresenceTracker",
    "ChatRoomBroker",
    "CallCoordinator",
    "CallInitiation",
    "CallSession",
    "StaleStateReaper",
]
