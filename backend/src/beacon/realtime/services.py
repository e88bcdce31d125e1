"""Assembly of the realtime components into one injectable container."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable

from .calls import CallCoordinator, utcnow
from .gateway import RealtimeGateway
from .presence import PresenceTracker
from .reaper import StaleStateReaper
from .registry import ConnectionRegistry
from .rooms import ChatRoomBroker
from .stores import Authenticator, CallStore, ChatStore, MessageStore, UserStatusStore


logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RealtimeServices:
    registry: ConnectionRegistry
    presence: PresenceTracker
    rooms: ChatRoomBroker
    calls: CallCoordinator
    gateway: RealtimeGateway
    reaper: StaleStateReaper

    async def start(self) -> None:
        await self.reaper.start()
        logger.info("Realtime services started")

    async def stop(self) -> None:
        await self.reaper.stop()
        for handle in self.registry.handles():
            await self.gateway.disconnect(handle, "shutdown")
        logger.info("Realtime services stopped")

    def stats(self) -> dict[str, int]:
        return {"connections": self.registry.count(), "activeCalls": self.calls.active_count()}


def build_realtime(
    settings: Any,
    *,
    chats: ChatStore,
    messages: MessageStore,
    calls: CallStore,
    statuses: UserStatusStore,
    authenticator: Authenticator,
    clock: Callable[[], datetime] | None = None,
) -> RealtimeServices:
    """Wire a fresh, isolated set of realtime components.

    *settings* only needs the realtime attributes of :class:`app.config.Settings`.
    """

    registry = ConnectionRegistry()
    presence = PresenceTracker(registry, statuses)
    rooms = ChatRoomBroker(
        registry, chats, messages, typing_ttl_seconds=float(settings.realtime_typing_ttl_seconds)
    )
    coordinator = CallCoordinator(
        registry,
        chats,
        calls,
        join_stale_seconds=settings.call_join_stale_seconds,
        call_stale_seconds=settings.realtime_call_stale_seconds,
        rate_limit_count=settings.call_rate_limit_count,
        rate_limit_window_seconds=settings.call_rate_limit_window_seconds,
        clock=clock or utcnow,
    )
    gateway = RealtimeGateway(registry, presence, rooms, coordinator, authenticator)
    reaper = StaleStateReaper(
        registry,
        coordinator,
        rooms,
        gateway.disconnect,
        interval_seconds=settings.realtime_reaper_interval_seconds,
        connection_stale_seconds=settings.realtime_connection_stale_seconds,
    )
    return RealtimeServices(
        registry=registry,
        presence=presence,
        rooms=rooms,
        calls=coordinator,
        gateway=gateway,
        reaper=reaper,
    )


__all__ = ["RealtimeServices", "build_realtime"]
