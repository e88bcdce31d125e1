"""Periodic cleanup of connections, calls and typing indicators left behind."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable

from app.models.enums import CallEndReason
from app.monitoring.metrics import realtime_reaper_actions_total

from .calls import CallCoordinator
from .registry import ConnectionHandle, ConnectionRegistry
from .rooms import ChatRoomBroker


logger = logging.getLogger(__name__)

DisconnectCallback = Callable[[ConnectionHandle, str], Awaitable[bool]]


@dataclass(slots=True)
class SweepReport:
    connections: int = 0
    calls: int = 0
    typing: int = 0


class StaleStateReaper:
    """Run the stale state sweeps on a fixed interval.

    Each sweep only acts on entries that satisfy its own age predicate, so the
    reaper can run alongside normal request handling and running it twice in a
    row is a no-op the second time.
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        calls: CallCoordinator,
        rooms: ChatRoomBroker,
        disconnect: DisconnectCallback,
        *,
        interval_seconds: float = 30,
        connection_stale_seconds: float = 300,
    ) -> None:
        self._registry = registry
        self._calls = calls
        self._rooms = rooms
        self._disconnect = disconnect
        self._interval = interval_seconds
        self._connection_stale = connection_stale_seconds
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="realtime-stale-reaper")

    async def stop(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
        self._task = None

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            await self.run_once()

    async def run_once(
        self, *, monotonic_now: float | None = None, wall_now: datetime | None = None
    ) -> SweepReport:
        report = SweepReport()
        try:
            report.connections = await self.sweep_connections(now=monotonic_now)
        except Exception:
            logger.exception("Stale connection sweep failed")
        try:
            report.calls = await self.sweep_calls(now=wall_now)
        except Exception:
            logger.exception("Stale call sweep failed")
        try:
            report.typing = await self._rooms.expire_typing(now=monotonic_now)
        except Exception:
            logger.exception("Typing indicator sweep failed")
        if report.typing:
            realtime_reaper_actions_total.labels("typing").inc(report.typing)
        if report.connections or report.calls:
            logger.info(
                "Reaper removed %s connection(s) and %s call(s)", report.connections, report.calls
            )
        return report

    async def sweep_connections(self, *, now: float | None = None) -> int:
        now = time.monotonic() if now is None else now
        reaped = 0
        for handle in self._registry.handles():
            idle = now - handle.last_activity_at
            if handle.is_alive and idle <= self._connection_stale:
                continue
            logger.info(
                "Dropping stale connection of user %s",
                handle.user_id,
                extra={"connection_id": handle.connection_id, "idle_seconds": round(idle, 1)},
            )
            if not await self._disconnect(handle, "stale"):
                continue
            reaped += 1
            if self._registry.resolve(handle.user_id) is not None:
                # The user reconnected while the stale socket was closing.
                continue
            await self._calls.end_user_calls(handle.user_id, CallEndReason.TIMEOUT.value)
        if reaped:
            realtime_reaper_actions_total.labels("connections").inc(reaped)
        return reaped

    async def sweep_calls(self, *, now: datetime | None = None) -> int:
        expired = await self._calls.expire_stale(now)
        if expired:
            realtime_reaper_actions_total.labels("calls").inc(expired)
        return expired


__all__ = ["StaleStateReaper", "SweepReport"]
