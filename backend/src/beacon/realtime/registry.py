"""Live connection bookkeeping for the realtime gateway."""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from fastapi.websockets import WebSocket, WebSocketDisconnect, WebSocketState

from app.monitoring.metrics import realtime_connections, realtime_delivery_failures_total, realtime_events_total


logger = logging.getLogger(__name__)


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def build_event(event: str, data: Any = None) -> dict[str, Any]:
    """Return the wire frame used for every server to client event."""

    return {"event": event, "data": data if data is not None else {}}


async def safe_send_json(websocket: WebSocket, data: dict[str, Any]) -> bool:
    """Safely send JSON data through websocket, handling disconnections gracefully.

    Returns True if message was sent successfully, False otherwise.
    """
    if websocket.application_state != WebSocketState.CONNECTED:
        return False
    try:
        await websocket.send_json(data)
        return True
    except (WebSocketDisconnect, RuntimeError) as e:
        logger.debug("Failed to send websocket message: %s", e)
        return False


# ---------------------------------------------------------------------------
# Connection handles
# ---------------------------------------------------------------------------


@dataclass(slots=True, eq=False)
class ConnectionHandle:
    """One physical websocket session owned by a user."""

    user_id: int
    websocket: WebSocket
    connection_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    connected_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    last_activity_at: float = field(default_factory=time.monotonic)
    closed: bool = False

    @property
    def is_alive(self) -> bool:
        if self.closed:
            return False
        return self.websocket.application_state == WebSocketState.CONNECTED

    def touch(self) -> None:
        self.last_activity_at = time.monotonic()

    async def send(self, event: str, data: Any = None) -> bool:
        if self.closed:
            return False
        return await safe_send_json(self.websocket, build_event(event, data))

    async def close(self, code: int = 1000, reason: str | None = None) -> None:
        if self.closed:
            return
        self.closed = True
        if WebSocketState.DISCONNECTED in (self.websocket.application_state, self.websocket.client_state):
            return
        try:
            await self.websocket.close(code=code, reason=reason)
        except (RuntimeError, WebSocketDisconnect):
            logger.debug("Websocket for user %s was already closed", self.user_id)


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class ConnectionRegistry:
    """Map each user to exactly one live connection.

    All operations are synchronous so they never interleave with other
    coroutines; callers treat a missing entry as "user offline".
    """

    def __init__(self) -> None:
        self._entries: dict[int, ConnectionHandle] = {}

    def register(self, user_id: int, handle: ConnectionHandle) -> ConnectionHandle | None:
        """Install *handle* for *user_id* and return the superseded handle, if any.

        The entry is overwritten before the caller tears the old transport down,
        so the old connection's disconnect path cannot remove the new session.
        """

        prior = self._entries.get(user_id)
        self._entries[user_id] = handle
        if prior is handle:
            return None
        realtime_connections.set(len(self._entries))
        return prior

    def resolve(self, user_id: int) -> ConnectionHandle | None:
        return self._entries.get(user_id)

    def unregister(self, connection_id: str, user_id: int) -> bool:
        current = self._entries.get(user_id)
        if current is None or current.connection_id != connection_id:
            return False
        del self._entries[user_id]
        realtime_connections.set(len(self._entries))
        return True

    def count(self) -> int:
        return len(self._entries)

    def handles(self) -> list[ConnectionHandle]:
        return list(self._entries.values())

    def is_current(self, handle: ConnectionHandle) -> bool:
        return self._entries.get(handle.user_id) is handle

    def touch(self, user_id: int) -> None:
        handle = self._entries.get(user_id)
        if handle is not None:
            handle.touch()

    async def send_to(self, user_id: int, event: str, data: Any = None) -> bool:
        """Deliver an event to the user's live connection.

        The registry is consulted on every call; an absent user is a skipped
        delivery, not an error.
        """

        handle = self._entries.get(user_id)
        if handle is None:
            realtime_delivery_failures_total.labels(event, "offline").inc()
            logger.debug("Skipping %s for offline user %s", event, user_id)
            return False
        delivered = await handle.send(event, data)
        if delivered:
            realtime_events_total.labels(event.split(":", 1)[0], "out", event).inc()
        else:
            realtime_delivery_failures_total.labels(event, "send_failed").inc()
            logger.debug(
                "Failed to deliver %s",
                event,
                extra={"user_id": user_id, "connection_id": handle.connection_id},
            )
        return delivered

    async def broadcast(self, event: str, data: Any = None, *, exclude_user: int | None = None) -> int:
        delivered = 0
        for handle in self.handles():
            if handle.user_id == exclude_user:
                continue
            if await self.send_to(handle.user_id, event, data):
                delivered += 1
        return delivered


__all__ = [
    "ConnectionHandle",
    "ConnectionRegistry",
    "build_event",
    "safe_send_json",
    "utcnow_iso",
]
