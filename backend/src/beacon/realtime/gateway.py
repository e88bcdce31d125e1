"""Entry point that ties websocket sessions to the realtime components."""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict

from fastapi import status
from fastapi.websockets import WebSocket
from pydantic import ValidationError

from app.monitoring.metrics import realtime_events_total

from ..errors import RealtimeError, Unauthenticated
from .calls import CallCoordinator
from .events import (
    CallAccept,
    CallEnd,
    CallInitiate,
    CallReject,
    ClientEvent,
    JoinChat,
    LeaveChat,
    NewMessage,
    Ping,
    Pong,
    TypingStart,
    TypingStop,
    UpdateStatus,
    describe_validation_error,
    parse_client_event,
)
from .presence import PresenceTracker
from .registry import ConnectionHandle, ConnectionRegistry, utcnow_iso
from .rooms import ChatRoomBroker
from .stores import Authenticator, Principal


logger = logging.getLogger(__name__)

Handler = Callable[[ConnectionHandle, Any], Awaitable[None]]


class RealtimeGateway:
    """Authenticate, register and dispatch websocket sessions.

    The gateway is the only component that sees raw frames. Frames are
    validated against the closed :data:`~beacon.realtime.events.ClientEvent`
    union before any component runs, and every :class:`RealtimeError` raised by
    a component is reported back to the acting client instead of closing the
    connection.
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        presence: PresenceTracker,
        rooms: ChatRoomBroker,
        calls: CallCoordinator,
        authenticator: Authenticator,
    ) -> None:
        self.registry = registry
        self.presence = presence
        self.rooms = rooms
        self.calls = calls
        self._authenticator = authenticator
        self._handlers: Dict[str, Handler] = {
            "join_chat": self._on_join_chat,
            "leave_chat": self._on_leave_chat,
            "typing_start": self._on_typing,
            "typing_stop": self._on_typing,
            "new_message": self._on_new_message,
            "call:initiate": self._on_call_initiate,
            "call:accept": self._on_call_accept,
            "call:reject": self._on_call_reject,
            "call:end": self._on_call_end,
            "update_status": self._on_update_status,
            "ping": self._on_ping,
            "pong": self._on_pong,
        }

    # -- connection lifecycle ----------------------------------------------

    async def authenticate(self, token: str | None) -> Principal:
        if not token:
            raise Unauthenticated("Authentication token required")
        return await self._authenticator.verify(token)

    async def connect(self, principal: Principal, websocket: WebSocket) -> ConnectionHandle:
        handle = ConnectionHandle(user_id=principal.user_id, websocket=websocket)

        prior = self.registry.register(principal.user_id, handle)
        if prior is not None:
            logger.info(
                "Replacing existing session of user %s",
                principal.user_id,
                extra={"connection_id": prior.connection_id},
            )
            await self.rooms.drop_connection(prior.user_id, prior.connection_id)
            await prior.close(code=status.WS_1000_NORMAL_CLOSURE, reason="Session replaced by a new connection")

        await self.presence.mark_online(
            principal.user_id, replaced=prior is not None, profile=principal.to_public()
        )
        await handle.send(
            "connection_success",
            {
                "userId": principal.user_id,
                "connectionId": handle.connection_id,
                "connectedAt": handle.connected_at.isoformat(),
                "totalConnections": self.registry.count(),
                "timestamp": utcnow_iso(),
            },
        )
        return handle

    async def disconnect(self, handle: ConnectionHandle, reason: str = "closed") -> bool:
        """Release *handle*; returns whether it was still the user's session.

        The user is only marked offline if no newer session registered while
        the old socket was being closed.
        """

        removed = self.registry.unregister(handle.connection_id, handle.user_id)
        await self.rooms.drop_connection(handle.user_id, handle.connection_id)
        if reason == "stale":
            await handle.close(code=status.WS_1008_POLICY_VIOLATION, reason="Connection timed out")
        else:
            await handle.close()
        if removed and self.registry.resolve(handle.user_id) is None:
            await self.presence.mark_offline(handle.user_id)
        logger.debug(
            "Connection closed",
            extra={"user_id": handle.user_id, "connection_id": handle.connection_id, "reason": reason},
        )
        return removed

    # -- inbound frames ----------------------------------------------------

    async def handle_frame(self, handle: ConnectionHandle, frame: Any) -> None:
        handle.touch()
        try:
            event = parse_client_event(frame)
        except ValidationError as exc:
            await handle.send("error", {"message": describe_validation_error(frame, exc)})
            return

        realtime_events_total.labels(event.event.split(":", 1)[0], "in", event.event).inc()
        try:
            await self._handlers[event.event](handle, event)
        except RealtimeError as exc:
            logger.info(
                "Rejected %s from user %s: %s", event.event, handle.user_id, exc.message,
                extra={"code": exc.code},
            )
            await self._report(handle, event, exc)

    async def _report(self, handle: ConnectionHandle, event: ClientEvent, exc: RealtimeError) -> None:
        payload: Dict[str, Any] = {"message": exc.message, "code": exc.code}
        if event.event.startswith("call:"):
            call_id = getattr(event.data, "call_id", None)
            if call_id:
                payload["callId"] = call_id
            await handle.send("call:error", payload)
        else:
            await handle.send("error", payload)

    # -- handlers ----------------------------------------------------------

    async def _on_join_chat(self, handle: ConnectionHandle, event: JoinChat) -> None:
        await self.rooms.join(event.data.chat_id, handle.user_id, handle)

    async def _on_leave_chat(self, handle: ConnectionHandle, event: LeaveChat) -> None:
        await self.rooms.leave(event.data.chat_id, handle.user_id)
        await handle.send("chat_left", {"chatId": event.data.chat_id})

    async def _on_typing(self, handle: ConnectionHandle, event: TypingStart | TypingStop) -> None:
        await self.rooms.notify_typing(event.data.chat_id, handle.user_id, event.event == "typing_start")

    async def _on_new_message(self, handle: ConnectionHandle, event: NewMessage) -> None:
        message = await self.rooms.post_message(event.data.chat_id, handle.user_id, event.data)
        if not self.rooms.is_subscribed(event.data.chat_id, handle.user_id):
            await handle.send("message_received", message)

    async def _on_call_initiate(self, handle: ConnectionHandle, event: CallInitiate) -> None:
        initiation = await self.calls.initiate_call(
            event.data.chat_id, handle.user_id, event.data.type, target_user_id=event.data.target_user_id
        )
        await handle.send("call:initiated", initiation.to_public())

    async def _on_call_accept(self, handle: ConnectionHandle, event: CallAccept) -> None:
        await self.calls.accept_call(event.data.call_id, handle.user_id)

    async def _on_call_reject(self, handle: ConnectionHandle, event: CallReject) -> None:
        session = await self.calls.reject_call(event.data.call_id, handle.user_id, event.data.reason)
        await handle.send(
            "call:rejected",
            {"callId": session.call_id, "rejectedBy": handle.user_id, "reason": session.rejection_reason},
        )

    async def _on_call_end(self, handle: ConnectionHandle, event: CallEnd) -> None:
        await self.calls.end_call(event.data.call_id, handle.user_id, event.data.reason)

    async def _on_update_status(self, handle: ConnectionHandle, event: UpdateStatus) -> None:
        await self.presence.update_status(handle.user_id, event.data.status)
        await handle.send(
            "user_status_update",
            {"userId": handle.user_id, "status": event.data.status.value, "timestamp": utcnow_iso()},
        )

    async def _on_ping(self, handle: ConnectionHandle, event: Ping) -> None:
        await self.presence.record_heartbeat(handle.user_id)
        self.calls.touch_user_calls(handle.user_id)
        await handle.send("pong", {"timestamp": utcnow_iso()})

    async def _on_pong(self, handle: ConnectionHandle, event: Pong) -> None:
        # Reply to a server keepalive; the frame already refreshed activity.
        return None


__all__ = ["RealtimeGateway"]
