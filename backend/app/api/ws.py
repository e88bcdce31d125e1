"""WebSocket endpoint for realtime presence, chat and call signalling."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any, Dict, TypeVar

import anyio
from fastapi import APIRouter, WebSocket, status
from fastapi.websockets import WebSocketDisconnect, WebSocketState

from beacon.errors import Unauthenticated
from beacon.realtime import RealtimeServices
from beacon.realtime.registry import build_event, safe_send_json

from app.config import get_settings

router = APIRouter(prefix="/ws", tags=["ws"])

settings = get_settings()

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def iter_keepalive_messages(
    websocket: WebSocket,
    receiver: Callable[[], Awaitable[T]],
    *,
    timeout_seconds: float | int | None,
    ping_interval_seconds: float | int | None,
    ping_payload: Dict[str, Any] | None = None,
) -> AsyncIterator[T]:
    """Yield frames from *receiver*, pinging the client while it stays silent.

    A ping goes out when no frame arrived within *timeout_seconds* and the
    connection has been idle, without a previous ping, for at least
    *ping_interval_seconds*. The iterator ends when the socket goes away.
    """

    ping_payload = ping_payload or build_event("ping")
    timeout = float(timeout_seconds or 0)
    interval = float(ping_interval_seconds or 0)
    idle_since = time.monotonic()
    pinged_at: float | None = None

    while True:
        try:
            if timeout > 0:
                message = await asyncio.wait_for(receiver(), timeout=timeout)
            else:
                message = await receiver()
        except asyncio.TimeoutError:
            if websocket.application_state != WebSocketState.CONNECTED:
                break
            now = time.monotonic()
            last_mark = pinged_at if pinged_at is not None else idle_since
            if interval > 0 and now - last_mark < interval:
                continue
            if not await safe_send_json(websocket, ping_payload):
                break
            pinged_at = now
            continue
        except (RuntimeError, WebSocketDisconnect):
            break
        idle_since = time.monotonic()
        pinged_at = None
        yield message


def _extract_token(websocket: WebSocket) -> str | None:
    token = websocket.query_params.get("token")
    if not token:
        auth_header = websocket.headers.get("Authorization")
        if auth_header and auth_header.startswith("Bearer "):
            token = auth_header.removeprefix("Bearer ").strip()
    return token or None


@router.websocket("/realtime")
async def websocket_realtime(websocket: WebSocket) -> None:
    """Single realtime channel carrying presence, chat rooms and call events."""

    realtime: RealtimeServices | None = getattr(websocket.app.state, "realtime", None)
    if realtime is None:
        await websocket.close(code=status.WS_1011_INTERNAL_ERROR, reason="Realtime services are not running")
        return

    gateway = realtime.gateway
    try:
        principal = await gateway.authenticate(_extract_token(websocket))
    except Unauthenticated as exc:
        logger.info("Rejected websocket connection: %s", exc.message)
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason=exc.message)
        return

    await websocket.accept()
    handle = await gateway.connect(principal, websocket)
    try:
        async for raw_message in iter_keepalive_messages(
            websocket,
            websocket.receive_text,
            timeout_seconds=settings.websocket_keepalive_timeout_seconds,
            ping_interval_seconds=settings.websocket_keepalive_ping_interval_seconds,
        ):
            try:
                payload = json.loads(raw_message)
            except json.JSONDecodeError:
                handle.touch()
                await handle.send("error", {"message": "Invalid payload"})
                continue
            await gateway.handle_frame(handle, payload)
    finally:
        # The server cancels the handler when the client goes away; cleanup must still run.
        with anyio.CancelScope(shield=True):
            await gateway.disconnect(handle)
