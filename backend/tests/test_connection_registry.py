from __future__ import annotations

import pytest
from fastapi.websockets import WebSocketState

from app.monitoring.metrics import realtime_connections, realtime_delivery_failures_total, realtime_events_total
from beacon.realtime.registry import ConnectionHandle, ConnectionRegistry, build_event

from realtime_fakes import DummyWebSocket


def _handle(user_id: int, **kwargs) -> ConnectionHandle:
    return ConnectionHandle(user_id=user_id, websocket=DummyWebSocket(**kwargs))


def test_register_returns_superseded_handle() -> None:
    registry = ConnectionRegistry()
    first = _handle(1)
    second = _handle(1)

    assert registry.register(1, first) is None
    assert registry.register(1, second) is first
    assert registry.resolve(1) is second
    assert registry.count() == 1
    assert realtime_connections.value() == 1


def test_unregister_ignores_stale_connection_id() -> None:
    registry = ConnectionRegistry()
    old = _handle(7)
    new = _handle(7)
    registry.register(7, old)
    registry.register(7, new)

    assert registry.unregister(old.connection_id, 7) is False
    assert registry.resolve(7) is new

    assert registry.unregister(new.connection_id, 7) is True
    assert registry.resolve(7) is None
    assert registry.unregister(new.connection_id, 7) is False
    assert realtime_connections.value() == 0


def test_is_current_tracks_replacement() -> None:
    registry = ConnectionRegistry()
    old = _handle(3)
    registry.register(3, old)
    assert registry.is_current(old)

    registry.register(3, _handle(3))
    assert not registry.is_current(old)


@pytest.mark.anyio("asyncio")
async def test_send_to_offline_user_is_counted_not_raised() -> None:
    registry = ConnectionRegistry()

    assert await registry.send_to(99, "user_typing", {"chatId": 1}) is False
    assert realtime_delivery_failures_total._samples[("user_typing", "offline")] == 1.0


@pytest.mark.anyio("asyncio")
async def test_send_to_failing_socket_is_counted() -> None:
    registry = ConnectionRegistry()
    handle = _handle(5, fail_sends=True)
    registry.register(5, handle)

    assert await registry.send_to(5, "call:incoming", {"callId": "c"}) is False
    assert realtime_delivery_failures_total._samples[("call:incoming", "send_failed")] == 1.0


@pytest.mark.anyio("asyncio")
async def test_send_to_wraps_payload_in_event_frame() -> None:
    registry = ConnectionRegistry()
    handle = _handle(5)
    registry.register(5, handle)

    assert await registry.send_to(5, "call:accepted", {"callId": "c"})
    assert handle.websocket.sent == [build_event("call:accepted", {"callId": "c"})]
    assert realtime_events_total._samples[("call", "out", "call:accepted")] == 1.0


@pytest.mark.anyio("asyncio")
async def test_broadcast_skips_excluded_user() -> None:
    registry = ConnectionRegistry()
    handles = {user_id: _handle(user_id) for user_id in (1, 2, 3)}
    for user_id, handle in handles.items():
        registry.register(user_id, handle)

    delivered = await registry.broadcast("user_online", {"userId": 1}, exclude_user=1)

    assert delivered == 2
    assert handles[1].websocket.sent == []
    assert handles[2].websocket.events("user_online")


@pytest.mark.anyio("asyncio")
async def test_handle_close_is_idempotent() -> None:
    handle = _handle(1)

    await handle.close(code=1008, reason="Connection timed out")
    await handle.close()

    assert handle.websocket.closed_with == (1008, "Connection timed out")
    assert not handle.is_alive
    assert await handle.send("pong") is False


def test_touch_refreshes_activity() -> None:
    registry = ConnectionRegistry()
    handle = _handle(1)
    handle.last_activity_at = 0.0
    registry.register(1, handle)

    registry.touch(1)
    registry.touch(404)

    assert handle.last_activity_at > 0.0
    assert handle.websocket.application_state == WebSocketState.CONNECTED
