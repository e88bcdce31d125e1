from __future__ import annotations

import asyncio
import logging

import pytest

from app.models.enums import CallStatus, CallType
from app.monitoring.metrics import realtime_reaper_actions_total

from realtime_fakes import DummyWebSocket, RealtimeHarness

ALICE, BOB = 1, 2
CHAT = 10


@pytest.fixture()
def harness() -> RealtimeHarness:
    harness = RealtimeHarness()
    harness.chats.add(CHAT, (ALICE, BOB))
    return harness


@pytest.mark.anyio("asyncio")
async def test_silent_connection_in_connected_call_is_reaped(harness: RealtimeHarness) -> None:
    alice, alice_ws = await harness.connect(ALICE)
    bob, bob_ws = await harness.connect(BOB)
    session = (await harness.coordinator.initiate_call(CHAT, ALICE, CallType.AUDIO)).session
    await harness.coordinator.accept_call(session.call_id, BOB)

    harness.clock.advance(30)
    alice.last_activity_at -= 301
    report = await harness.services.reaper.run_once()

    assert report.connections == 1
    assert harness.services.registry.resolve(ALICE) is None
    assert alice_ws.closed_with == (1008, "Connection timed out")
    assert bob_ws.last("user_offline")["userId"] == ALICE
    ended = bob_ws.last("call:ended")
    assert ended["reason"] == "timeout"
    assert ended["duration"] == 30
    assert harness.calls.records[session.call_id].status is CallStatus.ENDED
    assert harness.coordinator.active_count() == 0
    assert realtime_reaper_actions_total._samples[("connections",)] == 1.0
    assert harness.services.registry.resolve(BOB) is bob


@pytest.mark.anyio("asyncio")
async def test_second_run_is_a_no_op(harness: RealtimeHarness) -> None:
    alice, _ = await harness.connect(ALICE)
    await harness.connect(BOB)
    await harness.coordinator.initiate_call(CHAT, BOB, CallType.AUDIO)
    alice.last_activity_at -= 301
    harness.clock.advance(601)

    first = await harness.services.reaper.run_once()
    second = await harness.services.reaper.run_once()

    assert first.connections == 1
    assert first.calls == 0
    assert (second.connections, second.calls, second.typing) == (0, 0, 0)
    assert harness.coordinator.active_count() == 0


@pytest.mark.anyio("asyncio")
async def test_idle_call_is_expired(harness: RealtimeHarness) -> None:
    await harness.connect(ALICE)
    _, bob_ws = await harness.connect(BOB)
    session = (await harness.coordinator.initiate_call(CHAT, ALICE, CallType.AUDIO)).session
    harness.clock.advance(601)

    report = await harness.services.reaper.run_once()

    assert report.calls == 1
    assert bob_ws.last("call:ended") == {
        "callId": session.call_id,
        "reason": "timeout",
        "duration": 0,
        "endedBy": None,
    }
    assert realtime_reaper_actions_total._samples[("calls",)] == 1.0


@pytest.mark.anyio("asyncio")
async def test_failing_sweep_does_not_stop_the_others(harness: RealtimeHarness, caplog) -> None:
    await harness.connect(ALICE)
    _, bob_ws = await harness.connect(BOB)
    await harness.services.rooms.join(CHAT, BOB, harness.services.registry.resolve(BOB))
    await harness.services.rooms.notify_typing(CHAT, ALICE, True)

    async def broken_expire(now=None):
        raise RuntimeError("boom")

    harness.coordinator.expire_stale = broken_expire
    started = harness.services.rooms.typing._entries[CHAT][ALICE]

    with caplog.at_level(logging.ERROR):
        report = await harness.services.reaper.run_once(monotonic_now=started + 10)

    assert report.typing == 1
    assert bob_ws.last("user_typing")["isTyping"] is False
    assert any("Stale call sweep failed" in record.getMessage() for record in caplog.records)


@pytest.mark.anyio("asyncio")
async def test_start_and_stop_background_task(harness: RealtimeHarness) -> None:
    reaper = harness.services.reaper
    reaper._interval = 0.01

    await reaper.start()
    assert reaper.running
    await asyncio.sleep(0.03)
    await reaper.stop()

    assert not reaper.running
    await reaper.stop()


@pytest.mark.anyio("asyncio")
async def test_reconnect_while_stale_socket_closes_keeps_calls(harness: RealtimeHarness) -> None:
    gate = asyncio.Event()
    alice, _ = await harness.connect(ALICE, DummyWebSocket(close_gate=gate))
    _, bob_ws = await harness.connect(BOB)
    session = (await harness.coordinator.initiate_call(CHAT, ALICE, CallType.AUDIO)).session
    await harness.coordinator.accept_call(session.call_id, BOB)
    alice.last_activity_at -= 301

    sweep = asyncio.create_task(harness.services.reaper.run_once())
    while not alice.closed:
        await asyncio.sleep(0)
    returned, _ = await harness.connect(ALICE)
    gate.set()
    report = await sweep

    assert report.connections == 1
    assert harness.services.registry.resolve(ALICE) is returned
    assert harness.services.presence.is_online(ALICE)
    assert not bob_ws.events("call:ended")
    assert not bob_ws.events("user_offline")
    assert harness.coordinator.active_count() == 1
    assert harness.calls.records[session.call_id].status is CallStatus.CONNECTED
