"""Unit tests for the inbound event union and the HTTP request bodies."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from app.models.enums import CallType, MessageType, PresenceStatus
from app.schemas import CallSettingsUpdate, MessageCreate
from beacon.realtime.events import (
    MAX_MESSAGE_LENGTH,
    CallInitiate,
    JoinChat,
    NewMessage,
    Ping,
    UpdateStatus,
    describe_validation_error,
    parse_client_event,
)


def _reject(frame) -> str:
    with pytest.raises(ValidationError) as excinfo:
        parse_client_event(frame)
    return describe_validation_error(frame, excinfo.value)


def test_join_chat_accepts_wrapped_and_bare_ids():
    wrapped = parse_client_event({"event": "join_chat", "data": {"chatId": 5}})
    bare = parse_client_event({"event": "join_chat", "data": "5"})

    assert isinstance(wrapped, JoinChat)
    assert wrapped.data.chat_id == bare.data.chat_id == 5


def test_call_initiate_reads_camel_case_fields():
    event = parse_client_event(
        {"event": "call:initiate", "data": {"chatId": 3, "type": "video", "targetUserId": 8}}
    )

    assert isinstance(event, CallInitiate)
    assert event.data.type is CallType.VIDEO
    assert event.data.target_user_id == 8


def test_new_message_defaults_to_text():
    event = parse_client_event({"event": "new_message", "data": {"chatId": 1, "content": "hey", "replyTo": 4}})

    assert isinstance(event, NewMessage)
    assert event.data.type is MessageType.TEXT
    assert event.data.reply_to == 4


def test_ping_without_payload():
    assert isinstance(parse_client_event({"event": "ping"}), Ping)


def test_update_status_rejects_offline():
    event = parse_client_event({"event": "update_status", "data": {"status": "idle"}})
    assert isinstance(event, UpdateStatus)
    assert event.data.status is PresenceStatus.IDLE

    message = _reject({"event": "update_status", "data": {"status": "offline"}})
    assert message == "Invalid update_status payload: Offline status is derived from the connection"


def test_unknown_and_missing_event_names():
    assert _reject({"event": "shout", "data": {}}) == "Unknown event: shout"
    assert _reject({"data": {}}) == "Event name is required"


def test_invalid_payloads_name_the_event():
    assert _reject({"event": "call:end", "data": {"callId": ""}}).startswith("Invalid call:end payload")
    assert _reject({"event": "new_message", "data": {"chatId": 1, "content": " "}}) == (
        "Invalid new_message payload: Message content is required"
    )
    too_long = "x" * (MAX_MESSAGE_LENGTH + 1)
    assert _reject({"event": "new_message", "data": {"chatId": 1, "content": too_long}}).startswith(
        "Invalid new_message payload"
    )


def test_message_create_enforces_length():
    assert MessageCreate(content="hello").type is MessageType.TEXT
    with pytest.raises(ValidationError):
        MessageCreate(content="x" * (MAX_MESSAGE_LENGTH + 1))


def test_call_settings_update_only_reports_given_flags():
    update = CallSettingsUpdate.model_validate({"isMuted": True, "isVideoEnabled": None})

    assert update.changes() == {"isMuted": True}
