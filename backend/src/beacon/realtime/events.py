"""Closed set of client to server websocket events.

Each inbound frame is ``{"event": <name>, "data": <payload>}``. The frame is
validated once, at the gateway boundary, against the :data:`ClientEvent`
discriminated union so the components only ever see typed payloads.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator, model_validator
from pydantic.alias_generators import to_camel

from app.models.enums import CallType, MessageType, PresenceStatus

MAX_MESSAGE_LENGTH = 2000


class _Payload(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class ChatRef(_Payload):
    chat_id: int

    @model_validator(mode="before")
    @classmethod
    def accept_bare_id(cls, value: Any) -> Any:
        # join_chat/leave_chat historically sent the id without a wrapper object.
        if isinstance(value, (int, str)):
            return {"chatId": value}
        return value


class MessageDraft(_Payload):
    chat_id: int
    content: str = Field(default="", max_length=MAX_MESSAGE_LENGTH)
    type: MessageType = MessageType.TEXT
    reply_to: int | None = None
    forwarded_from: int | None = None

    @model_validator(mode="after")
    def require_text(self) -> "MessageDraft":
        if self.type == MessageType.TEXT and not self.content.strip():
            raise ValueError("Message content is required")
        return self


class CallInitiatePayload(_Payload):
    chat_id: int
    type: CallType = CallType.AUDIO
    target_user_id: int | None = None


class CallRef(_Payload):
    call_id: str = Field(min_length=1, max_length=64)


class CallReasonPayload(CallRef):
    reason: str | None = Field(default=None, max_length=200)


class StatusPayload(_Payload):
    status: PresenceStatus

    @field_validator("status")
    @classmethod
    def reject_offline(cls, value: PresenceStatus) -> PresenceStatus:
        if value == PresenceStatus.OFFLINE:
            raise ValueError("Offline status is derived from the connection")
        return value


# ---------------------------------------------------------------------------
# Event frames
# ---------------------------------------------------------------------------


class JoinChat(BaseModel):
    event: Literal["join_chat"]
    data: ChatRef


class LeaveChat(BaseModel):
    event: Literal["leave_chat"]
    data: ChatRef


class TypingStart(BaseModel):
    event: Literal["typing_start"]
    data: ChatRef


class TypingStop(BaseModel):
    event: Literal["typing_stop"]
    data: ChatRef


class NewMessage(BaseModel):
    event: Literal["new_message"]
    data: MessageDraft


class CallInitiate(BaseModel):
    event: Literal["call:initiate"]
    data: CallInitiatePayload


class CallAccept(BaseModel):
    event: Literal["call:accept"]
    data: CallRef


class CallReject(BaseModel):
    event: Literal["call:reject"]
    data: CallReasonPayload


class CallEnd(BaseModel):
    event: Literal["call:end"]
    data: CallReasonPayload


class UpdateStatus(BaseModel):
    event: Literal["update_status"]
    data: StatusPayload


class Ping(BaseModel):
    event: Literal["ping"]
    data: dict[str, Any] | None = None


class Pong(BaseModel):
    event: Literal["pong"]
    data: dict[str, Any] | None = None


ClientEvent = Annotated[
    Union[
        JoinChat,
        LeaveChat,
        TypingStart,
        TypingStop,
        NewMessage,
        CallInitiate,
        CallAccept,
        CallReject,
        CallEnd,
        UpdateStatus,
        Ping,
        Pong,
    ],
    Field(discriminator="event"),
]

client_event_adapter: TypeAdapter[ClientEvent] = TypeAdapter(ClientEvent)


def parse_client_event(frame: Any) -> ClientEvent:
    """Validate a decoded JSON frame; raises :class:`pydantic.ValidationError`."""

    return client_event_adapter.validate_python(frame)


def describe_validation_error(frame: Any, exc: Exception) -> str:
    """Return a short client-facing message for a rejected frame."""

    event = frame.get("event") if isinstance(frame, dict) else None
    errors = getattr(exc, "errors", None)
    if callable(errors):
        for error in errors():
            if error.get("type") == "union_tag_invalid":
                return f"Unknown event: {event}"
            if error.get("type") == "union_tag_not_found":
                return "Event name is required"
            message = str(error.get("msg", "")).removeprefix("Value error, ")
            if message:
                return f"Invalid {event} payload: {message}"
    return "Invalid payload"


__all__ = [
    "MAX_MESSAGE_LENGTH",
    "CallAccept",
    "CallEnd",
    "CallInitiate",
    "CallInitiatePayload",
    "CallReasonPayload",
    "CallRef",
    "CallReject",
    "ChatRef",
    "ClientEvent",
    "JoinChat",
    "LeaveChat",
    "MessageDraft",
    "NewMessage",
    "Ping",
    "Pong",
    "StatusPayload",
    "TypingStart",
    "TypingStop",
    "UpdateStatus",
    "describe_validation_error",
    "parse_client_event",
]
