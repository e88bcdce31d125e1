"""Schemas related to chat messages."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from beacon.realtime.events import MAX_MESSAGE_LENGTH

from app.models.enums import MessageStatus, MessageType


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


class MessageSender(_CamelModel):
    """Lightweight author information for displaying messages."""

    id: int
    login: str
    display_name: str | None = None
    avatar_url: str | None = None


class MessageRead(_CamelModel):
    """Serialized chat message as delivered to clients."""

    id: int
    chat_id: int
    sender_id: int
    content: str
    type: MessageType
    status: MessageStatus
    reply_to_id: int | None = None
    forwarded_from_id: int | None = None
    created_at: datetime
    sender: MessageSender | None = None


class MessageCreate(_CamelModel):
    """Body of ``POST /chats/{chat_id}/messages``."""

    content: str = Field(default="", max_length=MAX_MESSAGE_LENGTH)
    type: MessageType = MessageType.TEXT
    reply_to: int | None = None
    forwarded_from: int | None = None
