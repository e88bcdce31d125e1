"""Request bodies for the call HTTP endpoints."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from app.models.enums import CallType


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CallCreate(_CamelModel):
    chat_id: int
    type: CallType = CallType.AUDIO


class CallAcceptRequest(_CamelModel):
    answer: dict[str, Any] | None = None


class CallReasonRequest(_CamelModel):
    reason: str | None = Field(default=None, max_length=200)


class SignalingRequest(_CamelModel):
    """A WebRTC message relayed to the other participant."""

    type: str
    data: Any = None


class CallSettingsUpdate(_CamelModel):
    """Media flags; omitted fields keep their current value."""

    is_muted: bool | None = None
    is_video_enabled: bool | None = None
    is_screen_sharing: bool | None = None
    is_speaker_enabled: bool | None = None

    def changes(self) -> dict[str, bool]:
        return self.model_dump(by_alias=True, exclude_none=True)
