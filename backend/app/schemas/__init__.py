"""Pydantic schemas for API payloads."""

from .calls import CallAcceptRequest, CallCreate, CallReasonRequest, CallSettingsUpdate, SignalingRequest
from .messages import MessageCreate, MessageRead, MessageSender

__all__ = [
    "CallAcceptRequest",
    "CallCreate",
    "CallReasonRequest",
    "CallSettingsUpdate",
    "SignalingRequest",
    "MessageCreate",
    "MessageRead",
    "MessageSender",
]
