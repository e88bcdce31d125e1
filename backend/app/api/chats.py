"""HTTP endpoints for posting chat messages."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import ValidationError

from beacon.errors import RealtimeError
from beacon.realtime import RealtimeServices
from beacon.realtime.events import MessageDraft
from beacon.realtime.stores import Principal

from app.api.deps import get_current_principal, get_realtime, http_error
from app.schemas import MessageCreate

router = APIRouter(prefix="/chats", tags=["chats"])


@router.post("/{chat_id}/messages", status_code=status.HTTP_201_CREATED)
async def post_message(
    chat_id: int,
    payload: MessageCreate,
    principal: Principal = Depends(get_current_principal),
    realtime: RealtimeServices = Depends(get_realtime),
) -> dict[str, Any]:
    """Store a message and fan it out exactly like the websocket event."""

    try:
        draft = MessageDraft(chat_id=chat_id, **payload.model_dump())
    except ValidationError as exc:
        detail = exc.errors()[0].get("msg", "Invalid message").removeprefix("Value error, ")
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=detail) from exc

    try:
        return await realtime.rooms.post_message(chat_id, principal.user_id, draft)
    except RealtimeError as exc:
        raise http_error(exc) from exc
