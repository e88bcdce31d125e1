"""HTTP endpoints driving the call coordinator."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query, status

from beacon.errors import RealtimeError
from beacon.realtime import RealtimeServices
from beacon.realtime.stores import Principal

from app.api.deps import get_current_principal, get_realtime, http_error
from app.config import get_settings
from app.schemas import (
    CallAcceptRequest,
    CallCreate,
    CallReasonRequest,
    CallSettingsUpdate,
    SignalingRequest,
)

router = APIRouter(prefix="/calls", tags=["calls"])

settings = get_settings()


@router.post("", status_code=status.HTTP_201_CREATED)
async def initiate_call(
    payload: CallCreate,
    principal: Principal = Depends(get_current_principal),
    realtime: RealtimeServices = Depends(get_realtime),
) -> dict[str, Any]:
    """Start a call in a direct chat or join the one already ringing."""

    try:
        initiation = await realtime.calls.initiate_call(payload.chat_id, principal.user_id, payload.type)
    except RealtimeError as exc:
        raise http_error(exc) from exc
    return initiation.to_public()


@router.get("/{call_id}")
async def read_call(
    call_id: str,
    principal: Principal = Depends(get_current_principal),
    realtime: RealtimeServices = Depends(get_realtime),
) -> dict[str, Any]:
    try:
        session = await realtime.calls.get_call(call_id, principal.user_id)
    except RealtimeError as exc:
        raise http_error(exc) from exc
    return session.to_public(include_signaling=True)


@router.post("/{call_id}/accept")
async def accept_call(
    call_id: str,
    payload: CallAcceptRequest | None = None,
    principal: Principal = Depends(get_current_principal),
    realtime: RealtimeServices = Depends(get_realtime),
) -> dict[str, Any]:
    answer = payload.answer if payload is not None else None
    try:
        session = await realtime.calls.accept_call(call_id, principal.user_id, answer)
    except RealtimeError as exc:
        raise http_error(exc) from exc
    return session.to_public()


@router.post("/{call_id}/reject")
async def reject_call(
    call_id: str,
    payload: CallReasonRequest | None = None,
    principal: Principal = Depends(get_current_principal),
    realtime: RealtimeServices = Depends(get_realtime),
) -> dict[str, Any]:
    reason = payload.reason if payload is not None else None
    try:
        session = await realtime.calls.reject_call(call_id, principal.user_id, reason)
    except RealtimeError as exc:
        raise http_error(exc) from exc
    return session.to_public()


@router.post("/{call_id}/end")
async def end_call(
    call_id: str,
    payload: CallReasonRequest | None = None,
    principal: Principal = Depends(get_current_principal),
    realtime: RealtimeServices = Depends(get_realtime),
) -> dict[str, Any]:
    reason = payload.reason if payload is not None else None
    try:
        session = await realtime.calls.end_call(call_id, principal.user_id, reason)
    except RealtimeError as exc:
        raise http_error(exc) from exc
    return session.to_public()


@router.post("/{call_id}/signaling")
async def relay_signal(
    call_id: str,
    payload: SignalingRequest,
    principal: Principal = Depends(get_current_principal),
    realtime: RealtimeServices = Depends(get_realtime),
) -> dict[str, Any]:
    """Forward an offer, answer or ICE candidate to the other participant."""

    try:
        delivered = await realtime.calls.relay_signal(call_id, principal.user_id, payload.type, payload.data)
    except RealtimeError as exc:
        raise http_error(exc) from exc
    return {"callId": call_id, "type": payload.type, "delivered": delivered}


@router.put("/{call_id}/settings")
async def update_call_settings(
    call_id: str,
    payload: CallSettingsUpdate,
    principal: Principal = Depends(get_current_principal),
    realtime: RealtimeServices = Depends(get_realtime),
) -> dict[str, Any]:
    try:
        session = await realtime.calls.update_settings(call_id, principal.user_id, payload.changes())
    except RealtimeError as exc:
        raise http_error(exc) from exc
    return {"callId": call_id, "settings": session.settings[principal.user_id].to_public()}


@router.get("/chat/{chat_id}/active")
async def read_active_call(
    chat_id: int,
    principal: Principal = Depends(get_current_principal),
    realtime: RealtimeServices = Depends(get_realtime),
) -> dict[str, Any]:
    try:
        session = await realtime.calls.get_active_call(chat_id, principal.user_id)
    except RealtimeError as exc:
        raise http_error(exc) from exc
    return {"chatId": chat_id, "call": session.to_public() if session is not None else None}


@router.get("/chat/{chat_id}/history")
async def read_call_history(
    chat_id: int,
    limit: int = Query(
        default=settings.call_history_default_limit, ge=1, le=settings.call_history_max_limit
    ),
    principal: Principal = Depends(get_current_principal),
    realtime: RealtimeServices = Depends(get_realtime),
) -> dict[str, Any]:
    try:
        sessions = await realtime.calls.call_history(chat_id, principal.user_id, limit=limit)
    except RealtimeError as exc:
        raise http_error(exc) from exc
    return {"chatId": chat_id, "calls": [session.to_public() for session in sessions]}


@router.post("/chat/{chat_id}/cleanup")
async def cleanup_chat_calls(
    chat_id: int,
    principal: Principal = Depends(get_current_principal),
    realtime: RealtimeServices = Depends(get_realtime),
) -> dict[str, Any]:
    """End every unfinished call of the chat, e.g. after a client crash."""

    try:
        cleaned = await realtime.calls.force_cleanup(chat_id, principal.user_id)
    except RealtimeError as exc:
        raise http_error(exc) from exc
    return {"chatId": chat_id, "cleaned": cleaned}
