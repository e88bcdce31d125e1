"""Configuration endpoints for exposing runtime options to the frontend."""

from __future__ import annotations

from fastapi import APIRouter, Request

from app.config import get_settings

router = APIRouter(prefix="/config", tags=["config"])


def _is_secure_request(request: Request) -> bool:
    forwarded_proto = request.headers.get("x-forwarded-proto", "").split(",")[0].strip()
    if forwarded_proto:
        return forwarded_proto.lower() == "https"

    return request.url.scheme == "https"


def _realtime_ws_url(request: Request) -> str:
    """Build the externally visible URL of the realtime websocket."""

    host = request.headers.get("x-forwarded-host") or request.headers.get("host") or request.url.netloc
    scheme = "wss" if _is_secure_request(request) else "ws"
    return f"{scheme}://{host.split(',')[0].strip()}/ws/realtime"


@router.get("/webrtc")
def read_webrtc_config(request: Request) -> dict[str, object]:
    """Expose WebRTC ICE configuration and realtime endpoint details."""

    settings = get_settings()
    return {
        "iceServers": settings.webrtc_ice_servers_payload,
        "stun": [str(url) for url in settings.webrtc_stun_servers],
        "turn": {
            "urls": [str(url) for url in settings.webrtc_turn_servers],
            "username": settings.webrtc_turn_username,
        },
        "realtime": {
            "wsUrl": _realtime_ws_url(request),
            "pingInterval": settings.websocket_keepalive_ping_interval_seconds,
        },
    }
