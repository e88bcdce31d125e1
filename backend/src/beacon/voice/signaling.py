"""Helpers for the WebRTC signalling payloads relayed between call peers.

Offers and answers carry a session description (``sdp`` plus a ``type`` tag);
ICE candidates carry the ``candidate`` line and optional media indices. The
coordinator keeps the last offer, the last answer and every candidate in a
:class:`SignalingBuffer` so a peer that reconnects can be brought up to date.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Mapping

from ..errors import InvalidSignalingPayload


class SignalType(str, Enum):
    OFFER = "offer"
    ANSWER = "answer"
    ICE_CANDIDATE = "ice-candidate"

    @property
    def event_name(self) -> str:
        return f"webrtc:{self.value}"


def parse_signal_type(value: Any) -> SignalType:
    try:
        return SignalType(str(value).strip().lower())
    except ValueError:
        raise InvalidSignalingPayload("Invalid signaling type") from None


@dataclass(slots=True)
class SessionDescription:
    sdp: str
    type: str

    @classmethod
    def from_payload(cls, payload: Any, *, kind: SignalType) -> "SessionDescription":
        if not isinstance(payload, Mapping):
            raise InvalidSignalingPayload(f"Invalid {kind.value} data")
        sdp = payload.get("sdp")
        tag = payload.get("type")
        if not isinstance(sdp, str) or not sdp.strip() or not isinstance(tag, str) or not tag.strip():
            raise InvalidSignalingPayload(f"Invalid {kind.value} data")
        return cls(sdp=sdp, type=tag.strip())

    def to_public(self) -> Dict[str, str]:
        return {"sdp": self.sdp, "type": self.type}


@dataclass(slots=True)
class IceCandidate:
    candidate: str
    sdp_mline_index: int | None = None
    sdp_mid: str | None = None
    received_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def from_payload(cls, payload: Any) -> "IceCandidate":
        if not isinstance(payload, Mapping):
            raise InvalidSignalingPayload("Invalid ICE candidate data")
        candidate = payload.get("candidate")
        if not isinstance(candidate, str) or not candidate.strip():
            raise InvalidSignalingPayload("Invalid ICE candidate data")
        index = payload.get("sdpMLineIndex")
        try:
            index = int(index) if index is not None else None
        except (TypeError, ValueError):
            raise InvalidSignalingPayload("Invalid ICE candidate data") from None
        mid = payload.get("sdpMid")
        return cls(candidate=candidate, sdp_mline_index=index, sdp_mid=str(mid) if mid is not None else None)

    def to_public(self) -> Dict[str, Any]:
        return {
            "candidate": self.candidate,
            "sdpMLineIndex": self.sdp_mline_index,
            "sdpMid": self.sdp_mid,
            "timestamp": self.received_at.isoformat(),
        }


Signal = SessionDescription | IceCandidate


def parse_signal(kind: SignalType, payload: Any) -> Signal:
    """Validate a raw signaling payload for *kind*."""

    if kind is SignalType.ICE_CANDIDATE:
        return IceCandidate.from_payload(payload)
    return SessionDescription.from_payload(payload, kind=kind)


@dataclass(slots=True)
class SignalingBuffer:
    """Last known negotiation state of a call."""

    offer: SessionDescription | None = None
    answer: SessionDescription | None = None
    ice_candidates: list[IceCandidate] = field(default_factory=list)

    def record(self, kind: SignalType, signal: Signal) -> None:
        if kind is SignalType.OFFER:
            self.offer = signal  # type: ignore[assignment]
        elif kind is SignalType.ANSWER:
            self.answer = signal  # type: ignore[assignment]
        else:
            self.ice_candidates.append(signal)  # type: ignore[arg-type]

    def copy(self) -> "SignalingBuffer":
        return SignalingBuffer(offer=self.offer, answer=self.answer, ice_candidates=list(self.ice_candidates))

    def to_public(self) -> Dict[str, Any]:
        return {
            "offer": self.offer.to_public() if self.offer else None,
            "answer": self.answer.to_public() if self.answer else None,
            "iceCandidates": [candidate.to_public() for candidate in self.ice_candidates],
        }

    @classmethod
    def from_public(cls, payload: Mapping[str, Any] | None) -> "SignalingBuffer":
        if not payload:
            return cls()
        buffer = cls()
        if payload.get("offer"):
            buffer.offer = SessionDescription.from_payload(payload["offer"], kind=SignalType.OFFER)
        if payload.get("answer"):
            buffer.answer = SessionDescription.from_payload(payload["answer"], kind=SignalType.ANSWER)
        for entry in payload.get("iceCandidates") or []:
            buffer.ice_candidates.append(IceCandidate.from_payload(entry))
        return buffer


def build_signal_envelope(call_id: str, sender_id: int, kind: SignalType, signal: Signal) -> Dict[str, Any]:
    """Return the payload forwarded to the other participant."""

    key = "candidate" if kind is SignalType.ICE_CANDIDATE else kind.value
    return {
        "callId": call_id,
        "from": sender_id,
        key: signal.to_public(),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


__all__ = [
    "IceCandidate",
    "SessionDescription",
    "Signal",
    "SignalType",
    "SignalingBuffer",
    "build_signal_envelope",
    "parse_signal",
    "parse_signal_type",
]
