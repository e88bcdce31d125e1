"""Application service helpers."""

from __future__ import annotations

from sqlalchemy.orm import Session, sessionmaker

from beacon.realtime import RealtimeServices, build_realtime

from app.config import Settings
from .auth import JwtAuthenticator
from .stores import SqlCallStore, SqlChatStore, SqlMessageStore, SqlUserStatusStore


def create_realtime_services(settings: Settings, session_factory: sessionmaker[Session]) -> RealtimeServices:
    """Build the realtime components backed by the relational database."""

    return build_realtime(
        settings,
        chats=SqlChatStore(session_factory),
        messages=SqlMessageStore(session_factory),
        calls=SqlCallStore(session_factory),
        statuses=SqlUserStatusStore(session_factory),
        authenticator=JwtAuthenticator(session_factory),
    )


__all__ = [
    "JwtAuthenticator",
    "SqlCallStore",
    "SqlChatStore",
    "SqlMessageStore",
    "SqlUserStatusStore",
    "create_realtime_services",
]
