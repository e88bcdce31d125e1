"""Token based authentication of realtime sessions."""

from __future__ import annotations

import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from beacon.errors import Unauthenticated
from beacon.realtime.stores import Principal

from app.core.security import TokenError, decode_token_claims
from app.database import session_scope
from app.models import User

logger = logging.getLogger(__name__)


class JwtAuthenticator:
    """Resolve a bearer token to the active user it was issued for."""

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    async def verify(self, token: str) -> Principal:
        try:
            claims = decode_token_claims(token)
        except TokenError as exc:
            if exc.detail == "Token has expired":
                raise Unauthenticated("Token has expired") from exc
            raise Unauthenticated("Authentication failed") from exc

        try:
            user_id = int(claims.get("sub"))
        except (TypeError, ValueError):
            raise Unauthenticated("Authentication failed") from None

        try:
            with session_scope(self._session_factory) as db:
                user = db.get(User, user_id)
                if user is None:
                    raise Unauthenticated("User not found")
                if not user.is_active:
                    raise Unauthenticated("User account is deactivated")
                return Principal(
                    user_id=user.id,
                    login=user.login,
                    display_name=user.display_name,
                    avatar_url=user.avatar_url,
                )
        except SQLAlchemyError as exc:
            logger.warning(
                "Failed to load user %s during authentication", user_id,
                exc_info=logger.isEnabledFor(logging.DEBUG),
            )
            raise Unauthenticated("Authentication failed") from exc


__all__ = ["JwtAuthenticator"]
