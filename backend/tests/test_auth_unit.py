"""Unit tests for token verification."""

from __future__ import annotations

from datetime import timedelta

import pytest
from fastapi import HTTPException

from app.core.security import create_access_token, decode_access_token
from app.models import User
from app.services.auth import JwtAuthenticator
from beacon.errors import Unauthenticated


@pytest.fixture()
def user(db_session):
    db_user = User(login="tester", display_name="Tester", avatar_url="https://cdn.example/t.png")
    db_session.add(db_user)
    db_session.commit()
    return db_user


@pytest.fixture()
def authenticator(session_factory) -> JwtAuthenticator:
    return JwtAuthenticator(session_factory)


@pytest.mark.anyio("asyncio")
async def test_verify_returns_principal(authenticator, user):
    """Valid tokens resolve to the user they were issued for."""

    principal = await authenticator.verify(create_access_token({"sub": str(user.id)}))

    assert principal.user_id == user.id
    assert principal.to_public() == {
        "userId": user.id,
        "username": "tester",
        "displayName": "Tester",
        "avatarUrl": "https://cdn.example/t.png",
    }


@pytest.mark.anyio("asyncio")
async def test_verify_rejects_expired_token(authenticator, user):
    token = create_access_token({"sub": str(user.id)}, expires_delta=timedelta(minutes=-1))

    with pytest.raises(Unauthenticated, match="Token has expired"):
        await authenticator.verify(token)


@pytest.mark.anyio("asyncio")
@pytest.mark.parametrize("token", ["garbage", create_access_token({"sub": "not-a-number"})])
async def test_verify_rejects_bad_tokens(authenticator, token):
    with pytest.raises(Unauthenticated, match="Authentication failed"):
        await authenticator.verify(token)


@pytest.mark.anyio("asyncio")
async def test_verify_rejects_unknown_and_inactive_users(authenticator, user, db_session):
    with pytest.raises(Unauthenticated, match="User not found"):
        await authenticator.verify(create_access_token({"sub": str(user.id + 100)}))

    user.is_active = False
    db_session.commit()

    with pytest.raises(Unauthenticated, match="User account is deactivated"):
        await authenticator.verify(create_access_token({"sub": str(user.id)}))


def test_decode_access_token_raises_http_401():
    """Invalid tokens must raise an HTTP 401 error."""

    with pytest.raises(HTTPException) as exc:
        decode_access_token("invalid")

    assert exc.value.status_code == 401
    assert exc.value.detail == "Could not validate credentials"
