"""Shared pytest fixtures for backend tests."""

from __future__ import annotations

import sys
from pathlib import Path
from types import SimpleNamespace
from typing import Iterator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

ROOT_DIR = Path(__file__).resolve().parents[1]
for path in (ROOT_DIR, ROOT_DIR / "src"):
    if str(path) not in sys.path:
        sys.path.insert(0, str(path))

from app.core.security import create_access_token
from app.main import app
from app.models import Base, Chat, ChatParticipant, User
from app.monitoring.registry import registry


@pytest.fixture()
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture(autouse=True)
def reset_metrics() -> Iterator[None]:
    for metric in registry._metrics.values():
        metric._samples.clear()
    yield
    for metric in registry._metrics.values():
        metric._samples.clear()


@pytest.fixture()
def test_engine() -> Iterator[Engine]:
    """Provide an in-memory SQLite engine for isolated tests."""

    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(engine)
        engine.dispose()


@pytest.fixture()
def session_factory(test_engine) -> sessionmaker[Session]:
    """Return a session factory bound to the test engine."""

    return sessionmaker(bind=test_engine, future=True)


@pytest.fixture()
def db_session(session_factory) -> Iterator[Session]:
    """Yield a SQLAlchemy session for unit tests."""

    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def direct_chat(session_factory) -> SimpleNamespace:
    """Two users sharing a direct chat, plus a third user outside of it."""

    with session_factory() as session:
        alice = User(login="alice", display_name="Alice")
        bob = User(login="bob", display_name="Bob")
        mallory = User(login="mallory")
        session.add_all([alice, bob, mallory])
        session.flush()
        chat = Chat(is_direct=True)
        chat.participants = [ChatParticipant(user_id=alice.id), ChatParticipant(user_id=bob.id)]
        session.add(chat)
        session.commit()
        ids = SimpleNamespace(alice=alice.id, bob=bob.id, mallory=mallory.id, chat=chat.id)

    ids.tokens = {
        name: create_access_token({"sub": str(getattr(ids, name))}) for name in ("alice", "bob", "mallory")
    }
    return ids


@pytest.fixture()
def client(session_factory) -> Iterator[TestClient]:
    """Yield a FastAPI TestClient whose realtime stores use the test database."""

    original_factory = app.state.session_factory
    app.state.session_factory = session_factory
    try:
        with TestClient(app) as test_client:
            yield test_client
    finally:
        app.state.session_factory = original_factory
