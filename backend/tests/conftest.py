"""Shared pytest fixtures for backend tests."""

from __future__ import annotations

import itertools
import os
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator

import pytest
from fastapi.testclient import TestClient
from fastapi.websockets import WebSocketState
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

ROOT_DIR = Path(__file__).resolve().parents[1]
for path in (ROOT_DIR, ROOT_DIR / "src"):
    if str(path) not in sys.path:
        sys.path.insert(0, str(path))

os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///:memory:")

from app.core.cipher import MessageCipher, get_cipher
from app.database import get_db
from app.main import app
from app.models import Base, Chat, ChatParticipant, Message, MessageReceipt, User
from app.services.store import SqlRealtimeStore
from banter.realtime import RealtimeGateway, build_gateway, get_gateway


class RecordingPushSender:
    """Push sender double that records every request and can fail on demand."""

    def __init__(self) -> None:
        self.sent: list[dict[str, Any]] = []
        self.fail_tokens: set[str] = set()

    async def send(self, token: str, *, title: str, body: str, data: dict[str, str]) -> None:
        if token in self.fail_tokens:
            raise RuntimeError(f"provider rejected {token}")
        self.sent.append({"token": token, "title": title, "body": body, "data": data})


class RecordingWebSocket:
    """Stand-in for a connected websocket that keeps every payload sent to it."""

    def __init__(self, connection_id: str) -> None:
        self.connection_id = connection_id
        self.application_state = WebSocketState.CONNECTED
        self.sent: list[dict[str, Any]] = []

    async def send_json(self, payload: dict[str, Any]) -> None:
        self.sent.append(payload)

    def events(self) -> list[str]:
        return [item["event"] for item in self.sent]

    def of(self, event: str) -> list[dict[str, Any]]:
        return [item["data"] for item in self.sent if item["event"] == event]

    def clear(self) -> None:
        self.sent.clear()


class ChatFactory:
    """Creates persisted users, chats and messages for tests."""

    def __init__(self, session_factory: sessionmaker[Session], cipher: MessageCipher) -> None:
        self._session_factory = session_factory
        self._cipher = cipher
        self._phones = 0

    def user(self, name: str, *, push_token: str | None = None) -> int:
        self._phones += 1
        with self._session_factory() as session:
            user = User(
                phone=f"9000000{self._phones:03d}",
                country_code="+91",
                name=name,
                push_token=push_token,
                otp_verified=True,
            )
            session.add(user)
            session.commit()
            return user.id

    def chat(self, user_ids: list[int], *, name: str | None = None) -> int:
        with self._session_factory() as session:
            chat = Chat(name=name, is_group=len(user_ids) > 2, admin_id=user_ids[0])
            chat.participants = [ChatParticipant(user_id=user_id) for user_id in user_ids]
            session.add(chat)
            session.commit()
            return chat.id

    def message(self, chat_id: int, sender_id: int, content: str = "hello") -> int:
        now = datetime.now(timezone.utc)
        with self._session_factory() as session:
            message = Message(
                chat_id=chat_id, sender_id=sender_id, content=self._cipher.encrypt(content)
            )
            session.add(message)
            session.flush()
            session.add(
                MessageReceipt(
                    message_id=message.id, user_id=sender_id, delivered_at=now, read_at=now
                )
            )
            session.commit()
            return message.id


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
def cipher() -> MessageCipher:
    return MessageCipher.from_secret("test-message-key")


@pytest.fixture()
def factory(session_factory, cipher) -> ChatFactory:
    return ChatFactory(session_factory, cipher)


@pytest.fixture()
def store(session_factory, cipher) -> SqlRealtimeStore:
    return SqlRealtimeStore(session_factory, cipher)


@pytest.fixture()
def push_sender() -> RecordingPushSender:
    return RecordingPushSender()


@pytest.fixture()
def gateway(store, push_sender) -> RealtimeGateway:
    """A gateway with fresh registries, wired to the test database."""

    return build_gateway(store, push_sender=push_sender)


@pytest.fixture()
def client(session_factory, gateway, cipher) -> Iterator[TestClient]:
    """Yield a FastAPI TestClient with database, cipher and gateway overridden."""

    def override_get_db() -> Iterator[Session]:
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_gateway] = lambda: gateway
    app.dependency_overrides[get_cipher] = lambda: cipher
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture()
def connect(gateway):
    """Open a gateway connection for a user, optionally sending setup and joining chats."""

    counter = itertools.count(1)

    async def _connect(user_id: int, *, setup: bool = True, join: tuple[int, ...] = ()) -> RecordingWebSocket:
        socket = RecordingWebSocket(f"conn-{user_id}-{next(counter)}")
        await gateway.connect(socket.connection_id, socket, user_id)
        if setup:
            await gateway.handle(socket.connection_id, {"event": "setup", "data": {}})
        for chat_id in join:
            await gateway.handle(socket.connection_id, {"event": "joinChat", "data": {"chatId": chat_id}})
        await gateway.relay.flush()
        return socket

    return _connect
