from __future__ import annotations

import time

import pytest
from starlette.testclient import WebSocketTestSession
from starlette.websockets import WebSocketDisconnect

from app.api import ws as ws_module
from app.core.security import create_access_token


def _token(user_id: int) -> str:
    return create_access_token({"sub": str(user_id)})


def _setup(connection: WebSocketTestSession, user_id: int) -> dict:
    connection.send_json({"event": "setup", "data": {"userId": user_id}})
    assert connection.receive_json() == {"event": "userOnline", "data": {"userId": user_id}}
    connected = connection.receive_json()
    assert connected["event"] == "connected"
    return connected["data"]


def test_setup_and_typing_over_the_socket(client, factory) -> None:
    alice, bob = factory.user("alice"), factory.user("bob")
    chat_id = factory.chat([alice, bob])

    with client.websocket_connect(f"/ws/chat?token={_token(alice)}") as alice_ws:
        assert _setup(alice_ws, alice) == {"userId": alice, "onlineUsers": [alice]}
        alice_ws.send_json({"event": "joinChat", "data": {"chatId": chat_id}})
        assert alice_ws.receive_json() == {
            "event": "joined",
            "data": {"chatId": chat_id, "markedRead": 0},
        }

        with client.websocket_connect(
            "/ws/chat", headers={"Authorization": f"Bearer {_token(bob)}"}
        ) as bob_ws:
            bob_ws.send_json({"event": "setup", "data": {}})
            assert alice_ws.receive_json() == {"event": "userOnline", "data": {"userId": bob}}
            bob_ws.receive_json()
            bob_ws.receive_json()
            bob_ws.send_json({"event": "joinChat", "data": {"chatId": chat_id}})
            assert bob_ws.receive_json()["event"] == "joined"

            bob_ws.send_json({"event": "typing", "data": {"chatId": chat_id}})
            assert alice_ws.receive_json() == {
                "event": "typing",
                "data": {"chatId": chat_id, "userId": bob},
            }

        offline = alice_ws.receive_json()
        assert offline["event"] == "userOffline"
        assert offline["data"]["userId"] == bob


def test_invalid_json_reports_error_and_keeps_socket_open(client, factory) -> None:
    user = factory.user("user")

    with client.websocket_connect(f"/ws/chat?token={_token(user)}") as connection:
        connection.send_text("{not json")
        assert connection.receive_json() == {
            "event": "error",
            "data": {"event": None, "detail": "Invalid payload"},
        }
        connection.send_json({"event": "ping", "data": {}})
        assert connection.receive_json() == {"event": "pong", "data": {}}


@pytest.mark.parametrize("query", ["", "?token=garbage", f"?token={create_access_token({'sub': '999'})}"])
def test_unauthenticated_sockets_are_closed(client, query) -> None:
    with pytest.raises(WebSocketDisconnect) as exc_info:
        with client.websocket_connect(f"/ws/chat{query}") as connection:
            connection.receive_json()
    assert exc_info.value.code == 1008


def test_connection_survives_keepalive_timeout(client, factory) -> None:
    """Ensure that the server side keepalive pings keep the socket open."""

    user = factory.user("keepalive-user")

    settings = ws_module.settings
    original_timeout = settings.websocket_keepalive_timeout_seconds
    original_interval = settings.websocket_keepalive_ping_interval_seconds

    settings.websocket_keepalive_timeout_seconds = 0.1
    settings.websocket_keepalive_ping_interval_seconds = 0.05

    try:
        with client.websocket_connect(f"/ws/chat?token={_token(user)}") as connection:
            _setup(connection, user)
            _assert_keepalive_sequence(connection)
    finally:
        settings.websocket_keepalive_timeout_seconds = original_timeout
        settings.websocket_keepalive_ping_interval_seconds = original_interval


def _assert_keepalive_sequence(connection: WebSocketTestSession) -> None:
    """Observe two keepalive pings with client responses to keep the connection active."""

    time.sleep(0.15)
    ping = connection.receive_json()
    assert ping["event"] == "ping"
    connection.send_json({"event": "pong", "data": {}})

    time.sleep(0.12)
    ping_again = connection.receive_json()
    assert ping_again["event"] == "ping"
    connection.send_json({"event": "pong", "data": {}})

    connection.send_json({"event": "ping", "data": {}})
    reply = connection.receive_json()
    while reply["event"] == "ping":
        reply = connection.receive_json()
    assert reply == {"event": "pong", "data": {}}
