"""Unit tests for event fan-out, ordering and cross-node publishing."""

from __future__ import annotations

import logging
from typing import Any

import pytest
from fastapi.websockets import WebSocketState

from app.monitoring.metrics import realtime_publish_errors_total
from banter.realtime.registry import ConnectionRegistry
from banter.realtime.relay import EventRelay
from banter.realtime.rooms import RoomMembershipTracker
from banter.realtime.transport import BrokerConfig, RedisTransport


class DummyWebSocket:
    def __init__(self) -> None:
        self.application_state = WebSocketState.CONNECTED
        self.sent: list[dict[str, Any]] = []

    async def send_json(self, payload: dict[str, Any]) -> None:
        self.sent.append(payload)

    def events(self) -> list[str]:
        return [item["event"] for item in self.sent]


class ClosedWebSocket(DummyWebSocket):
    async def send_json(self, payload: dict[str, Any]) -> None:
        raise RuntimeError("socket closed")


class FailingRedis:
    async def publish(self, channel: str, payload: str) -> None:  # pragma: no cover - used in tests
        raise ConnectionError("boom")


class RecordingTransport:
    def __init__(self) -> None:
        self.published: list[tuple[str, dict[str, Any]]] = []
        self.configured = True
        self.connected = True

    async def publish(self, topic: str, payload: dict[str, Any]) -> None:
        self.published.append((topic, payload))


@pytest.fixture(autouse=True)
def reset_publish_error_metrics() -> None:
    samples = realtime_publish_errors_total._samples
    samples.clear()
    yield
    samples.clear()


@pytest.fixture()
def anyio_backend() -> str:
    return "asyncio"


def _connect(relay: EventRelay, registry: ConnectionRegistry, user_id: int, connection_id: str, socket=None):
    socket = socket or DummyWebSocket()
    registry.register_connection(user_id, connection_id)
    relay.attach(connection_id, socket)
    return socket


@pytest.mark.anyio("asyncio")
async def test_room_broadcast_excludes_only_the_given_connection():
    registry, rooms = ConnectionRegistry(), RoomMembershipTracker()
    relay = EventRelay(registry, rooms)
    sender = _connect(relay, registry, 1, "sender")
    sender_other_device = _connect(relay, registry, 1, "sender-2")
    peer = _connect(relay, registry, 2, "peer")
    for user_id, connection_id in ((1, "sender"), (1, "sender-2"), (2, "peer")):
        rooms.join(user_id, 50, connection_id)

    count = await relay.broadcast_room(50, "typing", {"chatId": 50}, exclude={"sender"})
    await relay.flush()

    assert count == 2
    assert sender.sent == []
    assert sender_other_device.events() == ["typing"]
    assert peer.sent == [{"event": "typing", "data": {"chatId": 50}}]
    await relay.stop()


@pytest.mark.anyio("asyncio")
async def test_events_reach_each_subscriber_in_relay_order():
    registry, rooms = ConnectionRegistry(), RoomMembershipTracker()
    relay = EventRelay(registry, rooms)
    sockets = [_connect(relay, registry, user_id, f"c{user_id}") for user_id in (1, 2, 3)]
    for user_id in (1, 2, 3):
        rooms.join(user_id, 9, f"c{user_id}")

    for index in range(20):
        await relay.broadcast_room(9, "messageRecieved", {"seq": index})
    await relay.flush()

    for socket in sockets:
        assert [item["data"]["seq"] for item in socket.sent] == list(range(20))
    await relay.stop()


@pytest.mark.anyio("asyncio")
async def test_send_to_users_and_all():
    registry, rooms = ConnectionRegistry(), RoomMembershipTracker()
    relay = EventRelay(registry, rooms)
    first = _connect(relay, registry, 1, "a")
    second = _connect(relay, registry, 2, "b")

    await relay.send_to_users([2, 2, 99], "direct", {})
    await relay.send_to_all("userOnline", {"userId": 1})
    await relay.flush()

    assert first.events() == ["userOnline"]
    assert second.events() == ["direct", "userOnline"]
    await relay.stop()


@pytest.mark.anyio("asyncio")
async def test_closed_socket_stops_receiving_without_affecting_others():
    registry, rooms = ConnectionRegistry(), RoomMembershipTracker()
    relay = EventRelay(registry, rooms)
    _connect(relay, registry, 1, "dead", ClosedWebSocket())
    alive = _connect(relay, registry, 2, "alive")
    rooms.join(1, 3, "dead")
    rooms.join(2, 3, "alive")

    await relay.broadcast_room(3, "first", {})
    await relay.flush()
    await relay.broadcast_room(3, "second", {})
    await relay.flush()

    assert alive.events() == ["first", "second"]
    assert relay.send_to_connection("dead", "third", {}) is False
    await relay.stop()


@pytest.mark.anyio("asyncio")
async def test_full_outbound_queue_drops_events(caplog):
    registry, rooms = ConnectionRegistry(), RoomMembershipTracker()
    relay = EventRelay(registry, rooms, queue_size=2)
    socket = _connect(relay, registry, 1, "slow")

    with caplog.at_level(logging.WARNING):
        results = [relay.send_to_connection("slow", "evt", {"n": n}) for n in range(3)]
    await relay.flush()

    assert results == [True, True, False]
    assert [item["data"]["n"] for item in socket.sent] == [0, 1]
    assert any("queue full" in record.getMessage() for record in caplog.records)
    await relay.stop()


@pytest.mark.anyio("asyncio")
async def test_publish_connection_error_logs_warning_and_delivers_locally(caplog):
    transport = RedisTransport(BrokerConfig(redis_url="redis://example"))
    transport._redis = FailingRedis()  # type: ignore[assignment]
    transport._schedule_recovery = lambda reason: None  # type: ignore[method-assign]
    registry, rooms = ConnectionRegistry(), RoomMembershipTracker()
    relay = EventRelay(registry, rooms, transport=transport, node_id="node")
    socket = _connect(relay, registry, 1, "c1")
    rooms.join(1, 42, "c1")

    with caplog.at_level(logging.WARNING):
        await relay.broadcast_room(42, "messageDeliveryStatus", {"chatId": 42})
        await relay.broadcast_room(42, "messageDeliveryStatus", {"chatId": 42})
    await relay.flush()

    assert socket.events() == ["messageDeliveryStatus", "messageDeliveryStatus"]
    warnings = [
        record
        for record in caplog.records
        if record.levelno == logging.WARNING and "delivering locally only" in record.getMessage()
    ]
    assert len(warnings) == 1, "The outage should be logged once"
    assert realtime_publish_errors_total.value("events", "unavailable") == 2.0
    await relay.stop()


@pytest.mark.anyio("asyncio")
async def test_remote_events_are_delivered_and_own_echoes_ignored():
    transport = RecordingTransport()
    registry, rooms = ConnectionRegistry(), RoomMembershipTracker()
    relay = EventRelay(registry, rooms, transport=transport, node_id="node-a")  # type: ignore[arg-type]
    socket = _connect(relay, registry, 1, "c1")
    rooms.join(1, 8, "c1")

    await relay.broadcast_room(8, "typing", {"chatId": 8})
    topic, published = transport.published[0]
    assert topic == "events"
    assert published["origin"] == "node-a"
    assert published["scope"] == "room"

    await relay._handle_remote(published)
    await relay._handle_remote({**published, "origin": "node-b", "event": "stopTyping"})
    await relay._handle_remote({"origin": "node-b", "scope": "users", "user_ids": [1], "event": "ping", "data": {}})
    await relay.flush()

    assert socket.events() == ["typing", "stopTyping", "ping"]
    await relay.stop()


@pytest.mark.anyio("asyncio")
async def test_presence_broadcasts_stay_local():
    transport = RecordingTransport()
    registry, rooms = ConnectionRegistry(), RoomMembershipTracker()
    relay = EventRelay(registry, rooms, transport=transport, node_id="node-a")  # type: ignore[arg-type]
    _connect(relay, registry, 1, "c1")

    await relay.send_to_all("userOnline", {"userId": 1})

    assert transport.published == []
    await relay.stop()


@pytest.mark.anyio("asyncio")
async def test_eviction_applies_locally_and_on_peer_nodes():
    transport = RecordingTransport()
    registry, rooms = ConnectionRegistry(), RoomMembershipTracker()
    relay = EventRelay(registry, rooms, transport=transport, node_id="node-a")  # type: ignore[arg-type]
    local = _connect(relay, registry, 3, "c3")
    peer_registry, peer_rooms = ConnectionRegistry(), RoomMembershipTracker()
    peer_relay = EventRelay(peer_registry, peer_rooms, node_id="node-b")
    remote = _connect(peer_relay, peer_registry, 3, "r3")
    rooms.join(3, 12, "c3")
    peer_rooms.join(3, 12, "r3")

    await relay.evict_from_room(12, [3])
    [(_, published)] = transport.published
    await peer_relay._handle_remote(published)
    await relay.flush()
    await peer_relay.flush()

    assert published["scope"] == "evict"
    assert local.events() == ["removedFromChat"]
    assert remote.sent == [{"event": "removedFromChat", "data": {"chatId": 12}}]
    assert rooms.subscribers(12) == set()
    assert peer_rooms.subscribers(12) == set()
    await relay.stop()
    await peer_relay.stop()
