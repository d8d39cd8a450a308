"""Fan-out of realtime events to websocket connections."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any, Dict, Iterable

from fastapi.websockets import WebSocket, WebSocketDisconnect, WebSocketState

from app.monitoring.metrics import realtime_events_total, realtime_publish_errors_total

from .registry import ConnectionRegistry
from .rooms import RoomMembershipTracker
from .transport import EVENTS_TOPIC, RedisTransport, Subscription, TransportUnavailableError

logger = logging.getLogger(__name__)


async def safe_send_json(websocket: WebSocket, data: dict[str, Any]) -> bool:
    """Send JSON through the websocket, returning ``False`` once it is gone."""

    if websocket.application_state != WebSocketState.CONNECTED:
        return False
    try:
        await websocket.send_json(data)
        return True
    except (WebSocketDisconnect, RuntimeError) as e:
        logger.debug("Failed to send websocket message: %s", e)
        return False


def envelope(event: str, data: dict[str, Any] | None = None) -> dict[str, Any]:
    return {"event": event, "data": data or {}}


class ConnectionOutbox:
    """FIFO of outbound events for one connection, drained by a single writer task."""

    def __init__(self, connection_id: str, websocket: WebSocket, *, maxsize: int) -> None:
        self.connection_id = connection_id
        self.websocket = websocket
        self.queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=maxsize)
        self.closed = False
        self._task: asyncio.Task[None] | None = None

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(
                self._run(), name=f"realtime-writer-{self.connection_id}"
            )

    def put(self, payload: dict[str, Any]) -> bool:
        if self.closed:
            return False
        try:
            self.queue.put_nowait(payload)
        except asyncio.QueueFull:
            logger.warning(
                "Outbound queue full for connection %s; dropping %s",
                self.connection_id,
                payload.get("event"),
            )
            return False
        return True

    async def _run(self) -> None:
        while True:
            payload = await self.queue.get()
            try:
                delivered = await safe_send_json(self.websocket, payload)
            finally:
                self.queue.task_done()
            if not delivered:
                self.closed = True
                self._discard_pending()
                return

    def _discard_pending(self) -> None:
        while not self.queue.empty():
            self.queue.get_nowait()
            self.queue.task_done()

    async def close(self) -> None:
        self.closed = True
        if self._task is not None and not self._task.done():
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
        self._discard_pending()


class EventRelay:
    """Delivers events to rooms, users or every connection on this node.

    Enqueueing never suspends, so events handed to the relay reach each
    connection in the order they were handed over. Delivery is at most once:
    nothing is stored or replayed for connections that are gone.

    When a transport is attached, room and user scoped events are also
    published for peer nodes, which deliver them to their own connections.
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        rooms: RoomMembershipTracker,
        *,
        queue_size: int = 256,
        transport: RedisTransport | None = None,
        node_id: str | None = None,
    ) -> None:
        self._registry = registry
        self._rooms = rooms
        self._queue_size = queue_size
        self._transport = transport
        self._node_id = node_id
        self._outboxes: Dict[str, ConnectionOutbox] = {}
        self._subscription: Subscription | None = None
        self._publish_warning_logged = False

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------
    def attach(self, connection_id: str, websocket: WebSocket) -> None:
        if connection_id in self._outboxes:
            return
        outbox = ConnectionOutbox(connection_id, websocket, maxsize=self._queue_size)
        self._outboxes[connection_id] = outbox
        outbox.start()

    async def detach(self, connection_id: str) -> None:
        outbox = self._outboxes.pop(connection_id, None)
        if outbox is not None:
            await outbox.close()

    async def flush(self) -> None:
        """Wait until every queued event has been handed to its websocket."""

        for outbox in list(self._outboxes.values()):
            await outbox.queue.join()

    # ------------------------------------------------------------------
    # Local delivery
    # ------------------------------------------------------------------
    def send_to_connection(self, connection_id: str, event: str, data: dict[str, Any]) -> bool:
        outbox = self._outboxes.get(connection_id)
        if outbox is None:
            return False
        delivered = outbox.put(envelope(event, data))
        if delivered:
            realtime_events_total.labels(event, "out").inc()
        return delivered

    def _deliver(self, connection_ids: Iterable[str], event: str, data: dict[str, Any]) -> int:
        count = 0
        for connection_id in sorted(connection_ids):
            if self.send_to_connection(connection_id, event, data):
                count += 1
        return count

    def _room_targets(self, room_id: int, exclude: Iterable[str] | None) -> set[str]:
        return self._rooms.subscribers(room_id) - set(exclude or ())

    def _user_targets(self, user_ids: Iterable[int]) -> set[str]:
        targets: set[str] = set()
        for user_id in user_ids:
            targets |= self._registry.connections_for(user_id)
        return targets

    # ------------------------------------------------------------------
    # Public fan-out API
    # ------------------------------------------------------------------
    async def broadcast_room(
        self,
        room_id: int,
        event: str,
        data: dict[str, Any],
        *,
        exclude: Iterable[str] | None = None,
    ) -> int:
        count = self._deliver(self._room_targets(room_id, exclude), event, data)
        await self._publish("room", {"room_id": room_id, "event": event, "data": data})
        return count

    async def send_to_users(self, user_ids: Iterable[int], event: str, data: dict[str, Any]) -> int:
        user_ids = sorted(set(user_ids))
        count = self._deliver(self._user_targets(user_ids), event, data)
        await self._publish("users", {"user_ids": user_ids, "event": event, "data": data})
        return count

    def _evict(self, room_id: int, user_ids: Iterable[int]) -> int:
        count = 0
        for user_id in user_ids:
            for connection_id in sorted(self._rooms.remove_user(user_id, room_id)):
                if self.send_to_connection(connection_id, "removedFromChat", {"chatId": room_id}):
                    count += 1
        return count

    async def evict_from_room(self, room_id: int, user_ids: Iterable[int]) -> int:
        """Drop the users' subscriptions to ``room_id`` here and on peer nodes."""

        user_ids = sorted(set(user_ids))
        count = self._evict(room_id, user_ids)
        await self._publish(
            "evict",
            {
                "room_id": room_id,
                "user_ids": user_ids,
                "event": "removedFromChat",
                "data": {"chatId": room_id},
            },
        )
        return count

    async def send_to_all(self, event: str, data: dict[str, Any]) -> int:
        # Presence is node-local, so this never crosses the transport.
        return self._deliver(self._registry.all_connections(), event, data)

    # ------------------------------------------------------------------
    # Cross-node fan-out
    # ------------------------------------------------------------------
    async def start(self) -> None:
        if self._subscription is not None:
            return
        if self._transport is None or not self._transport.connected:
            return
        try:
            self._subscription = await self._transport.subscribe(EVENTS_TOPIC, self._handle_remote)
        except TransportUnavailableError:
            logger.warning(
                "Realtime backend unavailable; events will stay on this node",
                exc_info=logger.isEnabledFor(logging.DEBUG),
            )
            self._subscription = None

    async def stop(self) -> None:
        if self._subscription is not None:
            await self._subscription.close()
            self._subscription = None
        for connection_id in list(self._outboxes):
            await self.detach(connection_id)

    async def _publish(self, scope: str, body: dict[str, Any]) -> None:
        if self._transport is None or not self._transport.configured:
            return
        message = {"origin": self._node_id, "scope": scope, **body}
        try:
            await self._transport.publish(EVENTS_TOPIC, message)
        except TransportUnavailableError:
            if not self._publish_warning_logged:
                logger.warning(
                    "Realtime backend unavailable while publishing %s; delivering locally only",
                    body.get("event"),
                    exc_info=logger.isEnabledFor(logging.DEBUG),
                )
                self._publish_warning_logged = True
            realtime_publish_errors_total.labels(EVENTS_TOPIC, "unavailable").inc()
        else:
            self._publish_warning_logged = False

    async def _handle_remote(self, message: dict[str, Any]) -> None:
        if message.get("origin") == self._node_id:
            return
        event = message.get("event")
        data = message.get("data")
        if not isinstance(event, str) or not isinstance(data, dict):
            return
        realtime_events_total.labels(event, "in").inc()
        scope = message.get("scope")
        if scope == "room":
            try:
                room_id = int(message["room_id"])
            except (KeyError, TypeError, ValueError):
                return
            self._deliver(self._rooms.subscribers(room_id), event, data)
        elif scope == "users":
            user_ids = message.get("user_ids")
            if isinstance(user_ids, list):
                self._deliver(
                    self._user_targets(uid for uid in user_ids if isinstance(uid, int)), event, data
                )
        elif scope == "evict":
            user_ids = message.get("user_ids")
            try:
                room_id = int(message["room_id"])
            except (KeyError, TypeError, ValueError):
                return
            if isinstance(user_ids, list):
                self._evict(room_id, [uid for uid in user_ids if isinstance(uid, int)])
