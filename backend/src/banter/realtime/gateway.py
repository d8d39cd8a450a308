"""Inbound websocket event dispatch for the chat realtime layer."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Iterable

from fastapi.websockets import WebSocket

from app.monitoring.metrics import realtime_events_total, realtime_handler_errors_total

from .errors import InvalidPayloadError, NotFoundError, RealtimeError, UnauthorizedError
from .notifications import NotificationGate
from .receipts import DeliveryReconciler, serialize_receipt
from .registry import ConnectionRegistry, coerce_user_id
from .relay import EventRelay
from .rooms import RoomMembershipTracker
from .store import ChatSnapshot, MessageSnapshot, RealtimeStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ConnectionContext:
    connection_id: str
    user_id: int


Handler = Callable[[ConnectionContext, Dict[str, Any]], Awaitable[None]]


def _require_int(data: dict[str, Any], key: str) -> int:
    value = data.get(key)
    if isinstance(value, bool):
        raise InvalidPayloadError(f"'{key}' must be an integer")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise InvalidPayloadError(f"'{key}' must be an integer") from None


def _require_int_list(data: dict[str, Any], key: str) -> list[int]:
    values = data.get(key)
    if not isinstance(values, list) or not values:
        raise InvalidPayloadError(f"'{key}' must be a non-empty list")
    return [_require_int({key: value}, key) for value in values]


def _check_claim(data: dict[str, Any], key: str, ctx: ConnectionContext) -> None:
    """Reject payloads that claim to act for someone other than the connection's user."""

    if key not in data:
        return
    if coerce_user_id(data[key]) != ctx.user_id:
        raise UnauthorizedError(f"'{key}' does not match the authenticated user")


class RealtimeGateway:
    """Routes events from authenticated connections to the realtime components.

    A handler failure is reported to the acting connection as an ``error``
    event and never closes the socket or reaches other connections.
    """

    def __init__(
        self,
        *,
        registry: ConnectionRegistry,
        rooms: RoomMembershipTracker,
        relay: EventRelay,
        reconciler: DeliveryReconciler,
        notifications: NotificationGate,
        store: RealtimeStore,
    ) -> None:
        self.registry = registry
        self.rooms = rooms
        self.relay = relay
        self.reconciler = reconciler
        self.notifications = notifications
        self.store = store
        self._identities: Dict[str, int] = {}
        self._handlers: Dict[str, Handler] = {
            "setup": self._on_setup,
            "joinChat": self._on_join_chat,
            "leaveChat": self._on_leave_chat,
            "typing": self._on_typing,
            "stopTyping": self._on_stop_typing,
            "newMessage": self._on_new_message,
            "messageDelivered": self._on_message_delivered,
            "messageRead": self._on_message_read,
            "onMessageDeletedForEveryone": self._on_deleted_for_everyone,
            "setOnline": self._on_set_online,
            "setOffline": self._on_set_offline,
            "ping": self._on_ping,
            "pong": self._on_pong,
        }

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------
    async def connect(self, connection_id: str, websocket: WebSocket, user_id: int) -> None:
        self._identities[connection_id] = user_id
        self.relay.attach(connection_id, websocket)

    async def disconnect(self, connection_id: str) -> None:
        user_id = self._identities.pop(connection_id, None)
        self.rooms.drop_connection(connection_id)
        went_offline = False
        if user_id is not None:
            if self.registry.session(connection_id) is not None:
                went_offline = self.registry.deregister_connection(user_id, connection_id)
            elif not self._has_live_connection(user_id):
                # setOnline without setup leaves no registered connection to outlive.
                went_offline = self.registry.set_offline(user_id)
        await self.relay.detach(connection_id)
        if went_offline:
            await self._announce_offline(user_id)

    def _has_live_connection(self, user_id: int) -> bool:
        if self.registry.connections_for(user_id):
            return True
        return user_id in self._identities.values()

    async def evict_members(self, chat_id: int, user_ids: Iterable[int]) -> None:
        """Unsubscribe users who left the chat from its room on every node."""

        await self.relay.evict_from_room(chat_id, user_ids)

    async def announce_chat_update(self, chat_id: int, data: dict[str, Any]) -> None:
        await self.relay.broadcast_room(chat_id, "chatUpdated", {"chatId": chat_id, **data})

    async def _announce_offline(self, user_id: int) -> None:
        last_seen = self.registry.last_seen(user_id)
        if last_seen is not None:
            try:
                await self.store.touch_last_seen(user_id, last_seen)
            except Exception:
                logger.exception("Failed to persist last seen for user %s", user_id)
        await self.relay.send_to_all(
            "userOffline",
            {"userId": user_id, "lastSeen": last_seen.isoformat() if last_seen else None},
        )

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------
    async def handle(self, connection_id: str, payload: Any) -> None:
        user_id = self._identities.get(connection_id)
        if user_id is None:
            logger.warning("Dropping event from unknown connection %s", connection_id)
            return
        if not isinstance(payload, dict) or not isinstance(payload.get("event"), str):
            self.reject(connection_id, None, "Invalid payload")
            return

        event = payload["event"]
        handler = self._handlers.get(event)
        if handler is None:
            self.reject(connection_id, event, f"Unknown event '{event}'")
            return
        data = payload.get("data")
        if data is None:
            data = {}
        if not isinstance(data, dict):
            self.reject(connection_id, event, "'data' must be an object")
            return

        realtime_events_total.labels(event, "in").inc()
        ctx = ConnectionContext(connection_id=connection_id, user_id=user_id)
        try:
            await handler(ctx, data)
        except NotFoundError as exc:
            logger.warning("%s from user %s: %s", event, user_id, exc.detail)
            realtime_handler_errors_total.labels(event, "not_found").inc()
            self.reject(connection_id, event, exc.detail)
        except (UnauthorizedError, InvalidPayloadError) as exc:
            logger.info("Rejected %s from user %s: %s", event, user_id, exc.detail)
            kind = "unauthorized" if isinstance(exc, UnauthorizedError) else "invalid"
            realtime_handler_errors_total.labels(event, kind).inc()
            self.reject(connection_id, event, exc.detail)
        except RealtimeError as exc:
            realtime_handler_errors_total.labels(event, "error").inc()
            self.reject(connection_id, event, exc.detail)
        except Exception:
            logger.exception("Unhandled error while processing %s from user %s", event, user_id)
            realtime_handler_errors_total.labels(event, "internal").inc()
            self.reject(connection_id, event, "Internal error")

    def reject(self, connection_id: str, event: str | None, detail: str) -> None:
        self.relay.send_to_connection(connection_id, "error", {"event": event, "detail": detail})

    async def _require_participant(self, ctx: ConnectionContext, chat_id: int) -> ChatSnapshot:
        chat = await self.store.get_chat(chat_id)
        if chat is None:
            raise NotFoundError(f"Chat {chat_id} not found")
        if ctx.user_id not in chat.participant_ids:
            raise UnauthorizedError(f"Not a participant of chat {chat_id}")
        return chat

    async def _require_room_access(self, ctx: ConnectionContext, chat_id: int) -> None:
        # Joining already checked participation for this connection.
        if chat_id in self.rooms.rooms_for(ctx.connection_id):
            return
        await self._require_participant(ctx, chat_id)

    # ------------------------------------------------------------------
    # Presence
    # ------------------------------------------------------------------
    async def _on_setup(self, ctx: ConnectionContext, data: dict[str, Any]) -> None:
        _check_claim(data, "userId", ctx)
        if self.registry.register_connection(ctx.user_id, ctx.connection_id):
            await self.relay.send_to_all("userOnline", {"userId": ctx.user_id})
        self.relay.send_to_connection(
            ctx.connection_id,
            "connected",
            {"userId": ctx.user_id, "onlineUsers": self.registry.online_user_ids()},
        )

    async def _on_set_online(self, ctx: ConnectionContext, data: dict[str, Any]) -> None:
        _check_claim(data, "userId", ctx)
        if self.registry.set_online(ctx.user_id):
            await self.relay.send_to_all("userOnline", {"userId": ctx.user_id})

    async def _on_set_offline(self, ctx: ConnectionContext, data: dict[str, Any]) -> None:
        _check_claim(data, "userId", ctx)
        if self.registry.set_offline(ctx.user_id):
            await self._announce_offline(ctx.user_id)

    async def _on_ping(self, ctx: ConnectionContext, data: dict[str, Any]) -> None:
        self.relay.send_to_connection(ctx.connection_id, "pong", {})

    async def _on_pong(self, ctx: ConnectionContext, data: dict[str, Any]) -> None:
        return None

    # ------------------------------------------------------------------
    # Rooms
    # ------------------------------------------------------------------
    async def _on_join_chat(self, ctx: ConnectionContext, data: dict[str, Any]) -> None:
        _check_claim(data, "userId", ctx)
        chat_id = _require_int(data, "chatId")
        await self._require_participant(ctx, chat_id)
        self.rooms.join(ctx.user_id, chat_id, ctx.connection_id)
        caught_up = await self.reconciler.catch_up(chat_id, ctx.user_id)
        self.relay.send_to_connection(
            ctx.connection_id, "joined", {"chatId": chat_id, "markedRead": len(caught_up)}
        )

    async def _on_leave_chat(self, ctx: ConnectionContext, data: dict[str, Any]) -> None:
        chat_id = _require_int(data, "chatId")
        self.rooms.leave(ctx.connection_id, chat_id)
        self.relay.send_to_connection(ctx.connection_id, "left", {"chatId": chat_id})

    async def _relay_typing(self, ctx: ConnectionContext, data: dict[str, Any], event: str) -> None:
        chat_id = _require_int(data, "chatId")
        await self._require_room_access(ctx, chat_id)
        await self.relay.broadcast_room(
            chat_id,
            event,
            {"chatId": chat_id, "userId": ctx.user_id},
            exclude={ctx.connection_id},
        )

    async def _on_typing(self, ctx: ConnectionContext, data: dict[str, Any]) -> None:
        await self._relay_typing(ctx, data, "typing")

    async def _on_stop_typing(self, ctx: ConnectionContext, data: dict[str, Any]) -> None:
        await self._relay_typing(ctx, data, "stopTyping")

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------
    async def _load_message(self, message_id: int, chat_id: int) -> MessageSnapshot:
        message = await self.store.get_message(message_id)
        if message is None:
            raise NotFoundError(f"Message {message_id} not found")
        if message.chat_id != chat_id:
            raise InvalidPayloadError(f"Message {message_id} does not belong to chat {chat_id}")
        return message

    async def _on_new_message(self, ctx: ConnectionContext, data: dict[str, Any]) -> None:
        _check_claim(data, "senderId", ctx)
        chat_id = _require_int(data, "chatId")
        message_id = _require_int(data, "messageId")
        chat = await self._require_participant(ctx, chat_id)
        message = await self._load_message(message_id, chat_id)
        if message.sender_id != ctx.user_id:
            raise UnauthorizedError("Only the sender may announce a message")

        payload = serialize_receipt(message, chat.participant_ids)
        payload["createdAt"] = message.created_at.isoformat() if message.created_at else None
        await self.relay.broadcast_room(
            chat_id, "messageRecieved", payload, exclude={ctx.connection_id}
        )
        await self.notifications.notify_new_message(message, chat)

    async def _on_message_delivered(self, ctx: ConnectionContext, data: dict[str, Any]) -> None:
        _check_claim(data, "userId", ctx)
        chat_id = _require_int(data, "chatId")
        message_id = _require_int(data, "messageId")
        await self._require_room_access(ctx, chat_id)
        await self.reconciler.mark_delivered(message_id, ctx.user_id, chat_id=chat_id)

    async def _on_message_read(self, ctx: ConnectionContext, data: dict[str, Any]) -> None:
        chat_id = _require_int(data, "chatId")
        message_id = _require_int(data, "messageId")
        readers = _require_int_list(data, "readBy")
        if any(reader != ctx.user_id for reader in readers):
            raise UnauthorizedError("'readBy' may only name the authenticated user")
        await self._require_room_access(ctx, chat_id)
        await self.reconciler.mark_read(message_id, readers, chat_id=chat_id)

    async def _on_deleted_for_everyone(self, ctx: ConnectionContext, data: dict[str, Any]) -> None:
        chat_id = _require_int(data, "chatId")
        message_ids = _require_int_list(data, "messageIds")
        await self._require_room_access(ctx, chat_id)
        await self.reconciler.mark_deleted_for_everyone(message_ids, chat_id)
