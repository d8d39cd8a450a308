"""Process-wide wiring of the realtime components."""

from __future__ import annotations

import logging
import uuid

from app.config import Settings, get_settings

from .gateway import RealtimeGateway
from .notifications import NotificationGate
from .push import FcmPushSender, PushSender
from .receipts import DeliveryReconciler
from .registry import ConnectionRegistry
from .relay import EventRelay
from .rooms import RoomMembershipTracker
from .store import RealtimeStore
from .transport import BrokerConfig, RedisTransport, TransportUnavailableError

logger = logging.getLogger(__name__)


def build_push_sender(settings: Settings) -> PushSender | None:
    if not settings.push_notifications_enabled:
        return None
    if not settings.fcm_server_key:
        logger.warning("Push notifications enabled but FCM_SERVER_KEY is not set; pushes disabled")
        return None
    return FcmPushSender(
        str(settings.fcm_endpoint),
        settings.fcm_server_key,
        timeout=settings.push_timeout_seconds,
    )


def build_gateway(
    store: RealtimeStore,
    *,
    push_sender: PushSender | None = None,
    transport: RedisTransport | None = None,
    node_id: str | None = None,
    queue_size: int = 256,
) -> RealtimeGateway:
    """Assemble a gateway with fresh registries around ``store``."""

    registry = ConnectionRegistry()
    rooms = RoomMembershipTracker()
    relay = EventRelay(
        registry, rooms, queue_size=queue_size, transport=transport, node_id=node_id
    )
    return RealtimeGateway(
        registry=registry,
        rooms=rooms,
        relay=relay,
        reconciler=DeliveryReconciler(store, store, relay),
        notifications=NotificationGate(rooms, store, store, push_sender),
        store=store,
    )


# ---------------------------------------------------------------------------
# Module level lifecycle helpers
# ---------------------------------------------------------------------------


settings = get_settings()

_node_id = settings.realtime_node_id or uuid.uuid4().hex

transport = RedisTransport(
    BrokerConfig(
        redis_url=settings.realtime_redis_url,
        prefix=settings.realtime_namespace,
        node_id=_node_id,
    )
)

_gateway: RealtimeGateway | None = None


def configure_realtime(store: RealtimeStore) -> RealtimeGateway:
    """Build the process gateway around ``store``; called once by the application."""

    global _gateway
    _gateway = build_gateway(
        store,
        push_sender=build_push_sender(settings),
        transport=transport,
        node_id=_node_id,
        queue_size=settings.websocket_outbound_queue_size,
    )
    return _gateway


async def startup_realtime() -> None:
    if not transport.configured:
        logger.info("No realtime Redis URL configured; events stay on this node")
        return
    await start_relay(transport, _gateway)


async def start_relay(broker: RedisTransport, gateway: RealtimeGateway | None) -> None:
    """Connect ``broker`` and subscribe the gateway's relay, now or once Redis is back."""

    if gateway is not None:
        broker.on_connect(gateway.relay.start)
    try:
        await broker.start()
    except TransportUnavailableError:
        logger.warning(
            "Realtime backend unavailable during startup; retrying in the background",
            exc_info=logger.isEnabledFor(logging.DEBUG),
        )
        broker.schedule_recovery("startup_failed")
        return
    if gateway is not None:
        await gateway.relay.start()


async def shutdown_realtime() -> None:
    if _gateway is not None:
        await _gateway.relay.stop()
    await transport.stop()


def get_gateway() -> RealtimeGateway:
    if _gateway is None:
        raise RuntimeError("Realtime layer is not configured; call configure_realtime() first")
    return _gateway


__all__ = [
    "build_gateway",
    "build_push_sender",
    "configure_realtime",
    "start_relay",
    "startup_realtime",
    "shutdown_realtime",
    "get_gateway",
]
