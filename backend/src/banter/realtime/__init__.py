"""Realtime presence and message delivery-state synchronization."""

from .errors import InvalidPayloadError, NotFoundError, RealtimeError, UnauthorizedError  # noqa: F401
from .gateway import RealtimeGateway  # noqa: F401
from .managers import (  # noqa: F401
    build_gateway,
    configure_realtime,
    get_gateway,
    shutdown_realtime,
    startup_realtime,
)
from .notifications import NotificationGate  # noqa: F401
from .receipts import DeliveryReconciler  # noqa: F401
from .registry import ConnectionRegistry  # noqa: F401
from .relay import EventRelay  # noqa: F401
from .rooms import RoomMembershipTracker  # noqa: F401

__all__ = [
    "build_gateway",
    "configure_realtime",
    "startup_realtime",
    "shutdown_realtime",
    "get_gateway",
    "ConnectionRegistry",
    "RoomMembershipTracker",
    "EventRelay",
    "DeliveryReconciler",
    "NotificationGate",
    "RealtimeGateway",
    "RealtimeError",
    "NotFoundError",
    "UnauthorizedError",
    "InvalidPayloadError",
]
