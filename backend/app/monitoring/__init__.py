"""Process metrics for the chat backend, rendered at ``/metrics``."""

from .metrics import (
    push_notifications_total,
    realtime_connections,
    realtime_events_total,
    realtime_handler_errors_total,
    realtime_publish_errors_total,
    realtime_transport_restarts_total,
)
from .registry import MetricsRegistry, registry

__all__ = [
    "MetricsRegistry",
    "push_notifications_total",
    "realtime_connections",
    "realtime_events_total",
    "realtime_handler_errors_total",
    "realtime_publish_errors_total",
    "realtime_transport_restarts_total",
    "registry",
]
